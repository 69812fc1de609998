"""
Offline messages: signed envelopes recorded instead of sent, and replay of
recorded messages through the live transport (`send`).
"""
import collections.abc
import json
from dataclasses import dataclass, asdict
from typing import Optional, List, Dict, Any

from icrepl.icrepl_values import ReplError, Principal, Value, args_to_value
from icrepl.icrepl_candid import decode_args
from icrepl.icrepl_serialize import deserialize
from icrepl.icrepl_file import append_text


@dataclass(frozen=True)
class Ingress:
    call_type: str
    request_id: Optional[str]
    content: str


@dataclass(frozen=True)
class RequestStatus:
    canister_id: str
    request_id: str
    content: str


@dataclass(frozen=True)
class IngressWithStatus:
    ingress: Ingress
    request_status: Optional[RequestStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IngressWithStatus':
        try:
            ingress = Ingress(**data["ingress"])
            status = data.get("request_status")
            return cls(ingress, RequestStatus(**status) if status is not None else None)
        except (KeyError, TypeError) as e:
            raise ReplError(f"not a valid json message: {e}") from e


def output_message(helper, message: IngressWithStatus) -> None:
    """Records a signed message and writes its JSON line to the offline sink."""
    helper.messages.append(message)
    line = message.to_json()
    sink = helper.offline.sink if helper.offline is not None else None
    if sink:
        append_text(sink, line + "\n")
    else:
        helper.emit('stdout', line)


def _envelope_content(hex_content: str) -> Dict[str, Any]:
    try:
        envelope = deserialize(bytes.fromhex(hex_content), fmt='cbor')
    except ValueError as e:
        raise ReplError(f"not a valid json message: {e}") from e
    if not isinstance(envelope, collections.abc.Mapping) or "content" not in envelope:
        raise ReplError("not a valid json message: envelope has no content")
    return envelope["content"]


async def send(helper, message: IngressWithStatus) -> List[Value]:
    """Submits one recorded message and decodes its reply with the method's signature."""
    from icrepl.icrepl_datatypes import Method
    from icrepl.icrepl_interpreter import get_info

    content = _envelope_content(message.ingress.content)
    canister_id = Principal(bytes(content["canister_id"]))
    method_name = content["method_name"]
    info = await get_info(Method(canister_id.to_text(), method_name), helper, False)
    agent = helper.require_agent()
    helper.emit('stderr', f"Sending {message.ingress.call_type} call to {canister_id}.{method_name}")

    envelope = bytes.fromhex(message.ingress.content)
    if message.ingress.call_type == "query":
        data = await agent.submit_query(canister_id, envelope)
    else:
        status = message.request_status
        effective_id = Principal.from_text(status.canister_id) if status is not None else canister_id
        await agent.submit_update(effective_id, envelope)
        if status is None:
            return []
        data = await agent.poll_signed_status(effective_id, bytes.fromhex(status.request_id),
                                              bytes.fromhex(status.content))
    if info.signature is not None:
        env, func = info.signature
        return decode_args(data, list(func.rets), env)
    return decode_args(data)


async def send_messages(helper, messages: List[IngressWithStatus]) -> List[Value]:
    return [args_to_value(await send(helper, m)) for m in messages]
