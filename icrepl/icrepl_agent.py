"""
The transport contract the call executor talks to, and an HTTP implementation.

`Agent` is the abstract contract: live query/update calls, offline signing of
the same requests, certified state reads, and submission of previously signed
envelopes. `HttpAgent` implements it for the replica's HTTP interface with an
anonymous identity.
"""
import asyncio
import collections.abc
import hashlib
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Dict, Any

from icrepl.icrepl_values import ReplError, Principal
from icrepl.icrepl_candid import leb128, read_leb128
from icrepl.icrepl_http import http_post_cbor, http_request, CBOR_CONTENT_TYPE
from icrepl.icrepl_serialize import serialize, deserialize


class AgentError(ReplError):
    """The replica rejected a request or answered in an unexpected way."""

    def __init__(self, message: str, reject_code: Optional[int] = None):
        super().__init__(message)
        self.reject_code = reject_code


@dataclass(frozen=True)
class SignedQuery:
    effective_canister_id: Principal
    signed_query: bytes


@dataclass(frozen=True)
class SignedUpdate:
    effective_canister_id: Principal
    request_id: bytes
    signed_update: bytes


@dataclass(frozen=True)
class SignedRequestStatus:
    effective_canister_id: Principal
    request_id: bytes
    signed_request_status: bytes


class Agent(ABC):
    """The transport used by the call executor."""
    url: str = ""

    @abstractmethod
    async def query(self, canister_id: Principal, method: str, arg: bytes,
                    effective_canister_id: Principal) -> bytes: ...

    @abstractmethod
    async def update_and_wait(self, canister_id: Principal, method: str, arg: bytes,
                              effective_canister_id: Principal) -> bytes: ...

    @abstractmethod
    def sign_query(self, canister_id: Principal, method: str, arg: bytes,
                   effective_canister_id: Principal) -> SignedQuery: ...

    @abstractmethod
    def sign_update(self, canister_id: Principal, method: str, arg: bytes,
                    effective_canister_id: Principal) -> SignedUpdate: ...

    @abstractmethod
    def sign_request_status(self, effective_canister_id: Principal,
                            request_id: bytes) -> SignedRequestStatus: ...

    @abstractmethod
    async def read_state(self, effective_canister_id: Principal, path: List[bytes]) -> Optional[bytes]:
        """The certified leaf at `path`, or None when the certificate proves it absent."""

    @abstractmethod
    async def submit_query(self, effective_canister_id: Principal, envelope: bytes) -> bytes: ...

    @abstractmethod
    async def submit_update(self, effective_canister_id: Principal, envelope: bytes) -> None: ...

    @abstractmethod
    async def poll_signed_status(self, effective_canister_id: Principal, request_id: bytes,
                                 envelope: bytes) -> bytes: ...


# =================================================================
# Request ids and certificates
# =================================================================

def _hash_value(v: Any) -> bytes:
    if isinstance(v, bytes):
        return hashlib.sha256(v).digest()
    if isinstance(v, str):
        return hashlib.sha256(v.encode('utf-8')).digest()
    if isinstance(v, int):
        return hashlib.sha256(leb128(v)).digest()
    if isinstance(v, (list, tuple)):
        return hashlib.sha256(b"".join(_hash_value(x) for x in v)).digest()
    if isinstance(v, collections.abc.Mapping):
        return request_id(v)
    raise TypeError(f"cannot hash {type(v).__name__} in a request")


def request_id(content: Dict[str, Any]) -> bytes:
    """The representation-independent hash of a request's content map."""
    pairs = sorted(hashlib.sha256(k.encode('utf-8')).digest() + _hash_value(v)
                   for k, v in content.items())
    return hashlib.sha256(b"".join(pairs)).digest()


def _labeled(tree) -> List:
    match tree:
        case [1, left, right]:
            return _labeled(left) + _labeled(right)
        case [2, label, sub]:
            return [(bytes(label), sub)]
    return []


def lookup_path(tree, path: List[bytes]) -> Optional[bytes]:
    """Finds the leaf at `path` in a certificate's hash tree."""
    for segment in path:
        for label, sub in _labeled(tree):
            if label == segment:
                tree = sub
                break
        else:
            return None
    match tree:
        case [3, leaf]:
            return bytes(leaf)
    return None


# =================================================================
# HTTP agent
# =================================================================

class HttpAgent(Agent):
    """An anonymous-identity agent over the replica's HTTP v2 interface."""

    def __init__(self, url: str, *, http_config: Optional[Dict[str, Any]] = None,
                 ingress_expiry: float = 240.0, poll_interval: float = 0.5, max_polls: int = 60):
        self.url = url.rstrip('/')
        self.http_config = dict(http_config or {})
        self.ingress_expiry = ingress_expiry
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.sender = Principal.anonymous()

    def _expiry(self) -> int:
        return int((time.time() + self.ingress_expiry) * 1_000_000_000)

    def _endpoint(self, effective_canister_id: Principal, kind: str) -> str:
        return f"{self.url}/api/v2/canister/{effective_canister_id.to_text()}/{kind}"

    def _envelope(self, content: Dict[str, Any]) -> bytes:
        return serialize({"content": content}, fmt='cbor')

    # --- signing ---

    def sign_query(self, canister_id, method, arg, effective_canister_id) -> SignedQuery:
        content = {
            "request_type": "query",
            "canister_id": canister_id.raw,
            "method_name": method,
            "arg": arg,
            "sender": self.sender.raw,
            "ingress_expiry": self._expiry(),
        }
        return SignedQuery(effective_canister_id, self._envelope(content))

    def sign_update(self, canister_id, method, arg, effective_canister_id) -> SignedUpdate:
        content = {
            "request_type": "call",
            "canister_id": canister_id.raw,
            "method_name": method,
            "arg": arg,
            "sender": self.sender.raw,
            "nonce": os.urandom(8),
            "ingress_expiry": self._expiry(),
        }
        return SignedUpdate(effective_canister_id, request_id(content), self._envelope(content))

    def _read_state_content(self, paths: List[List[bytes]]) -> Dict[str, Any]:
        return {
            "request_type": "read_state",
            "sender": self.sender.raw,
            "paths": paths,
            "ingress_expiry": self._expiry(),
        }

    def sign_request_status(self, effective_canister_id, request_id) -> SignedRequestStatus:
        content = self._read_state_content([[b"request_status", request_id]])
        return SignedRequestStatus(effective_canister_id, request_id, self._envelope(content))

    # --- transport ---

    async def submit_query(self, effective_canister_id, envelope) -> bytes:
        resp = await http_post_cbor(self._endpoint(effective_canister_id, "query"), envelope, self.http_config)
        if not isinstance(resp, collections.abc.Mapping):
            raise AgentError(f"unexpected query response {resp!r}")
        match resp.get("status"):
            case "replied":
                return bytes(resp["reply"]["arg"])
            case "rejected":
                code = resp.get("reject_code")
                raise AgentError(
                    f"The replica returned a rejection error: reject code {code}, "
                    f"reject message {resp.get('reject_message')}", code)
        raise AgentError(f"unexpected query response {resp!r}")

    async def submit_update(self, effective_canister_id, envelope) -> None:
        cfg = {**self.http_config, 'response-mode': 'lite',
               'headers': {**self.http_config.get('headers', {}), "Content-Type": CBOR_CONTENT_TYPE}}
        status, value, _ = await http_request('POST', self._endpoint(effective_canister_id, "call"),
                                              config=cfg, data=envelope)
        if not 200 <= status < 300:
            raise AgentError(f"HTTP {status} submitting update: {value}")

    async def _certificate_tree(self, effective_canister_id, envelope: bytes):
        resp = await http_post_cbor(self._endpoint(effective_canister_id, "read_state"), envelope,
                                    self.http_config)
        if not isinstance(resp, collections.abc.Mapping) or "certificate" not in resp:
            raise AgentError(f"unexpected read_state response {resp!r}")
        cert = deserialize(resp["certificate"], fmt='cbor')
        return cert["tree"]

    async def poll_signed_status(self, effective_canister_id, request_id, envelope) -> bytes:
        prefix = [b"request_status", request_id]
        for attempt in range(self.max_polls):
            tree = await self._certificate_tree(effective_canister_id, envelope)
            status = lookup_path(tree, prefix + [b"status"])
            if status == b"replied":
                return lookup_path(tree, prefix + [b"reply"]) or b""
            if status == b"rejected":
                code_raw = lookup_path(tree, prefix + [b"reject_code"])
                code = read_leb128(code_raw) if code_raw is not None else None
                message = (lookup_path(tree, prefix + [b"reject_message"]) or b"").decode('utf-8', 'replace')
                raise AgentError(
                    f"The replica returned a rejection error: reject code {code}, reject message {message}",
                    code)
            if status == b"done":
                raise AgentError(f"request {request_id.hex()} is done and its reply was pruned")
            await asyncio.sleep(self.poll_interval * min(2 ** attempt, 8))
        raise AgentError(f"timed out waiting for request {request_id.hex()}")

    async def query(self, canister_id, method, arg, effective_canister_id) -> bytes:
        signed = self.sign_query(canister_id, method, arg, effective_canister_id)
        return await self.submit_query(effective_canister_id, signed.signed_query)

    async def update_and_wait(self, canister_id, method, arg, effective_canister_id) -> bytes:
        signed = self.sign_update(canister_id, method, arg, effective_canister_id)
        await self.submit_update(effective_canister_id, signed.signed_update)
        status = self.sign_request_status(effective_canister_id, signed.request_id)
        return await self.poll_signed_status(effective_canister_id, signed.request_id,
                                             status.signed_request_status)

    async def read_state(self, effective_canister_id, path) -> Optional[bytes]:
        envelope = self._envelope(self._read_state_content([list(path)]))
        tree = await self._certificate_tree(effective_canister_id, envelope)
        return lookup_path(tree, list(path))
