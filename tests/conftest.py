import hashlib

import pytest

from icrepl.icrepl_agent import Agent, AgentError, SignedQuery, SignedUpdate, SignedRequestStatus
from icrepl.icrepl_helper import Helper
from icrepl.icrepl_serialize import serialize, deserialize
from icrepl.icrepl_values import Principal

COUNTER_ID = Principal.from_text("rrkah-fqaaa-aaaaa-aaaaq-cai")
LEDGER_ID = Principal.from_text("ryjl3-tyaaa-aaaaa-aaaba-cai")
WALLET_ID = Principal.from_text("rwlgt-iiaaa-aaaaa-aaaaa-cai")


class FakeAgent(Agent):
    """
    An in-memory transport. `handlers` maps (principal, method) to a callable
    taking the encoded argument and returning the encoded reply; a handler may
    be a coroutine function.
    """

    url = "http://fake.replica"

    def __init__(self, interfaces=None, handlers=None, state=None):
        self.interfaces = dict(interfaces or {})
        self.handlers = dict(handlers or {})
        self.state = dict(state or {})
        self.calls = []
        self.submitted = []

    async def _dispatch(self, kind, canister_id, method, arg):
        self.calls.append((kind, canister_id, method, arg))
        handler = self.handlers.get((canister_id, method))
        if handler is None:
            raise AgentError(f"no method {method} on {canister_id}", 3)
        result = handler(arg)
        if hasattr(result, "__await__"):
            result = await result
        return result

    async def query(self, canister_id, method, arg, effective_canister_id):
        return await self._dispatch("query", canister_id, method, arg)

    async def update_and_wait(self, canister_id, method, arg, effective_canister_id):
        return await self._dispatch("update", canister_id, method, arg)

    async def read_state(self, effective_canister_id, path):
        if len(path) == 4 and path[0] == b"canister" and path[2] == b"metadata":
            cid = Principal(path[1])
            if path[3] == b"candid:service" and cid in self.interfaces:
                return self.interfaces[cid].encode("utf-8")
        return self.state.get(tuple(path))

    def _envelope(self, content):
        return serialize({"content": content}, fmt="cbor")

    def sign_query(self, canister_id, method, arg, effective_canister_id):
        content = {"request_type": "query", "canister_id": canister_id.raw,
                   "method_name": method, "arg": arg}
        return SignedQuery(effective_canister_id, self._envelope(content))

    def sign_update(self, canister_id, method, arg, effective_canister_id):
        content = {"request_type": "call", "canister_id": canister_id.raw,
                   "method_name": method, "arg": arg}
        rid = hashlib.sha256(canister_id.raw + method.encode() + arg).digest()
        return SignedUpdate(effective_canister_id, rid, self._envelope(content))

    def sign_request_status(self, effective_canister_id, request_id):
        content = {"request_type": "read_state", "paths": [[b"request_status", request_id]]}
        return SignedRequestStatus(effective_canister_id, request_id, self._envelope(content))

    def _open(self, envelope):
        content = deserialize(envelope, fmt="cbor")["content"]
        return Principal(bytes(content["canister_id"])), content["method_name"], bytes(content["arg"])

    async def submit_query(self, effective_canister_id, envelope):
        cid, method, arg = self._open(envelope)
        return await self._dispatch("query", cid, method, arg)

    async def submit_update(self, effective_canister_id, envelope):
        self.submitted.append(self._open(envelope))

    async def poll_signed_status(self, effective_canister_id, request_id, envelope):
        cid, method, arg = self.submitted.pop(0)
        return await self._dispatch("update", cid, method, arg)


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def helper(agent, tmp_path):
    return Helper(agent, base_path=str(tmp_path))
