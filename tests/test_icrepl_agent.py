import hashlib
from types import MappingProxyType

import cbor2
import pytest

from icrepl.icrepl_values import Principal
from icrepl.icrepl_candid import leb128
from icrepl.icrepl_serialize import serialize, deserialize
from icrepl.icrepl_agent import AgentError, HttpAgent, request_id, lookup_path
import icrepl.icrepl_agent as agent_mod

CANISTER = Principal.from_text("rrkah-fqaaa-aaaaa-aaaaq-cai")


def _sha(b):
    return hashlib.sha256(b).digest()


# --- request ids ---

def test_request_id_hashes_sorted_pairs():
    content = {"method_name": "hello", "ingress_expiry": 5, "arg": b"\x01"}
    pairs = sorted([
        _sha(b"method_name") + _sha(b"hello"),
        _sha(b"ingress_expiry") + _sha(leb128(5)),
        _sha(b"arg") + _sha(b"\x01"),
    ])
    assert request_id(content) == _sha(b"".join(pairs))


def test_request_id_is_independent_of_key_order():
    a = {"request_type": "read_state", "paths": [[b"time"]], "sender": b"\x04"}
    b = {"sender": b"\x04", "paths": [[b"time"]], "request_type": "read_state"}
    assert request_id(a) == request_id(b)
    assert request_id(a) != request_id({**a, "sender": b"\x05"})


def test_request_id_rejects_unhashable_values():
    with pytest.raises(TypeError):
        request_id({"x": 1.5})


# --- certificate trees ---

RID = b"\x07" * 32

TREE = [1,
        [2, b"time", [3, leb128(42)]],
        [2, b"request_status",
         [2, RID, [1, [2, b"reply", [3, b"DIDL\x00\x00"]], [2, b"status", [3, b"replied"]]]]]]


def test_lookup_path():
    assert lookup_path(TREE, [b"time"]) == leb128(42)
    assert lookup_path(TREE, [b"request_status", RID, b"status"]) == b"replied"
    assert lookup_path(TREE, [b"request_status", RID, b"reply"]) == b"DIDL\x00\x00"
    assert lookup_path(TREE, [b"request_status", b"\x00" * 32, b"status"]) is None
    # a subtree is not a leaf
    assert lookup_path(TREE, [b"request_status"]) is None


# --- HTTP agent ---

def _wire(resp):
    """A response as the replica sends it: CBOR on the wire, decoded by the client."""
    return deserialize(serialize(resp, fmt="cbor"), fmt="cbor")


def _certificate(tree):
    return _wire({"certificate": serialize({"tree": tree, "signature": b"sig"}, fmt="cbor")})


@pytest.fixture
def http_agent():
    return HttpAgent("http://replica/", poll_interval=0)


@pytest.mark.asyncio
async def test_query_replied(http_agent, monkeypatch):
    seen = {}

    async def fake_post(url, data, config=None):
        seen["url"] = url
        seen["content"] = deserialize(data, fmt="cbor")["content"]
        return _wire({"status": "replied", "reply": {"arg": b"DIDL\x00\x01\x71\x01x"}})

    monkeypatch.setattr(agent_mod, "http_post_cbor", fake_post)
    out = await http_agent.query(CANISTER, "greet", b"DIDL\x00\x00", CANISTER)
    assert out == b"DIDL\x00\x01\x71\x01x"
    assert seen["url"] == f"http://replica/api/v2/canister/{CANISTER.to_text()}/query"
    assert seen["content"]["method_name"] == "greet"
    assert seen["content"]["sender"] == Principal.anonymous().raw


@pytest.mark.asyncio
async def test_query_rejected(http_agent, monkeypatch):
    async def fake_post(url, data, config=None):
        return _wire({"status": "rejected", "reject_code": 3, "reject_message": "no such method"})

    monkeypatch.setattr(agent_mod, "http_post_cbor", fake_post)
    with pytest.raises(AgentError, match="reject code 3, reject message no such method") as info:
        await http_agent.query(CANISTER, "nope", b"DIDL\x00\x00", CANISTER)
    assert info.value.reject_code == 3


@pytest.mark.asyncio
async def test_update_polls_until_replied(http_agent, monkeypatch):
    submitted = []
    polls = []

    async def fake_request(method, url, *, config=None, data=None):
        submitted.append((url, deserialize(data, fmt="cbor")["content"]))
        return 202, None, {}

    async def fake_post(url, data, config=None):
        rid = deserialize(data, fmt="cbor")["content"]["paths"][0][1]
        polls.append(url)
        if len(polls) == 1:
            status = [2, b"request_status", [2, rid, [2, b"status", [3, b"processing"]]]]
            return _certificate(status)
        replied = [2, b"request_status", [2, rid, [1, [2, b"reply", [3, b"DIDL\x00\x00"]],
                                                   [2, b"status", [3, b"replied"]]]]]
        return _certificate(replied)

    monkeypatch.setattr(agent_mod, "http_request", fake_request)
    monkeypatch.setattr(agent_mod, "http_post_cbor", fake_post)
    out = await http_agent.update_and_wait(CANISTER, "inc", b"DIDL\x00\x00", CANISTER)
    assert out == b"DIDL\x00\x00"
    assert len(polls) == 2
    (url, content), = submitted
    assert url.endswith("/call")
    assert content["request_type"] == "call"


@pytest.mark.asyncio
async def test_update_rejected(http_agent, monkeypatch):
    async def fake_request(method, url, *, config=None, data=None):
        return 202, None, {}

    async def fake_post(url, data, config=None):
        rid = deserialize(data, fmt="cbor")["content"]["paths"][0][1]
        return _certificate([2, b"request_status", [2, rid, [1,
                            [1, [2, b"reject_code", [3, leb128(5)]], [2, b"reject_message", [3, b"trapped"]]],
                            [2, b"status", [3, b"rejected"]]]]])

    monkeypatch.setattr(agent_mod, "http_request", fake_request)
    monkeypatch.setattr(agent_mod, "http_post_cbor", fake_post)
    with pytest.raises(AgentError, match="reject code 5, reject message trapped"):
        await http_agent.update_and_wait(CANISTER, "inc", b"DIDL\x00\x00", CANISTER)


@pytest.mark.asyncio
async def test_update_submission_failure(http_agent, monkeypatch):
    async def fake_request(method, url, *, config=None, data=None):
        return 400, "bad envelope", {}

    monkeypatch.setattr(agent_mod, "http_request", fake_request)
    with pytest.raises(AgentError, match="HTTP 400"):
        await http_agent.update_and_wait(CANISTER, "inc", b"DIDL\x00\x00", CANISTER)


@pytest.mark.asyncio
async def test_read_state(http_agent, monkeypatch):
    async def fake_post(url, data, config=None):
        assert url.endswith("/read_state")
        return _certificate(TREE)

    monkeypatch.setattr(agent_mod, "http_post_cbor", fake_post)
    assert await http_agent.read_state(CANISTER, [b"time"]) == leb128(42)
    assert await http_agent.read_state(CANISTER, [b"subnet"]) is None


def test_signed_update_request_id_matches_content(http_agent):
    signed = http_agent.sign_update(CANISTER, "inc", b"DIDL\x00\x00", CANISTER)
    content = deserialize(signed.signed_update, fmt="cbor")["content"]
    assert request_id(content) == signed.request_id
    status = http_agent.sign_request_status(CANISTER, signed.request_id)
    paths = deserialize(status.signed_request_status, fmt="cbor")["content"]["paths"]
    assert paths == [[b"request_status", signed.request_id]]


@pytest.mark.asyncio
async def test_query_accepts_raw_decoder_output(http_agent, monkeypatch):
    async def fake_post(url, data, config=None):
        # whatever mapping and array types the installed cbor2 produces
        return cbor2.loads(cbor2.dumps({"status": "replied", "reply": {"arg": b"DIDL\x00\x00"}}))

    monkeypatch.setattr(agent_mod, "http_post_cbor", fake_post)
    assert await http_agent.query(CANISTER, "greet", b"DIDL\x00\x00", CANISTER) == b"DIDL\x00\x00"


def test_request_id_accepts_tuples_and_read_only_mappings():
    plain = {"paths": [[b"time"]], "nested": {"a": 1}}
    frozen = {"paths": ((b"time",),), "nested": MappingProxyType({"a": 1})}
    assert request_id(frozen) == request_id(plain)
