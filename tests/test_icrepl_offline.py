import json

import pytest

from icrepl.icrepl_values import ReplError, Principal, Null, Text, Nat, Record
from icrepl.icrepl_types import NAT, TEXT
from icrepl.icrepl_candid import encode_args, decode_args
from icrepl.icrepl_datatypes import Method, Call, ParCall, FuncCall, Apply, TextExp, NumberExp, BlobExp
from icrepl.icrepl_helper import Helper, OfflineConfig
from icrepl.icrepl_interpreter import evaluate
from icrepl.icrepl_offline import Ingress, RequestStatus, IngressWithStatus
from icrepl.icrepl_serialize import serialize

from conftest import FakeAgent

COUNTER = Principal.from_text("rrkah-fqaaa-aaaaa-aaaaq-cai")
DID = "service : { greet : (text) -> (text) query; inc : (nat) -> (nat) }"


def _greet(arg):
    (name,) = decode_args(arg, [TEXT])
    return encode_args([Text(f"hello {name.value}")], [TEXT])


def _inc(arg):
    (n,) = decode_args(arg, [NAT])
    return encode_args([Nat(n.value + 1)], [NAT])


@pytest.fixture
def agent():
    return FakeAgent(interfaces={COUNTER: DID},
                     handlers={(COUNTER, "greet"): _greet, (COUNTER, "inc"): _inc})


@pytest.fixture
def offline_helper(agent, tmp_path):
    return Helper(agent, base_path=str(tmp_path), offline=OfflineConfig())


def _stdout(helper):
    return [e["message"] for e in helper.side_effects if e["topics"] == ["stdout"]]


@pytest.mark.asyncio
async def test_offline_query_is_logged_not_sent(offline_helper, agent):
    out = await evaluate(Call(Method(COUNTER.to_text(), "greet"), (TextExp("bob"),)), offline_helper)
    assert out == Null()
    assert [c for c in agent.calls if c[2] == "greet"] == []
    (line,) = _stdout(offline_helper)
    entry = json.loads(line)
    assert entry["ingress"]["call_type"] == "query"
    assert entry["ingress"]["request_id"] is None
    assert entry["request_status"] is None
    bytes.fromhex(entry["ingress"]["content"])


@pytest.mark.asyncio
async def test_offline_update_carries_a_status_request(offline_helper):
    await evaluate(Call(Method(COUNTER.to_text(), "inc"), (NumberExp("1"),)), offline_helper)
    (message,) = offline_helper.messages
    assert message.ingress.call_type == "update"
    assert message.request_status is not None
    assert message.request_status.request_id == message.ingress.request_id
    assert message.request_status.canister_id == COUNTER.to_text()


@pytest.mark.asyncio
async def test_offline_batch_is_signed_in_order(offline_helper):
    out = await evaluate(ParCall((
        FuncCall(Method(COUNTER.to_text(), "greet"), (TextExp("a"),)),
        FuncCall(Method(COUNTER.to_text(), "inc"), (NumberExp("1"),)),
    )), offline_helper)
    assert out == Record.tuple([Null(), Null()])
    # batches are always updates
    assert [m.ingress.call_type for m in offline_helper.messages] == ["update", "update"]


@pytest.mark.asyncio
async def test_offline_sink_file(agent, tmp_path):
    sink = tmp_path / "out" / "messages.json"
    helper = Helper(agent, base_path=str(tmp_path), offline=OfflineConfig(str(sink)))
    await evaluate(Call(Method(COUNTER.to_text(), "greet"), (TextExp("a"),)), helper)
    await evaluate(Call(Method(COUNTER.to_text(), "greet"), (TextExp("b"),)), helper)
    lines = sink.read_text().splitlines()
    assert len(lines) == 2
    assert all(json.loads(l)["ingress"]["call_type"] == "query" for l in lines)
    assert _stdout(helper) == []


@pytest.mark.asyncio
async def test_send_replays_recorded_messages(offline_helper, agent):
    await evaluate(Call(Method(COUNTER.to_text(), "greet"), (TextExp("bob"),)), offline_helper)
    await evaluate(Call(Method(COUNTER.to_text(), "inc"), (NumberExp("41"),)), offline_helper)
    batch = "[" + ",".join(m.to_json() for m in offline_helper.messages) + "]"

    online = Helper(agent, base_path=offline_helper.base_path)
    out = await evaluate(Apply("send", (BlobExp(batch.encode()),)), online)
    assert out == Record.tuple([Text("hello bob"), Nat(42)])

    single = offline_helper.messages[0].to_json()
    assert await evaluate(Apply("send", (BlobExp(single.encode()),)), online) == Text("hello bob")
    sent = [e["message"] for e in online.side_effects if e["topics"] == ["stderr"]]
    assert any(s.startswith("Sending query call to") for s in sent)


@pytest.mark.asyncio
async def test_send_is_not_available_offline(offline_helper):
    with pytest.raises(ReplError, match="Unknown function send"):
        await evaluate(Apply("send", (BlobExp(b"[]"),)), offline_helper)


@pytest.mark.asyncio
async def test_send_rejects_malformed_messages(agent, tmp_path):
    helper = Helper(agent, base_path=str(tmp_path))
    with pytest.raises(ReplError, match="not a valid json message"):
        await evaluate(Apply("send", (BlobExp(b'{"nope": 1}'),)), helper)
    with pytest.raises(ReplError, match="not a valid json message"):
        await evaluate(Apply("send", (BlobExp(b"plain text"),)), helper)


def test_message_json_shape():
    msg = IngressWithStatus(
        Ingress("update", "ab", "cd"),
        RequestStatus("aaaaa-aa", "ab", "ef"),
    )
    data = json.loads(msg.to_json())
    assert data == {
        "ingress": {"call_type": "update", "request_id": "ab", "content": "cd"},
        "request_status": {"canister_id": "aaaaa-aa", "request_id": "ab", "content": "ef"},
    }
    assert IngressWithStatus.from_dict(data) == msg


@pytest.mark.asyncio
async def test_send_rejects_undecodable_envelopes(agent, tmp_path):
    helper = Helper(agent, base_path=str(tmp_path))
    message = IngressWithStatus(Ingress("query", None, "ffff"), None).to_json()
    with pytest.raises(ReplError, match="not a valid json message: malformed CBOR"):
        await evaluate(Apply("send", (BlobExp(message.encode()),)), helper)
    not_an_envelope = IngressWithStatus(Ingress("query", None, serialize([1, 2], fmt="cbor").hex()), None)
    with pytest.raises(ReplError, match="envelope has no content"):
        await evaluate(Apply("send", (BlobExp(not_an_envelope.to_json().encode()),)), helper)
