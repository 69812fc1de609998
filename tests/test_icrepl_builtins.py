import gzip
import os
import sys

import pytest

from icrepl.icrepl_values import (
    ReplError, Named, Principal, Text, Number, Nat, Blob, Vec, PrincipalValue,
)
from icrepl.icrepl_types import NAT
from icrepl.icrepl_candid import encode_args, leb128
from icrepl.icrepl_datatypes import (
    Method, Call, ENCODE, Apply, Field, Path, TextExp, NumberExp, BoolExp, BlobExp, VecExp,
    RecordExp, PrincipalExp,
)
from icrepl.icrepl_interpreter import evaluate
from icrepl.icrepl_account import account_identifier, subaccount_from_principal, neuron_account
from icrepl.icrepl_serialize import serialize
import icrepl.icrepl_interpreter as interpreter

CANISTER = Principal.from_text("ryjl3-tyaaa-aaaaa-aaaba-cai")
USER = Principal.from_text("rrkah-fqaaa-aaaaa-aaaaq-cai")


def apply(func, *args):
    return Apply(func, tuple(args))


def wasm_with(sections):
    out = bytearray(b"\0asm\x01\0\0\0")
    for name, content in sections.items():
        raw = name.encode()
        payload = leb128(len(raw)) + raw + content
        out += b"\x00" + leb128(len(payload)) + payload
    return bytes(out)


def _stdout(helper):
    return [e["message"] for e in helper.side_effects if e["topics"] == ["stdout"]]


# --- files ---

@pytest.mark.asyncio
async def test_file_reads_relative_to_base_path(helper, tmp_path):
    (tmp_path / "data.bin").write_bytes(b"\x01\x02")
    assert await evaluate(apply("file", TextExp("data.bin")), helper) == Blob(b"\x01\x02")
    with pytest.raises(ReplError, match="Cannot read"):
        await evaluate(apply("file", TextExp("missing.bin")), helper)
    with pytest.raises(TypeError, match="file expects file path"):
        await evaluate(apply("file", NumberExp("1")), helper)


@pytest.mark.asyncio
async def test_gzip(helper):
    out = await evaluate(apply("gzip", BlobExp(b"abc")), helper)
    assert gzip.decompress(out.value) == b"abc"
    with pytest.raises(TypeError, match="gzip expects blob"):
        await evaluate(apply("gzip", TextExp("abc")), helper)


@pytest.mark.asyncio
async def test_export_writes_let_bindings(helper, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    helper.env["x"] = Number("1")
    helper.env["y"] = Text("s")
    await evaluate(apply("export", TextExp("vars.sh"), Path("x"), Path("y")), helper)
    assert (tmp_path / "vars.sh").read_text() == 'let x = 1;\nlet y = "s";\n'
    with pytest.raises(TypeError, match="export expects variables"):
        await evaluate(apply("export", TextExp("vars.sh"), NumberExp("1")), helper)
    with pytest.raises(TypeError, match="at least two arguments"):
        await evaluate(apply("export", TextExp("vars.sh")), helper)


@pytest.mark.asyncio
async def test_output_appends(helper, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert await evaluate(apply("output", TextExp("log.txt"), TextExp("a")), helper) == Text("a")
    await evaluate(apply("output", TextExp("log.txt"), TextExp("b\n")), helper)
    assert (tmp_path / "log.txt").read_text() == "ab\n"
    with pytest.raises(TypeError, match=r"output expects \(file path, content\)"):
        await evaluate(apply("output", TextExp("log.txt")), helper)


# --- exec ---

@pytest.mark.asyncio
async def test_exec_echoes_output_and_parses_the_last_line(helper):
    script = "print('hello'); print('record { a = 1 }')"
    out = await evaluate(apply("exec", TextExp(sys.executable), TextExp("-c"), TextExp(script)), helper)
    assert out.get("a") == Number("1")
    assert _stdout(helper) == ["hello", "record { a = 1 }"]


@pytest.mark.asyncio
async def test_exec_falls_back_to_text(helper):
    out = await evaluate(apply("exec", TextExp(sys.executable), TextExp("-c"),
                               TextExp("print('just words here')")), helper)
    assert out == Text("just words here")


@pytest.mark.asyncio
async def test_exec_options(helper, tmp_path):
    (tmp_path / "sub").mkdir()
    opts = RecordExp((
        Field(Named("cwd"), TextExp("sub")),
        Field(Named("silence"), BoolExp(True)),
    ))
    out = await evaluate(apply("exec", TextExp(sys.executable), TextExp("-c"),
                               TextExp("import os; print(os.getcwd())"), opts), helper)
    assert os.path.realpath(out.value) == os.path.realpath(tmp_path / "sub")
    assert _stdout(helper) == []


@pytest.mark.asyncio
async def test_exec_failure_status(helper):
    with pytest.raises(ReplError, match="exec failed with status 3"):
        await evaluate(apply("exec", TextExp(sys.executable), TextExp("-c"),
                             TextExp("import sys; sys.exit(3)")), helper)
    with pytest.raises(TypeError):
        await evaluate(apply("exec", NumberExp("1")), helper)


# --- accounts ---

@pytest.mark.asyncio
async def test_account_builtins(helper):
    acc = await evaluate(apply("account", PrincipalExp(USER)), helper)
    assert acc == Blob(account_identifier(USER))
    assert len(acc.value) == 32
    sub = await evaluate(apply("subaccount", PrincipalExp(USER)), helper)
    assert sub == Blob(subaccount_from_principal(USER))
    acc2 = await evaluate(apply("account", PrincipalExp(USER), BlobExp(sub.value)), helper)
    assert acc2 == Blob(account_identifier(USER, sub.value))
    neuron = await evaluate(apply("neuron_account", PrincipalExp(USER), NumberExp("7")), helper)
    assert neuron == Blob(neuron_account(USER, 7))
    with pytest.raises(TypeError, match="account expects principal"):
        await evaluate(apply("account", TextExp("x")), helper)


# --- state ---

@pytest.mark.asyncio
async def test_replica_url(helper):
    assert await evaluate(apply("replica_url"), helper) == Text("http://fake.replica")


@pytest.mark.asyncio
async def test_read_state_paths(helper, agent):
    controller = Principal.anonymous()
    agent.state[(b"time",)] = leb128(1_700_000_000)
    agent.state[(b"canister", CANISTER.raw, b"controllers")] = serialize([controller.raw], fmt="cbor")
    agent.state[(b"canister", CANISTER.raw, b"metadata", b"git")] = b"abc"

    assert await evaluate(apply("read_state", TextExp("time")), helper) == Nat(1_700_000_000)
    controllers = await evaluate(apply("read_state", TextExp("canister"), PrincipalExp(CANISTER),
                                       TextExp("controllers")), helper)
    assert controllers == Vec((PrincipalValue(controller),))
    git = await evaluate(apply("read_state", TextExp("canister"), PrincipalExp(CANISTER),
                               TextExp("metadata/git")), helper)
    assert git == Text("abc")
    with_effective = await evaluate(apply("read_state", PrincipalExp(CANISTER), TextExp("time")), helper)
    assert with_effective == Nat(1_700_000_000)


@pytest.mark.asyncio
async def test_read_state_errors(helper):
    with pytest.raises(ReplError, match="not found"):
        await evaluate(apply("read_state", TextExp("subnet"), PrincipalExp(CANISTER),
                             TextExp("public_key")), helper)
    with pytest.raises(TypeError, match="read_state expects"):
        await evaluate(apply("read_state", NumberExp("1")), helper)


# --- wasm modules ---

@pytest.mark.asyncio
async def test_init_args_from_wasm_metadata(helper):
    helper.env["mod"] = Blob(wasm_with({
        "icp:public candid:service": b"service : (nat) -> {}",
        "icp:public candid:args": b"(nat)",
    }))
    out = await evaluate(Call(Method("mod", "__init_args"), (NumberExp("5"),), ENCODE), helper)
    assert out == Blob(encode_args([Nat(5)], [NAT]))


@pytest.mark.asyncio
async def test_init_args_without_metadata_warns(helper):
    helper.env["mod"] = Blob(wasm_with({"name": b"x"}))
    out = await evaluate(Call(Method("mod", "__init_args"), (NumberExp("5"),), ENCODE), helper)
    assert out == Blob(encode_args([Number("5")]))
    warnings = [e["message"] for e in helper.side_effects if e["topics"] == ["stderr"]]
    assert any("no candid:args metadata" in w for w in warnings)


@pytest.mark.asyncio
async def test_wasm_profiling_passes_the_config(helper, tmp_path, monkeypatch):
    (tmp_path / "m.wasm").write_bytes(wasm_with({}))
    seen = {}

    async def fake_instrument(module, config, tool):
        seen["config"] = config
        seen["tool"] = tool
        return b"instrumented"

    monkeypatch.setattr(interpreter, "instrument", fake_instrument)
    cfg = RecordExp((
        Field(Named("start_page"), NumberExp("10")),
        Field(Named("page_limit"), NumberExp("2")),
        Field(Named("trace_only_funcs"), VecExp((TextExp("f"), TextExp("g")))),
    ))
    out = await evaluate(apply("wasm_profiling", TextExp("m.wasm"), cfg), helper)
    assert out == Blob(b"instrumented")
    assert seen["tool"] == "ic-wasm"
    assert seen["config"].instrument_args() == [
        "--trace-only", "f", "--trace-only", "g", "--start-page", "10", "--page-limit", "2",
    ]
    with pytest.raises(TypeError, match="start_page expects a number"):
        bad = RecordExp((Field(Named("start_page"), TextExp("x")),))
        await evaluate(apply("wasm_profiling", TextExp("m.wasm"), bad), helper)
