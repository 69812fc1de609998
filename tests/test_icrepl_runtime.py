import pytest

from icrepl.icrepl_values import Text, Number, Nat, Null, Record, IDLField, Named
from icrepl.icrepl_types import NAT
from icrepl.icrepl_candid import encode_args
from icrepl.icrepl_datatypes import (
    Method, Call, Apply, Path, Let, Show, FuncDef, Assert, TextExp, NumberExp, RecordExp, Field,
)
from icrepl.icrepl_config import ReplConfig
from icrepl.icrepl_helper import Helper
from icrepl.icrepl_runtime import ScriptRunner, ExecutionResult, run_command

from conftest import FakeAgent, COUNTER_ID


@pytest.fixture
def agent():
    return FakeAgent(
        interfaces={COUNTER_ID: "service : { get : () -> (nat) query }"},
        handlers={(COUNTER_ID, "get"): lambda arg: encode_args([Nat(7)], [NAT])},
    )


@pytest.fixture
def runner(helper):
    return ScriptRunner(helper)


@pytest.mark.asyncio
async def test_let_binds_and_call_updates_underscore(helper):
    await run_command(Let("x", NumberExp("1")), helper)
    assert helper.env["x"] == Number("1")
    assert "_" not in helper.env
    await run_command(Let("n", Call(Method(COUNTER_ID.to_text(), "get"), ())), helper)
    assert helper.env["n"] == Nat(7)
    assert helper.env["_"] == Nat(7)


@pytest.mark.asyncio
async def test_show_prints_and_sets_underscore(helper):
    await run_command(Show(RecordExp((Field(Named("a"), TextExp("x")),))), helper)
    assert helper.env["_"] == Record.make([IDLField(Named("a"), Text("x"))])
    assert helper.side_effects == [{"topics": ["stdout"], "message": 'record { a = "x" }'}]


@pytest.mark.asyncio
async def test_func_def_then_apply(helper):
    body = (Let("_", Apply("concat", (Path("a"), TextExp("!")))),)
    await run_command(FuncDef("shout", ("a",), body), helper)
    await run_command(Let("r", Apply("shout", (TextExp("hi"),))), helper)
    assert helper.env["r"] == Text("hi!")


@pytest.mark.asyncio
async def test_assertions(helper):
    await run_command(Assert("==", TextExp("a"), TextExp("a")), helper)
    await run_command(Assert("!=", TextExp("a"), TextExp("b")), helper)
    await run_command(Assert("~=", TextExp("hello world"), TextExp("world")), helper)
    await run_command(Let("n", Call(Method(COUNTER_ID.to_text(), "get"), ())), helper)
    # a plain literal matches the typed reply after casting
    await run_command(Assert("~=", NumberExp("7"), Path("n")), helper)
    with pytest.raises(Exception, match='assertion failed: "a" == "b"'):
        await run_command(Assert("==", TextExp("a"), TextExp("b")), helper)
    with pytest.raises(Exception, match="assertion failed"):
        await run_command(Assert("~=", TextExp("abc"), TextExp("z")), helper)


@pytest.mark.asyncio
async def test_runner_success(runner):
    result = await runner.run([
        Let("x", NumberExp("2")),
        Show(Path("x")),
    ])
    assert isinstance(result, ExecutionResult)
    assert result.status == "success"
    assert result.value == Number("2")
    assert result.side_effects == [{"topics": ["stdout"], "message": "2"}]
    assert result.format_error() == ""


@pytest.mark.asyncio
async def test_runner_stops_at_the_first_error(runner):
    result = await runner.run([
        Show(TextExp("before")),
        Assert("==", NumberExp("1"), NumberExp("2")),
        Show(TextExp("after")),
    ])
    assert result.status == "error"
    assert result.format_error() == "assertion failed: 1 == 2"
    assert [e["message"] for e in result.side_effects] == ['"before"', "assertion failed: 1 == 2"]
    assert result.side_effects[-1]["topics"] == ["stderr"]


@pytest.mark.asyncio
async def test_runner_keeps_state_between_runs(runner):
    await runner.run([Let("x", TextExp("kept"))])
    result = await runner.run([Show(Path("x"))])
    assert result.status == "success"
    assert result.side_effects == [{"topics": ["stdout"], "message": '"kept"'}]
    assert await runner.evaluate(Path("x")) == Text("kept")


@pytest.mark.asyncio
async def test_runner_from_config_binds_aliases(agent, tmp_path):
    cfg = ReplConfig(aliases={"counter": COUNTER_ID.to_text()}, base_path=str(tmp_path))
    runner = ScriptRunner(Helper.from_config(cfg, agent=agent))
    result = await runner.run([Let("n", Call(Method("counter", "get"), ()))])
    assert result.status == "success"
    assert result.value == Nat(7)


def test_format_error_without_message():
    assert ExecutionResult(status="error").format_error() == "Unknown error"
    assert ExecutionResult(status="success", value=Null()).format_error() == ""
