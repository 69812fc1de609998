"""
Statements and the script runner.

`run_command` executes one statement against a `Helper`. `ScriptRunner` owns a
context and runs statement lists, turning failures into an `ExecutionResult`
the way a host application expects them.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Literal, Dict

from icrepl.icrepl_values import ReplError, Value, Text
from icrepl.icrepl_datatypes import Command, Exp, Let, Show, FuncDef, Assert
from icrepl.icrepl_helper import Helper, _dbg
from icrepl.icrepl_interpreter import evaluate
from icrepl.icrepl_printer import pformat
from icrepl.icrepl_types import cast_type


def _assert_holds(op: str, left: Value, right: Value) -> bool:
    match op:
        case "==":
            return left == right or _cast_equal(left, right)
        case "!=":
            return not (left == right or _cast_equal(left, right))
        case "~=":
            if isinstance(left, Text) and isinstance(right, Text):
                return right.value in left.value
            try:
                ty = right.value_ty()
                return cast_type(left, ty, subtype=True) == cast_type(right, ty)
            except ReplError:
                return False
    raise ReplError(f"unknown assertion operator {op}")


def _cast_equal(left: Value, right: Value) -> bool:
    ty = left.value_ty()
    if ty != right.value_ty():
        return False
    return cast_type(left, ty) == cast_type(right, ty)


async def run_command(cmd: Command, helper: Helper) -> Optional[Value]:
    match cmd:
        case Let(name=name, exp=exp):
            value = await evaluate(exp, helper)
            helper.env[name] = value
            if exp.is_call():
                helper.env["_"] = value
            return value

        case Show(exp=exp):
            value = await evaluate(exp, helper)
            helper.env["_"] = value
            helper.emit('stdout', pformat(value))
            return value

        case FuncDef(name=name, params=params, body=body):
            helper.func_env[name] = (list(params), list(body))
            return None

        case Assert(op=op, left=left_exp, right=right_exp):
            left = await evaluate(left_exp, helper)
            right = await evaluate(right_exp, helper)
            if not _assert_holds(op, left, right):
                raise ReplError(f"assertion failed: {pformat(left)} {op} {pformat(right)}")
            return None

    raise TypeError(f"cannot run {cmd!r}")


@dataclass
class ExecutionResult:
    """The structured result of running a list of statements."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    side_effects: List[Dict] = field(default_factory=list)
    messages: List[Any] = field(default_factory=list)

    def format_error(self) -> str:
        if self.status != 'error':
            return ""
        return str(self.error_message or "Unknown error")


class ScriptRunner:
    """Runs statement lists against one long-lived evaluation context."""

    def __init__(self, helper: Optional[Helper] = None, config=None):
        if helper is None:
            if config is None:
                from icrepl.icrepl_config import load_config
                config = load_config()
            helper = Helper.from_config(config)
        self.helper = helper

    async def run(self, statements: List[Command]) -> ExecutionResult:
        """The main entry point to execute statements."""
        self.helper.side_effects.clear()
        value = None
        for stmt in statements:
            try:
                value = await stmt.run(self.helper)
            except Exception as e:
                _dbg("statement failed:", stmt, e)
                msg = str(e) or type(e).__name__
                self.helper.side_effects.append({'topics': ['stderr'], 'message': msg})
                return ExecutionResult(
                    status='error',
                    error_message=msg,
                    side_effects=list(self.helper.side_effects),
                    messages=list(self.helper.messages),
                )
        return ExecutionResult(
            status='success',
            value=value,
            side_effects=list(self.helper.side_effects),
            messages=list(self.helper.messages),
        )

    async def evaluate(self, exp: Exp) -> Value:
        """Evaluates a single expression; errors propagate."""
        return await evaluate(exp, self.helper)
