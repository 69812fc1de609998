"""
Defines the expression tree and statement types the icrepl evaluator runs.

Script text is parsed elsewhere; these classes are what the parser hands over.
All nodes are immutable. `Exp.eval` and `Command.run` are thin entry points
into the interpreter and runtime modules.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from icrepl.icrepl_values import ReplError, Label, Principal
from icrepl.icrepl_types import Type


class UndefinedVariable(ReplError):
    def __init__(self, name: str):
        super().__init__(f"Undefined variable {name}")
        self.name = name


# =================================================================
# Call targets
# =================================================================

@dataclass(frozen=True)
class Method:
    """`canister.method`, where `canister` is principal text or an alias."""
    canister: str
    method: str

    def __str__(self):
        return f"{self.canister}.{self.method}"


@dataclass(frozen=True)
class CallMode:
    """How a `Call` is carried out: `call`, `encode`, or `proxy` through a relay."""
    kind: str
    relay: Optional[str] = None

    @classmethod
    def proxy(cls, relay: str) -> 'CallMode':
        return cls('proxy', relay)


CALL = CallMode('call')
ENCODE = CallMode('encode')


# =================================================================
# Selectors
# =================================================================

class Selector:
    """Abstract base class for the steps of a projection path."""
    __slots__ = ()


@dataclass(frozen=True)
class Index(Selector):
    index: int


@dataclass(frozen=True)
class Get(Selector):
    """Field access by name or numeric id."""
    name: str


@dataclass(frozen=True)
class Option(Selector):
    """`?`: unwraps an opt."""
    pass


@dataclass(frozen=True)
class Size(Selector):
    pass


@dataclass(frozen=True)
class Map(Selector):
    func: str


@dataclass(frozen=True)
class Filter(Selector):
    func: str


@dataclass(frozen=True)
class Fold(Selector):
    init: 'Exp'
    func: str


# =================================================================
# Expressions
# =================================================================

class Exp:
    """Abstract base class for expressions."""
    __slots__ = ()

    def is_call(self) -> bool:
        return False

    async def eval(self, helper):
        from icrepl.icrepl_interpreter import evaluate
        return await evaluate(self, helper)


@dataclass(frozen=True)
class Field:
    id: Label
    val: Exp


@dataclass(frozen=True)
class FuncCall:
    method: Method
    args: Tuple[Exp, ...]


@dataclass(frozen=True)
class Path(Exp):
    name: str
    selectors: Tuple[Selector, ...] = ()


@dataclass(frozen=True)
class AnnVal(Exp):
    exp: Exp
    ty: Type


@dataclass(frozen=True)
class Call(Exp):
    method: Optional[Method]
    args: Optional[Tuple[Exp, ...]]
    mode: CallMode = CALL

    def is_call(self) -> bool:
        return self.mode == CALL


@dataclass(frozen=True)
class ParCall(Exp):
    calls: Tuple[FuncCall, ...]


@dataclass(frozen=True)
class Decode(Exp):
    method: Optional[Method]
    blob: Exp


@dataclass(frozen=True)
class Apply(Exp):
    func: str
    args: Tuple[Exp, ...] = ()


@dataclass(frozen=True)
class Fail(Exp):
    exp: Exp


@dataclass(frozen=True)
class BoolExp(Exp):
    value: bool


@dataclass(frozen=True)
class NullExp(Exp):
    pass


@dataclass(frozen=True)
class TextExp(Exp):
    value: str


@dataclass(frozen=True)
class NumberExp(Exp):
    value: str


@dataclass(frozen=True)
class Float64Exp(Exp):
    value: float


@dataclass(frozen=True)
class OptExp(Exp):
    exp: Exp


@dataclass(frozen=True)
class BlobExp(Exp):
    value: bytes


@dataclass(frozen=True)
class VecExp(Exp):
    items: Tuple[Exp, ...]


@dataclass(frozen=True)
class RecordExp(Exp):
    fields: Tuple[Field, ...]


@dataclass(frozen=True)
class VariantExp(Exp):
    field: Field
    index: int = 0


@dataclass(frozen=True)
class PrincipalExp(Exp):
    principal: Principal


@dataclass(frozen=True)
class ServiceExp(Exp):
    principal: Principal


@dataclass(frozen=True)
class FuncExp(Exp):
    principal: Principal
    method: str


# =================================================================
# Statements
# =================================================================

class Command:
    """Abstract base class for statements."""
    __slots__ = ()

    async def run(self, helper):
        from icrepl.icrepl_runtime import run_command
        return await run_command(self, helper)


@dataclass(frozen=True)
class Let(Command):
    name: str
    exp: Exp


@dataclass(frozen=True)
class Show(Command):
    exp: Exp


@dataclass(frozen=True)
class FuncDef(Command):
    name: str
    params: Tuple[str, ...]
    body: Tuple[Command, ...]


@dataclass(frozen=True)
class Assert(Command):
    """`assert left op right`, where op is `==`, `!=` or `~=` (equal after casting)."""
    op: str
    left: Exp
    right: Exp
