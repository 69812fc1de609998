"""
The Candid type model: primitive and compound types, type environments,
function signatures, and the value casting rules used by annotations, argument
encoding and result decoding.
"""

import math
import struct
from dataclasses import dataclass
from typing import Tuple, Dict, Optional

from icrepl.icrepl_values import (
    Label, Unnamed, ReplError, check_unique,
    Value, Bool, Null, Reserved, NoneValue, Text, Number, Int, Nat, FixedInt,
    FIXED_INTS, Nat8, Float32, Float64, Opt, Blob, Vec, IDLField, Record,
    Variant, PrincipalValue, ServiceValue, FuncValue,
)


class Type:
    """Abstract base class for types."""
    __slots__ = ()


@dataclass(frozen=True)
class PrimType(Type):
    name: str

    def __str__(self):
        return self.name


NULL = PrimType('null')
BOOL = PrimType('bool')
NAT = PrimType('nat')
INT = PrimType('int')
NAT8 = PrimType('nat8')
NAT16 = PrimType('nat16')
NAT32 = PrimType('nat32')
NAT64 = PrimType('nat64')
INT8 = PrimType('int8')
INT16 = PrimType('int16')
INT32 = PrimType('int32')
INT64 = PrimType('int64')
FLOAT32 = PrimType('float32')
FLOAT64 = PrimType('float64')
TEXT = PrimType('text')
RESERVED = PrimType('reserved')
EMPTY = PrimType('empty')
PRINCIPAL = PrimType('principal')

PRIMITIVES = {t.name: t for t in (
    NULL, BOOL, NAT, INT, NAT8, NAT16, NAT32, NAT64, INT8, INT16, INT32, INT64,
    FLOAT32, FLOAT64, TEXT, RESERVED, EMPTY, PRINCIPAL,
)}

_INT_BOUNDS = {
    'nat8': (0, 2 ** 8 - 1),
    'nat16': (0, 2 ** 16 - 1),
    'nat32': (0, 2 ** 32 - 1),
    'nat64': (0, 2 ** 64 - 1),
    'int8': (-2 ** 7, 2 ** 7 - 1),
    'int16': (-2 ** 15, 2 ** 15 - 1),
    'int32': (-2 ** 31, 2 ** 31 - 1),
    'int64': (-2 ** 63, 2 ** 63 - 1),
}


@dataclass(frozen=True)
class VarType(Type):
    """A reference to a named type in a `TypeEnv`."""
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class OptType(Type):
    inner: Type

    def __str__(self):
        return f"opt {self.inner}"


@dataclass(frozen=True)
class VecType(Type):
    inner: Type

    def __str__(self):
        if self.inner == NAT8:
            return "blob"
        return f"vec {self.inner}"


@dataclass(frozen=True)
class FieldType:
    id: Label
    ty: Type


def _is_tuple_fields(fields) -> bool:
    return bool(fields) and all(
        isinstance(f.id, Unnamed) and f.id.get_id() == i for i, f in enumerate(fields))


@dataclass(frozen=True)
class RecordType(Type):
    fields: Tuple[FieldType, ...]

    @classmethod
    def make(cls, fields) -> 'RecordType':
        ordered = sorted(fields, key=lambda f: f.id.get_id())
        check_unique(f.id for f in ordered)
        return cls(tuple(ordered))

    @classmethod
    def tuple(cls, types) -> 'RecordType':
        return cls(tuple(FieldType(Unnamed(i), t) for i, t in enumerate(types)))

    def __str__(self):
        if not self.fields:
            return "record {}"
        if _is_tuple_fields(self.fields):
            return "record { " + "; ".join(str(f.ty) for f in self.fields) + " }"
        return "record { " + "; ".join(f"{f.id} : {f.ty}" for f in self.fields) + " }"


@dataclass(frozen=True)
class VariantType(Type):
    fields: Tuple[FieldType, ...]

    @classmethod
    def make(cls, fields) -> 'VariantType':
        ordered = sorted(fields, key=lambda f: f.id.get_id())
        check_unique(f.id for f in ordered)
        return cls(tuple(ordered))

    def __str__(self):
        if not self.fields:
            return "variant {}"
        parts = [str(f.id) if f.ty == NULL else f"{f.id} : {f.ty}" for f in self.fields]
        return "variant { " + "; ".join(parts) + " }"


@dataclass(frozen=True)
class Function:
    """A method signature: argument types, result types and annotations."""
    args: Tuple[Type, ...] = ()
    rets: Tuple[Type, ...] = ()
    modes: Tuple[str, ...] = ()

    def is_query(self) -> bool:
        return 'query' in self.modes or 'composite_query' in self.modes

    def __str__(self):
        args = ", ".join(str(t) for t in self.args)
        rets = ", ".join(str(t) for t in self.rets)
        modes = "".join(f" {m}" for m in self.modes)
        return f"({args}) -> ({rets}){modes}"


@dataclass(frozen=True)
class FuncType(Type):
    func: Function

    def __str__(self):
        return f"func {self.func}"


@dataclass(frozen=True)
class ServiceType(Type):
    methods: Tuple[Tuple[str, Type], ...] = ()

    def __str__(self):
        if not self.methods:
            return "service {}"
        body = " ".join(f"{name} : {_method_str(ty)};" for name, ty in self.methods)
        return "service { " + body + " }"


def _method_str(ty: Type) -> str:
    if isinstance(ty, FuncType):
        return str(ty.func)
    return str(ty)


@dataclass(frozen=True)
class ClassType(Type):
    """A service constructor: init argument types and the service it produces."""
    args: Tuple[Type, ...]
    service: Type

    def __str__(self):
        return "(" + ", ".join(str(t) for t in self.args) + f") -> {self.service}"


class TypeEnv:
    """Named type definitions of one interface."""

    def __init__(self, defs: Optional[Dict[str, Type]] = None):
        self.defs: Dict[str, Type] = dict(defs or {})

    def find_type(self, name: str) -> Type:
        try:
            return self.defs[name]
        except KeyError:
            raise ReplError(f"unbound type identifier {name}") from None

    def rep(self, ty: Type) -> Type:
        """Follows `VarType` references until a structural type is reached."""
        seen = set()
        while isinstance(ty, VarType):
            if ty.name in seen:
                raise ReplError(f"{ty.name} is a cyclic type alias")
            seen.add(ty.name)
            ty = self.find_type(ty.name)
        return ty

    def as_func(self, ty: Type) -> Function:
        ty = self.rep(ty)
        if not isinstance(ty, FuncType):
            raise ReplError(f"{ty} is not a function type")
        return ty.func

    def as_service(self, ty: Type) -> Dict[str, Function]:
        ty = self.rep(ty)
        if isinstance(ty, ClassType):
            ty = self.rep(ty.service)
        if not isinstance(ty, ServiceType):
            raise ReplError(f"{ty} is not a service type")
        return {name: self.as_func(m) for name, m in ty.methods}

    def __contains__(self, name):
        return name in self.defs

    def __repr__(self):
        return f"TypeEnv({sorted(self.defs)})"


# =================================================================
# Value types
# =================================================================

def value_type(v: Value) -> Type:
    match v:
        case Bool():
            return BOOL
        case Null():
            return NULL
        case Reserved():
            return RESERVED
        case NoneValue():
            return OptType(NULL)
        case Text():
            return TEXT
        case Number() | Int():
            return INT
        case Nat():
            return NAT
        case FixedInt():
            return PRIMITIVES[v.type_name]
        case Float32():
            return FLOAT32
        case Float64():
            return FLOAT64
        case Opt(value=inner):
            return OptType(value_type(inner))
        case Blob():
            return VecType(NAT8)
        case Vec(items=items):
            return VecType(value_type(items[0]) if items else EMPTY)
        case Record(fields=fields):
            return RecordType(tuple(FieldType(f.id, value_type(f.val)) for f in fields))
        case Variant(field=f):
            return VariantType((FieldType(f.id, value_type(f.val)),))
        case PrincipalValue():
            return PRINCIPAL
        case ServiceValue():
            return ServiceType(())
        case FuncValue():
            return FuncType(Function())
    raise TypeError(f"not a value: {v!r}")


# =================================================================
# Casting
# =================================================================

def _int_of(v: Value) -> Optional[int]:
    match v:
        case Number():
            return v.to_int()
        case Int(value=n) | Nat(value=n) | FixedInt(value=n):
            return n
    return None


def _float_of(v: Value) -> Optional[float]:
    match v:
        case Float32(value=x) | Float64(value=x):
            return x
        case Number(value=s):
            try:
                return float(s.replace('_', ''))
            except ValueError:
                return float(v.to_int())
        case Int(value=n) | Nat(value=n) | FixedInt(value=n):
            return float(n)
    return None


def _to_f32(x: float) -> float:
    if math.isnan(x) or math.isinf(x):
        return x
    try:
        return struct.unpack('<f', struct.pack('<f', x))[0]
    except OverflowError:
        return math.copysign(math.inf, x)


def _cast_prim(v: Value, ty: PrimType) -> Value:
    name = ty.name
    if name == 'int':
        n = _int_of(v)
        if n is not None:
            return Int(n)
    elif name == 'nat':
        if isinstance(v, (Number, Nat)) or (isinstance(v, FixedInt) and v.type_name.startswith('nat')):
            n = _int_of(v)
            if n >= 0:
                return Nat(n)
    elif name in _INT_BOUNDS:
        if isinstance(v, FIXED_INTS[name]):
            return v
        if isinstance(v, Number):
            n = v.to_int()
            lo, hi = _INT_BOUNDS[name]
            if not lo <= n <= hi:
                raise ReplError(f"{v.value} is out of range for {name}")
            return FIXED_INTS[name](n)
    elif name == 'float64':
        x = _float_of(v)
        if x is not None:
            return Float64(x)
    elif name == 'float32':
        x = _float_of(v)
        if x is not None:
            return Float32(_to_f32(x))
    elif name == 'text':
        if isinstance(v, Text):
            return v
    elif name == 'bool':
        if isinstance(v, Bool):
            return v
    elif name == 'null':
        if isinstance(v, Null):
            return v
    elif name == 'principal':
        if isinstance(v, PrincipalValue):
            return v
    raise ReplError(f"{v} cannot be of type {ty}")


def _default_for_missing(ty: Type) -> Optional[Value]:
    match ty:
        case OptType():
            return NoneValue()
        case PrimType(name='null'):
            return Null()
        case PrimType(name='reserved'):
            return Reserved()
    return None


def cast_type(v: Value, ty: Type, env: Optional[TypeEnv] = None, subtype: bool = False) -> Value:
    """
    Casts `v` to the type `ty`, resolving named types through `env`.

    With `subtype` set (used when decoding replies against an expected
    signature), an `opt` whose content does not fit becomes an empty opt
    instead of failing.
    """
    if isinstance(ty, VarType):
        if env is None:
            raise ReplError(f"unbound type identifier {ty.name}")
        ty = env.rep(ty)

    match ty:
        case PrimType(name='reserved'):
            return Reserved()
        case PrimType(name='empty'):
            raise ReplError(f"{v} cannot be of type empty")
        case PrimType():
            return _cast_prim(v, ty)

        case OptType(inner=inner):
            match v:
                case Null() | NoneValue() | Reserved():
                    return NoneValue()
                case Opt(value=x):
                    if subtype:
                        try:
                            return Opt(cast_type(x, inner, env, subtype))
                        except ReplError:
                            return NoneValue()
                    return Opt(cast_type(x, inner, env, subtype))
                case _:
                    if subtype:
                        try:
                            return Opt(cast_type(v, inner, env, subtype))
                        except ReplError:
                            return NoneValue()
                    return Opt(cast_type(v, inner, env, subtype))

        case VecType(inner=inner):
            elem = env.rep(inner) if env is not None else inner
            match v:
                case Blob(value=b):
                    if elem == NAT8:
                        return v
                    items = tuple(Nat8(x) for x in b)
                case Vec(items=items):
                    pass
                case _:
                    raise ReplError(f"{v} cannot be of type {ty}")
            cast = [cast_type(i, inner, env, subtype) for i in items]
            if elem == NAT8:
                return Blob(bytes(c.value for c in cast))
            return Vec(tuple(cast))

        case RecordType(fields=tfs):
            if not isinstance(v, Record):
                raise ReplError(f"{v} cannot be of type {ty}")
            by_id = {f.id.get_id(): f.val for f in v.fields}
            out = []
            for tf in tfs:
                fid = tf.id.get_id()
                if fid in by_id:
                    out.append(IDLField(tf.id, cast_type(by_id[fid], tf.ty, env, subtype)))
                    continue
                filler = _default_for_missing(env.rep(tf.ty) if env is not None else tf.ty)
                if filler is None:
                    raise ReplError(f"record field {tf.id} not found")
                out.append(IDLField(tf.id, filler))
            return Record(tuple(out))

        case VariantType(fields=tfs):
            if not isinstance(v, Variant):
                raise ReplError(f"{v} cannot be of type {ty}")
            for idx, tf in enumerate(tfs):
                if tf.id == v.field.id:
                    return Variant(IDLField(tf.id, cast_type(v.field.val, tf.ty, env, subtype)), idx)
            raise ReplError(f"variant field {v.field.id} not found in {ty}")

        case ServiceType():
            match v:
                case ServiceValue():
                    return v
                case PrincipalValue(principal=p):
                    return ServiceValue(p)

        case FuncType():
            if isinstance(v, FuncValue):
                return v

    raise ReplError(f"{v} cannot be of type {ty}")
