"""
Binary encoding and decoding of Candid argument lists.

A message is the magic `DIDL`, a table of compound types, the argument type
codes, and then the argument values. Without expected types both directions
are self-describing: values are encoded with the types they carry, and decoded
with the types found on the wire.
"""

import struct
from typing import List, Optional, Dict, Tuple, Any

from icrepl.icrepl_values import (
    ReplError, Id, Principal,
    Value, Bool, Null, Reserved, NoneValue, Text, Int, Nat, FIXED_INTS,
    Float32, Float64, Opt, Blob, Vec, IDLField, Record, Variant,
    PrincipalValue, ServiceValue, FuncValue,
)
from icrepl.icrepl_types import (
    Type, PrimType, VarType, OptType, VecType, FieldType, RecordType,
    VariantType, Function, FuncType, ServiceType, TypeEnv, NAT8,
    PRIMITIVES, cast_type,
)

MAGIC = b"DIDL"

_PRIM_CODES = {
    'null': -1, 'bool': -2, 'nat': -3, 'int': -4,
    'nat8': -5, 'nat16': -6, 'nat32': -7, 'nat64': -8,
    'int8': -9, 'int16': -10, 'int32': -11, 'int64': -12,
    'float32': -13, 'float64': -14, 'text': -15, 'reserved': -16,
    'empty': -17, 'principal': -24,
}
_CODE_PRIMS = {code: PRIMITIVES[name] for name, code in _PRIM_CODES.items()}

OPT, VEC, RECORD, VARIANT, FUNC, SERVICE = -18, -19, -20, -21, -22, -23

_MODE_CODES = {'query': 1, 'oneway': 2, 'composite_query': 3}
_CODE_MODES = {v: k for k, v in _MODE_CODES.items()}

_FIXED_FORMATS = {
    'nat8': '<B', 'nat16': '<H', 'nat32': '<I', 'nat64': '<Q',
    'int8': '<b', 'int16': '<h', 'int32': '<i', 'int64': '<q',
}


# --------------------------
# LEB128
# --------------------------

def leb128(n: int) -> bytes:
    if n < 0:
        raise ValueError("leb128 expects a non-negative integer")
    out = bytearray()
    while True:
        byte = n & 0x7f
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def sleb128(n: int) -> bytes:
    out = bytearray()
    while True:
        byte = n & 0x7f
        n >>= 7
        done = (n == 0 and not byte & 0x40) or (n == -1 and byte & 0x40)
        if done:
            out.append(byte)
            return bytes(out)
        out.append(byte | 0x80)


def read_leb128(data: bytes) -> int:
    return _Reader(data).uleb()


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def byte(self) -> int:
        if self.pos >= len(self.data):
            raise ReplError("unexpected end of message")
        b = self.data[self.pos]
        self.pos += 1
        return b

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ReplError("unexpected end of message")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def uleb(self) -> int:
        result, shift = 0, 0
        while True:
            b = self.byte()
            result |= (b & 0x7f) << shift
            shift += 7
            if not b & 0x80:
                return result

    def sleb(self) -> int:
        result, shift = 0, 0
        while True:
            b = self.byte()
            result |= (b & 0x7f) << shift
            shift += 7
            if not b & 0x80:
                if b & 0x40:
                    result -= 1 << shift
                return result

    def text(self) -> str:
        raw = self.take(self.uleb())
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ReplError(f"invalid utf-8 in text: {e}") from e


# --------------------------
# Encoding
# --------------------------

class _TypeTable:
    """Collects the compound types of a message, assigning table indices."""

    def __init__(self, env: TypeEnv):
        self.env = env
        self.entries: List[Optional[bytes]] = []
        self.index: Dict[Any, int] = {}

    def code(self, ty: Type) -> int:
        key = ('var', ty.name) if isinstance(ty, VarType) else ty
        resolved = self.env.rep(ty)
        if isinstance(resolved, PrimType):
            return _PRIM_CODES[resolved.name]
        if key in self.index:
            return self.index[key]
        idx = len(self.entries)
        self.index[key] = idx
        self.entries.append(None)
        self.entries[idx] = self._entry(resolved)
        return idx

    def _entry(self, ty: Type) -> bytes:
        match ty:
            case OptType(inner=inner):
                return sleb128(OPT) + sleb128(self.code(inner))
            case VecType(inner=inner):
                return sleb128(VEC) + sleb128(self.code(inner))
            case RecordType(fields=fields):
                return sleb128(RECORD) + self._fields(fields)
            case VariantType(fields=fields):
                return sleb128(VARIANT) + self._fields(fields)
            case FuncType(func=func):
                return sleb128(FUNC) + self._function(func)
            case ServiceType(methods=methods):
                out = bytearray(sleb128(SERVICE))
                out += leb128(len(methods))
                for name, mty in sorted(methods, key=lambda m: m[0]):
                    raw = name.encode('utf-8')
                    out += leb128(len(raw)) + raw + sleb128(self.code(mty))
                return bytes(out)
        raise ReplError(f"cannot serialize type {ty}")

    def _fields(self, fields) -> bytes:
        out = bytearray(leb128(len(fields)))
        for f in sorted(fields, key=lambda f: f.id.get_id()):
            out += leb128(f.id.get_id()) + sleb128(self.code(f.ty))
        return bytes(out)

    def _function(self, func: Function) -> bytes:
        out = bytearray(leb128(len(func.args)))
        for t in func.args:
            out += sleb128(self.code(t))
        out += leb128(len(func.rets))
        for t in func.rets:
            out += sleb128(self.code(t))
        out += leb128(len(func.modes))
        for m in func.modes:
            out.append(_MODE_CODES[m])
        return bytes(out)


def _write_principal(buf: bytearray, p: Principal) -> None:
    buf.append(1)
    buf += leb128(len(p.raw)) + p.raw


def _write_value(buf: bytearray, v: Value, ty: Type, env: TypeEnv) -> None:
    ty = env.rep(ty)
    match ty:
        case PrimType(name=name):
            if name in ('null', 'reserved'):
                return
            if name == 'bool':
                buf.append(1 if v.value else 0)
            elif name == 'nat':
                buf += leb128(v.value)
            elif name == 'int':
                buf += sleb128(v.value)
            elif name in _FIXED_FORMATS:
                buf += struct.pack(_FIXED_FORMATS[name], v.value)
            elif name == 'float32':
                buf += struct.pack('<f', v.value)
            elif name == 'float64':
                buf += struct.pack('<d', v.value)
            elif name == 'text':
                raw = v.value.encode('utf-8')
                buf += leb128(len(raw)) + raw
            elif name == 'principal':
                _write_principal(buf, v.principal)
            else:
                raise ReplError(f"cannot serialize a value of type {name}")
        case OptType(inner=inner):
            if isinstance(v, Opt):
                buf.append(1)
                _write_value(buf, v.value, inner, env)
            else:
                buf.append(0)
        case VecType(inner=inner):
            if isinstance(v, Blob):
                buf += leb128(len(v.value)) + v.value
            else:
                buf += leb128(len(v.items))
                for item in v.items:
                    _write_value(buf, item, inner, env)
        case RecordType(fields=fields):
            by_id = {f.id.get_id(): f.val for f in v.fields}
            for f in fields:
                _write_value(buf, by_id[f.id.get_id()], f.ty, env)
        case VariantType(fields=fields):
            buf += leb128(v.index)
            _write_value(buf, v.field.val, fields[v.index].ty, env)
        case FuncType():
            buf.append(1)
            _write_principal(buf, v.principal)
            raw = v.method.encode('utf-8')
            buf += leb128(len(raw)) + raw
        case ServiceType():
            _write_principal(buf, v.principal)
        case _:
            raise ReplError(f"cannot serialize a value of type {ty}")


def _fill_missing(ty: Type, env: TypeEnv) -> Value:
    match env.rep(ty):
        case OptType():
            return NoneValue()
        case PrimType(name='null'):
            return Null()
        case PrimType(name='reserved'):
            return Reserved()
    raise ReplError("not enough arguments")


def encode_args(values: List[Value], types: Optional[List[Type]] = None,
                env: Optional[TypeEnv] = None) -> bytes:
    """
    Serializes an argument list.

    When `types` is given each value is cast to its type first; trailing
    arguments may be omitted when their types are `opt`, `null` or `reserved`.
    Otherwise each value is encoded with its own `value_ty()`.
    """
    env = env or TypeEnv()
    values = list(values)
    if types is None:
        types = [v.value_ty() for v in values]
    else:
        types = list(types)
        if len(values) > len(types):
            raise ReplError(f"wrong number of arguments: expected {len(types)}, got {len(values)}")
        while len(values) < len(types):
            values.append(_fill_missing(types[len(values)], env))
    cast = [cast_type(v, t, env) for v, t in zip(values, types)]

    table = _TypeTable(env)
    codes = [table.code(t) for t in types]
    out = bytearray(MAGIC)
    out += leb128(len(table.entries))
    for entry in table.entries:
        out += entry
    out += leb128(len(codes))
    for c in codes:
        out += sleb128(c)
    for v, t in zip(cast, types):
        _write_value(out, v, t, env)
    return bytes(out)


# --------------------------
# Decoding
# --------------------------

def _wire_ref(code: int, table_len: int) -> Type:
    if code >= 0:
        if code >= table_len:
            raise ReplError(f"type index {code} out of range")
        return VarType(f"table{code}")
    if code not in _CODE_PRIMS:
        raise ReplError(f"unsupported type code {code}")
    return _CODE_PRIMS[code]


def _read_table(r: _Reader) -> Tuple[TypeEnv, int]:
    n = r.uleb()
    env = TypeEnv()
    for i in range(n):
        code = r.sleb()
        if code in (OPT, VEC):
            inner = _wire_ref(r.sleb(), n)
            env.defs[f"table{i}"] = OptType(inner) if code == OPT else VecType(inner)
        elif code in (RECORD, VARIANT):
            fields = []
            for _ in range(r.uleb()):
                fid = r.uleb()
                fields.append(FieldType(Id(fid), _wire_ref(r.sleb(), n)))
            env.defs[f"table{i}"] = RecordType(tuple(fields)) if code == RECORD else VariantType(tuple(fields))
        elif code == FUNC:
            args = tuple(_wire_ref(r.sleb(), n) for _ in range(r.uleb()))
            rets = tuple(_wire_ref(r.sleb(), n) for _ in range(r.uleb()))
            modes = tuple(_CODE_MODES.get(r.byte(), 'unknown') for _ in range(r.uleb()))
            env.defs[f"table{i}"] = FuncType(Function(args, rets, modes))
        elif code == SERVICE:
            methods = []
            for _ in range(r.uleb()):
                name = r.text()
                methods.append((name, _wire_ref(r.sleb(), n)))
            env.defs[f"table{i}"] = ServiceType(tuple(methods))
        else:
            raise ReplError(f"unsupported type code {code} in type table")
    return env, n


def _read_principal(r: _Reader) -> Principal:
    if r.byte() != 1:
        raise ReplError("opaque principal reference not supported")
    return Principal(r.take(r.uleb()))


def _read_value(r: _Reader, ty: Type, env: TypeEnv) -> Value:
    ty = env.rep(ty)
    match ty:
        case PrimType(name=name):
            if name == 'null':
                return Null()
            if name == 'reserved':
                return Reserved()
            if name == 'bool':
                b = r.byte()
                if b > 1:
                    raise ReplError(f"invalid bool byte {b}")
                return Bool(b == 1)
            if name == 'nat':
                return Nat(r.uleb())
            if name == 'int':
                return Int(r.sleb())
            if name in _FIXED_FORMATS:
                fmt = _FIXED_FORMATS[name]
                (n,) = struct.unpack(fmt, r.take(struct.calcsize(fmt)))
                return FIXED_INTS[name](n)
            if name == 'float32':
                return Float32(struct.unpack('<f', r.take(4))[0])
            if name == 'float64':
                return Float64(struct.unpack('<d', r.take(8))[0])
            if name == 'text':
                return Text(r.text())
            if name == 'principal':
                return PrincipalValue(_read_principal(r))
            raise ReplError(f"cannot decode a value of type {name}")
        case OptType(inner=inner):
            flag = r.byte()
            if flag == 0:
                return NoneValue()
            if flag == 1:
                return Opt(_read_value(r, inner, env))
            raise ReplError(f"invalid opt flag {flag}")
        case VecType(inner=inner):
            n = r.uleb()
            if env.rep(inner) == NAT8:
                return Blob(r.take(n))
            return Vec(tuple(_read_value(r, inner, env) for _ in range(n)))
        case RecordType(fields=fields):
            return Record(tuple(IDLField(f.id, _read_value(r, f.ty, env)) for f in fields))
        case VariantType(fields=fields):
            idx = r.uleb()
            if idx >= len(fields):
                raise ReplError(f"variant index {idx} out of range")
            f = fields[idx]
            return Variant(IDLField(f.id, _read_value(r, f.ty, env)), idx)
        case FuncType():
            if r.byte() != 1:
                raise ReplError("opaque function reference not supported")
            p = _read_principal(r)
            return FuncValue(p, r.text())
        case ServiceType():
            return ServiceValue(_read_principal(r))
    raise ReplError(f"cannot decode a value of type {ty}")


def decode_args(data: bytes, types: Optional[List[Type]] = None,
                env: Optional[TypeEnv] = None) -> List[Value]:
    """
    Deserializes an argument list.

    Values are first read with the wire types. When `types` is given they are
    then coerced to the expected types: extra arguments are dropped, missing
    `opt`/`null`/`reserved` arguments are filled, and an `opt` that does not
    fit becomes an empty opt.
    """
    r = _Reader(bytes(data))
    if r.take(4) != MAGIC:
        raise ReplError("wrong magic number, not a Candid message")
    wire_env, n = _read_table(r)
    wire_types = [_wire_ref(r.sleb(), n) for _ in range(r.uleb())]
    values = [_read_value(r, t, wire_env) for t in wire_types]
    if r.pos != len(r.data):
        raise ReplError(f"{len(r.data) - r.pos} trailing bytes after the arguments")
    if types is None:
        return values
    env = env or TypeEnv()
    out = []
    for i, t in enumerate(types):
        if i < len(values):
            out.append(cast_type(values[i], t, env, subtype=True))
        else:
            out.append(_fill_missing(t, env))
    return out
