"""
Defines the runtime values the icrepl evaluator works with.

Every value is an immutable dataclass. Record and variant fields carry a
`Label`; labels compare by their numeric id, so `Named('a')` and the `Id` of
its hash are the same field. Principals have their own small class with the
textual (checksummed base32) encoding.
"""

import base64
import binascii
import hashlib
import re
import zlib
from dataclasses import dataclass
from typing import Tuple, Optional, Iterable, List


class ReplError(Exception):
    """Base class for evaluation failures reported to the script author."""
    pass


def idl_hash(name: str) -> int:
    """The field-name hash used for record and variant labels."""
    h = 0
    for b in name.encode('utf-8'):
        h = (h * 223 + b) % (2 ** 32)
    return h


# =================================================================
# Labels
# =================================================================

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_KEYWORDS = frozenset({
    'blob', 'bool', 'composite_query', 'empty', 'false', 'float32', 'float64',
    'func', 'import', 'int', 'int8', 'int16', 'int32', 'int64', 'nat', 'nat8',
    'nat16', 'nat32', 'nat64', 'null', 'oneway', 'opt', 'principal', 'query',
    'record', 'reserved', 'service', 'text', 'true', 'type', 'variant', 'vec',
})


class Label:
    """Abstract base class for record and variant field labels."""
    __slots__ = ()

    def get_id(self) -> int:
        raise NotImplementedError

    def __eq__(self, other):
        if not isinstance(other, Label):
            return NotImplemented
        return self.get_id() == other.get_id()

    def __hash__(self):
        return hash(self.get_id())


class Named(Label):
    __slots__ = ('name',)

    def __init__(self, name: str):
        self.name = name

    def get_id(self) -> int:
        return idl_hash(self.name)

    def __str__(self):
        if _IDENT_RE.match(self.name) and self.name not in _KEYWORDS:
            return self.name
        escaped = self.name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'

    def __repr__(self):
        return f"Named({self.name!r})"


class Id(Label):
    __slots__ = ('num',)

    def __init__(self, num: int):
        self.num = num

    def get_id(self) -> int:
        return self.num

    def __str__(self):
        return str(self.num)

    def __repr__(self):
        return f"Id({self.num})"


class Unnamed(Label):
    """A positional label, as in the fields of a tuple."""
    __slots__ = ('num',)

    def __init__(self, num: int):
        self.num = num

    def get_id(self) -> int:
        return self.num

    def __str__(self):
        return str(self.num)

    def __repr__(self):
        return f"Unnamed({self.num})"


def label_of(name: str) -> Label:
    """Label for a field selector: digits are numeric ids, anything else a name."""
    if name.isdigit():
        return Id(int(name))
    return Named(name)


def check_unique(labels: Iterable[Label]) -> None:
    """Fails if two adjacent labels of an id-sorted sequence share an id."""
    prev = None
    for lab in labels:
        if prev is not None and prev.get_id() == lab.get_id():
            raise ReplError(f"label '{lab}' hash collision with '{prev}'")
        prev = lab


# =================================================================
# Principals
# =================================================================

class Principal:
    """An opaque identifier of a canister or user, at most 29 bytes."""
    __slots__ = ('raw',)

    def __init__(self, raw: bytes):
        if len(raw) > 29:
            raise ValueError(f"principal is {len(raw)} bytes, at most 29 allowed")
        self.raw = bytes(raw)

    @classmethod
    def from_text(cls, text: str) -> 'Principal':
        s = text.replace('-', '').upper()
        padded = s + '=' * ((-len(s)) % 8)
        try:
            decoded = base64.b32decode(padded)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid principal text {text!r}") from e
        if len(decoded) < 4:
            raise ValueError(f"invalid principal text {text!r}")
        checksum, body = decoded[:4], decoded[4:]
        if zlib.crc32(body).to_bytes(4, 'big') != checksum:
            raise ValueError(f"invalid principal checksum in {text!r}")
        p = cls(body)
        if p.to_text() != text:
            raise ValueError(f"principal text {text!r} is not in canonical form")
        return p

    @classmethod
    def anonymous(cls) -> 'Principal':
        return cls(b'\x04')

    @classmethod
    def management_canister(cls) -> 'Principal':
        return cls(b'')

    @classmethod
    def self_authenticating(cls, der_public_key: bytes) -> 'Principal':
        return cls(hashlib.sha224(der_public_key).digest() + b'\x02')

    def to_text(self) -> str:
        data = zlib.crc32(self.raw).to_bytes(4, 'big') + self.raw
        s = base64.b32encode(data).decode('ascii').lower().rstrip('=')
        return '-'.join(s[i:i + 5] for i in range(0, len(s), 5))

    def __eq__(self, other):
        if not isinstance(other, Principal):
            return NotImplemented
        return self.raw == other.raw

    def __hash__(self):
        return hash(self.raw)

    def __str__(self):
        return self.to_text()

    def __repr__(self):
        return f"Principal({self.to_text()!r})"


# =================================================================
# Values
# =================================================================

class Value:
    """Abstract base class for all runtime values."""
    __slots__ = ()

    def value_ty(self):
        # local import: types depend on labels defined here
        from icrepl.icrepl_types import value_type
        return value_type(self)

    def __str__(self):
        from icrepl.icrepl_printer import Printer
        return Printer().pformat(self)


@dataclass(frozen=True)
class Bool(Value):
    value: bool


@dataclass(frozen=True)
class Null(Value):
    pass


@dataclass(frozen=True)
class Reserved(Value):
    pass


@dataclass(frozen=True)
class NoneValue(Value):
    """The empty `opt`."""
    pass


@dataclass(frozen=True)
class Text(Value):
    value: str


@dataclass(frozen=True)
class Number(Value):
    """A numeric literal whose type has not been decided yet."""
    value: str

    def to_int(self) -> int:
        s = self.value.replace('_', '')
        try:
            if s.lstrip('+-').lower().startswith('0x'):
                return int(s, 16)
            return int(s)
        except ValueError:
            raise ReplError(f"{self.value} is not an integer") from None


@dataclass(frozen=True)
class Int(Value):
    value: int


@dataclass(frozen=True)
class Nat(Value):
    value: int


@dataclass(frozen=True)
class FixedInt(Value):
    """Base for the fixed-width integer values; subclasses only differ by width."""
    value: int
    type_name = ''


class Nat8(FixedInt):
    type_name = 'nat8'


class Nat16(FixedInt):
    type_name = 'nat16'


class Nat32(FixedInt):
    type_name = 'nat32'


class Nat64(FixedInt):
    type_name = 'nat64'


class Int8(FixedInt):
    type_name = 'int8'


class Int16(FixedInt):
    type_name = 'int16'


class Int32(FixedInt):
    type_name = 'int32'


class Int64(FixedInt):
    type_name = 'int64'


FIXED_INTS = {cls.type_name: cls for cls in (Nat8, Nat16, Nat32, Nat64, Int8, Int16, Int32, Int64)}


@dataclass(frozen=True)
class Float32(Value):
    value: float


@dataclass(frozen=True)
class Float64(Value):
    value: float


@dataclass(frozen=True)
class Opt(Value):
    value: Value


@dataclass(frozen=True)
class Blob(Value):
    value: bytes


@dataclass(frozen=True)
class Vec(Value):
    items: Tuple[Value, ...]


@dataclass(frozen=True)
class IDLField:
    id: Label
    val: Value


@dataclass(frozen=True)
class Record(Value):
    fields: Tuple[IDLField, ...]

    @classmethod
    def make(cls, fields: Iterable[IDLField]) -> 'Record':
        """Builds a record with fields sorted by label id; repeated labels fail."""
        ordered = sorted(fields, key=lambda f: f.id.get_id())
        check_unique(f.id for f in ordered)
        return cls(tuple(ordered))

    @classmethod
    def tuple(cls, values: Iterable[Value]) -> 'Record':
        return cls(tuple(IDLField(Unnamed(i), v) for i, v in enumerate(values)))

    def get(self, name: str) -> Optional[Value]:
        want = label_of(name).get_id()
        for f in self.fields:
            if f.id.get_id() == want:
                return f.val
        return None

    def is_tuple(self) -> bool:
        return bool(self.fields) and all(f.id.get_id() == i for i, f in enumerate(self.fields))


@dataclass(frozen=True)
class Variant(Value):
    field: IDLField
    index: int = 0


@dataclass(frozen=True)
class PrincipalValue(Value):
    principal: Principal


@dataclass(frozen=True)
class ServiceValue(Value):
    principal: Principal


@dataclass(frozen=True)
class FuncValue(Value):
    principal: Principal
    method: str


def args_to_value(values: List[Value]) -> Value:
    """Collapses an argument list: none is `null`, one is itself, more is a tuple."""
    if len(values) == 0:
        return Null()
    if len(values) == 1:
        return values[0]
    return Record.tuple(values)


def blob_bytes(value: Value) -> Optional[bytes]:
    """The bytes of a `Blob` or of a vector of `nat8`; None for anything else."""
    match value:
        case Blob(value=b):
            return b
        case Vec(items=items) if all(isinstance(i, Nat8) for i in items):
            return bytes(i.value for i in items)
        case _:
            return None
