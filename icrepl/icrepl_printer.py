"""
A pretty-printer for Candid values.

The output is valid Candid value text, so `export` files and `exec` output can
be read back.
"""
import math

from icrepl.icrepl_values import (
    Bool, Null, Reserved, NoneValue, Text, Number, Int, Nat, FixedInt,
    Nat8, Nat16, Nat32, Nat64, Int8, Int16, Int32, Int64,
    Float32, Float64, Opt, Blob, Vec, Record, Variant,
    PrincipalValue, ServiceValue, FuncValue,
)

_MAX_LINE = 80


def _group_digits(digits: str) -> str:
    head = len(digits) % 3 or 3
    parts = [digits[:head]] + [digits[i:i + 3] for i in range(head, len(digits), 3)]
    return "_".join(parts)


def escape_text(s: str) -> str:
    out = []
    for ch in s:
        if ch == '"':
            out.append('\\"')
        elif ch == '\\':
            out.append('\\\\')
        elif ch == '\n':
            out.append('\\n')
        elif ch == '\r':
            out.append('\\r')
        elif ch == '\t':
            out.append('\\t')
        elif ord(ch) < 0x20 or ord(ch) == 0x7f:
            out.append(f"\\u{{{ord(ch):x}}}")
        else:
            out.append(ch)
    return '"' + "".join(out) + '"'


def escape_blob(b: bytes) -> str:
    out = []
    for byte in b:
        ch = chr(byte)
        if 0x20 <= byte < 0x7f and ch not in '"\\':
            out.append(ch)
        else:
            out.append(f"\\{byte:02x}")
    return '"' + "".join(out) + '"'


class Printer:
    """Formats values into Candid source text."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format a value."""
        handler = self._handlers.get(type(obj))
        if handler is None:
            return repr(obj)
        return handler(obj, level)

    def pformat_args(self, values):
        return "(" + ", ".join(self.pformat(v) for v in values) + ")"

    def _create_handlers(self):
        handlers = {
            Bool: self._pformat_bool,
            Null: lambda o, l: 'null',
            Reserved: lambda o, l: 'null : reserved',
            NoneValue: lambda o, l: 'null',
            Text: lambda o, l: escape_text(o.value),
            Number: lambda o, l: o.value,
            Int: self._pformat_int,
            Nat: lambda o, l: _group_digits(str(o.value)),
            Float32: self._pformat_float32,
            Float64: self._pformat_float64,
            Opt: self._pformat_opt,
            Blob: lambda o, l: f"blob {escape_blob(o.value)}",
            Vec: self._pformat_vec,
            Record: self._pformat_record,
            Variant: self._pformat_variant,
            PrincipalValue: lambda o, l: f'principal "{o.principal.to_text()}"',
            ServiceValue: lambda o, l: f'service "{o.principal.to_text()}"',
            FuncValue: lambda o, l: f'func "{o.principal.to_text()}".{o.method}',
        }
        for cls in (Nat8, Nat16, Nat32, Nat64, Int8, Int16, Int32, Int64):
            handlers[cls] = self._pformat_fixed
        return handlers

    def _pformat_bool(self, obj, level):
        return 'true' if obj.value else 'false'

    def _pformat_int(self, obj, level):
        sign = '-' if obj.value < 0 else '+'
        return sign + _group_digits(str(abs(obj.value)))

    def _pformat_fixed(self, obj: FixedInt, level):
        if obj.value < 0:
            body = '-' + _group_digits(str(-obj.value))
        else:
            body = _group_digits(str(obj.value))
        return f"{body} : {obj.type_name}"

    def _format_float(self, x: float) -> str:
        if math.isnan(x):
            return 'nan'
        if math.isinf(x):
            return 'inf' if x > 0 else '-inf'
        s = repr(x)
        if '.' not in s and 'e' not in s:
            s += '.0'
        return s

    def _pformat_float32(self, obj, level):
        return f"{self._format_float(obj.value)} : float32"

    def _pformat_float64(self, obj, level):
        return self._format_float(obj.value)

    def _pformat_opt(self, obj, level):
        return f"opt {self.pformat(obj.value, level)}"

    def _pformat_vec(self, obj, level):
        return self._pformat_block("vec", [self.pformat(i, level + 1) for i in obj.items], level)

    def _pformat_record(self, obj, level):
        if obj.is_tuple():
            parts = [self.pformat(f.val, level + 1) for f in obj.fields]
        else:
            parts = [f"{f.id} = {self.pformat(f.val, level + 1)}" for f in obj.fields]
        return self._pformat_block("record", parts, level)

    def _pformat_variant(self, obj, level):
        f = obj.field
        if isinstance(f.val, Null):
            return f"variant {{ {f.id} }}"
        return f"variant {{ {f.id} = {self.pformat(f.val, level + 1)} }}"

    def _pformat_block(self, keyword, parts, level):
        if not parts:
            return f"{keyword} {{}}"
        flat = f"{keyword} {{ " + "; ".join(parts) + " }"
        if len(flat) + len(self._indent_char) * level <= _MAX_LINE and '\n' not in flat:
            return flat
        inner = self._indent_char * (level + 1)
        lines = [f"{inner}{p};" for p in parts]
        return f"{keyword} {{\n" + "\n".join(lines) + f"\n{self._indent_char * level}}}"


def pformat(value) -> str:
    return Printer().pformat(value)


def stringify(value) -> str:
    """Text values render raw; everything else as Candid text."""
    if isinstance(value, Text):
        return value.value
    return pformat(value)
