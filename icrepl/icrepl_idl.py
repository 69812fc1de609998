"""
Parsers for Candid text: values (`record { a = 1 }`), types, and interface
descriptions (`.did` files: type definitions plus a service declaration).

Script text itself is parsed elsewhere; these readers cover the Candid text
that reaches the engine at runtime: canister metadata, wasm custom sections,
and the standard output of `exec`.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Dict

from icrepl.icrepl_values import (
    ReplError, Label, Named, Id, Unnamed, Principal,
    Value, Bool, Null, Text, Number, Float64, Opt, Blob, Vec, IDLField,
    Record, Variant, PrincipalValue, ServiceValue, FuncValue,
)
from icrepl.icrepl_types import (
    Type, PRIMITIVES, NULL, NAT8, VarType, OptType, VecType, FieldType,
    RecordType, VariantType, Function, FuncType, ServiceType, ClassType,
    TypeEnv, cast_type,
)

_TOKEN_RE = re.compile(r'''
    (?P<ws>\s+|//[^\n]*|/\*.*?\*/)
  | (?P<text>"(?:[^"\\]|\\.)*")
  | (?P<num>[+-]?(?:0[xX][0-9a-fA-F_]+|[0-9][0-9_]*(?:\.[0-9_]*)?(?:[eE][+-]?[0-9_]+)?))
  | (?P<id>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<sym>->|[{}();:,=.])
''', re.VERBOSE | re.DOTALL)

_FUNC_MODES = ('query', 'oneway', 'composite_query')


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise ReplError(f"unexpected character {text[pos]!r} at offset {pos}")
        kind = m.lastgroup
        if kind != 'ws':
            value = m.group(kind)
            if kind == 'text':
                value = value[1:-1]
            tokens.append(Token(kind, value, pos))
        pos = m.end()
    return tokens


def unescape(body: str) -> bytes:
    """Decodes the escapes of a text literal body into raw bytes."""
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != '\\':
            out += ch.encode('utf-8')
            i += 1
            continue
        nxt = body[i + 1] if i + 1 < len(body) else ''
        if nxt in ('n', 'r', 't'):
            out += {'n': b'\n', 'r': b'\r', 't': b'\t'}[nxt]
            i += 2
        elif nxt in ('\\', '"', "'"):
            out += nxt.encode('ascii')
            i += 2
        elif nxt == 'u':
            close = body.find('}', i)
            if body[i + 2:i + 3] != '{' or close < 0:
                raise ReplError(f"malformed unicode escape in {body!r}")
            out += chr(int(body[i + 3:close].replace('_', ''), 16)).encode('utf-8')
            i = close + 1
        elif re.match(r'[0-9a-fA-F]{2}', body[i + 1:i + 3]):
            out.append(int(body[i + 1:i + 3], 16))
            i += 3
        else:
            raise ReplError(f"unknown escape \\{nxt} in {body!r}")
    return bytes(out)


def _text_of(body: str) -> str:
    try:
        return unescape(body).decode('utf-8')
    except UnicodeDecodeError as e:
        raise ReplError(f"text literal is not valid utf-8: {e}") from e


@dataclass
class IDLProg:
    """A parsed interface: named types and the optional service declaration."""
    env: TypeEnv
    actor: Optional[Type]

    def methods(self) -> Dict[str, Function]:
        if self.actor is None:
            return {}
        return self.env.as_service(self.actor)

    def init_args(self) -> Optional[List[Type]]:
        actor = self.env.rep(self.actor) if self.actor is not None else None
        if isinstance(actor, ClassType):
            return list(actor.args)
        return None


class _Parser:

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    # --- token helpers ---

    def peek(self, offset=0) -> Optional[Token]:
        i = self.pos + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def next(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise ReplError("unexpected end of input")
        self.pos += 1
        return tok

    def at(self, kind: str, value: Optional[str] = None, offset=0) -> bool:
        tok = self.peek(offset)
        return tok is not None and tok.kind == kind and (value is None or tok.value == value)

    def accept(self, kind: str, value: Optional[str] = None) -> bool:
        if self.at(kind, value):
            self.pos += 1
            return True
        return False

    def expect(self, kind: str, value: Optional[str] = None) -> Token:
        tok = self.next()
        if tok.kind != kind or (value is not None and tok.value != value):
            want = value or kind
            raise ReplError(f"expected {want!r} but found {tok.value!r} at offset {tok.pos}")
        return tok

    def done(self) -> bool:
        return self.pos >= len(self.tokens)

    def expect_end(self):
        if not self.done():
            tok = self.peek()
            raise ReplError(f"unexpected {tok.value!r} at offset {tok.pos}")

    def _label(self) -> Label:
        tok = self.next()
        match tok.kind:
            case 'id':
                return Named(tok.value)
            case 'text':
                return Named(_text_of(tok.value))
            case 'num':
                return Id(int(tok.value.replace('_', '')))
        raise ReplError(f"expected a field label but found {tok.value!r}")

    def _at_label(self, follow: str) -> bool:
        return (self.at('id') or self.at('text') or self.at('num')) and self.at('sym', follow, offset=1)

    # --- values ---

    def args(self) -> List[Value]:
        self.expect('sym', '(')
        out = []
        while not self.accept('sym', ')'):
            out.append(self.annval())
            if not self.accept('sym', ','):
                self.expect('sym', ')')
                break
        return out

    def annval(self) -> Value:
        v = self.value()
        if self.accept('sym', ':'):
            ty = self.type()
            v = cast_type(v, ty)
        return v

    def value(self) -> Value:
        tok = self.next()
        if tok.kind == 'text':
            return Text(_text_of(tok.value))
        if tok.kind == 'num':
            s = tok.value
            is_hex = s.lstrip('+-').lower().startswith('0x')
            if not is_hex and any(c in s for c in '.eE'):
                return Float64(float(s.replace('_', '')))
            return Number(s)
        if tok.kind == 'sym' and tok.value == '(':
            v = self.annval()
            self.expect('sym', ')')
            return v
        if tok.kind != 'id':
            raise ReplError(f"unexpected {tok.value!r} at offset {tok.pos}")
        match tok.value:
            case 'true':
                return Bool(True)
            case 'false':
                return Bool(False)
            case 'null':
                return Null()
            case 'opt':
                return Opt(self.value())
            case 'blob':
                return Blob(unescape(self.expect('text').value))
            case 'principal':
                return PrincipalValue(self._principal())
            case 'service':
                return ServiceValue(self._principal())
            case 'func':
                p = self._principal()
                self.expect('sym', '.')
                return FuncValue(p, self._method_name())
            case 'vec':
                return self._vec()
            case 'record':
                return self._record()
            case 'variant':
                return self._variant()
        raise ReplError(f"unexpected {tok.value!r} at offset {tok.pos}")

    def _principal(self) -> Principal:
        text = _text_of(self.expect('text').value)
        try:
            return Principal.from_text(text)
        except ValueError as e:
            raise ReplError(str(e)) from e

    def _method_name(self) -> str:
        tok = self.next()
        if tok.kind == 'id':
            return tok.value
        if tok.kind == 'text':
            return _text_of(tok.value)
        raise ReplError(f"expected a method name but found {tok.value!r}")

    def _vec(self) -> Vec:
        self.expect('sym', '{')
        items = []
        while not self.accept('sym', '}'):
            items.append(self.annval())
            if not self.accept('sym', ';'):
                self.expect('sym', '}')
                break
        return Vec(tuple(items))

    def _record(self) -> Record:
        self.expect('sym', '{')
        fields = []
        next_id = 0
        while not self.accept('sym', '}'):
            if self._at_label('='):
                label = self._label()
                self.expect('sym', '=')
            else:
                label = Unnamed(next_id)
            fields.append(IDLField(label, self.annval()))
            next_id = label.get_id() + 1
            if not self.accept('sym', ';'):
                self.expect('sym', '}')
                break
        return Record.make(fields)

    def _variant(self) -> Variant:
        self.expect('sym', '{')
        label = self._label()
        val = self.annval() if self.accept('sym', '=') else Null()
        self.accept('sym', ';')
        self.expect('sym', '}')
        return Variant(IDLField(label, val), 0)

    # --- types ---

    def type(self) -> Type:
        tok = self.next()
        if tok.kind != 'id':
            raise ReplError(f"expected a type but found {tok.value!r} at offset {tok.pos}")
        name = tok.value
        if name in PRIMITIVES:
            return PRIMITIVES[name]
        match name:
            case 'opt':
                return OptType(self.type())
            case 'vec':
                return VecType(self.type())
            case 'blob':
                return VecType(NAT8)
            case 'record':
                return RecordType.make(self._field_types(is_record=True))
            case 'variant':
                return VariantType.make(self._field_types(is_record=False))
            case 'func':
                return FuncType(self.func_sig())
            case 'service':
                self.accept('sym', ':')
                return self._service_body()
        return VarType(name)

    def _field_types(self, is_record: bool) -> List[FieldType]:
        self.expect('sym', '{')
        fields = []
        next_id = 0
        while not self.accept('sym', '}'):
            if self._at_label(':'):
                label = self._label()
                self.expect('sym', ':')
                ty = self.type()
            elif is_record:
                label = Unnamed(next_id)
                ty = self.type()
            else:
                label = self._label()
                ty = NULL
            fields.append(FieldType(label, ty))
            next_id = label.get_id() + 1
            if not self.accept('sym', ';'):
                self.expect('sym', '}')
                break
        return fields

    def _arg_types(self) -> Tuple[Type, ...]:
        self.expect('sym', '(')
        out = []
        while not self.accept('sym', ')'):
            if self.at('id') and self.at('sym', ':', offset=1):
                self.pos += 2
            out.append(self.type())
            if not self.accept('sym', ','):
                self.expect('sym', ')')
                break
        return tuple(out)

    def func_sig(self) -> Function:
        args = self._arg_types()
        self.expect('sym', '->')
        rets = self._arg_types()
        modes = []
        while self.at('id') and self.peek().value in _FUNC_MODES:
            modes.append(self.next().value)
        return Function(args, rets, tuple(modes))

    def _service_body(self) -> Type:
        if self.at('id'):
            return VarType(self.next().value)
        self.expect('sym', '{')
        methods = []
        while not self.accept('sym', '}'):
            name = self._method_name()
            self.expect('sym', ':')
            if self.at('sym', '('):
                mty = FuncType(self.func_sig())
            else:
                mty = self.type()
            methods.append((name, mty))
            if not self.accept('sym', ';'):
                self.expect('sym', '}')
                break
        return ServiceType(tuple(sorted(methods, key=lambda m: m[0])))

    # --- programs ---

    def definitions(self, env: TypeEnv):
        while True:
            if self.accept('id', 'type'):
                name = self.expect('id').value
                self.expect('sym', '=')
                env.defs[name] = self.type()
                self.expect('sym', ';')
            elif self.accept('id', 'import'):
                self.accept('id', 'service')
                self.expect('text')
                self.expect('sym', ';')
            else:
                return

    def program(self) -> IDLProg:
        env = TypeEnv()
        self.definitions(env)
        actor = None
        if self.accept('id', 'service'):
            if self.at('id'):
                self.next()
            self.expect('sym', ':')
            if self.at('sym', '('):
                args = self._arg_types()
                self.expect('sym', '->')
                actor = ClassType(args, self._service_body())
            else:
                actor = self._service_body()
            self.accept('sym', ';')
        self.expect_end()
        return IDLProg(env, actor)


def parse_value(text: str) -> Value:
    p = _Parser(text)
    v = p.annval()
    p.expect_end()
    return v


def parse_args(text: str) -> List[Value]:
    p = _Parser(text)
    out = p.args()
    p.expect_end()
    return out


def parse_type(text: str) -> Type:
    p = _Parser(text)
    ty = p.type()
    p.expect_end()
    return ty


def parse_idl(text: str) -> IDLProg:
    return _Parser(text).program()


def parse_init_args(text: str, env: Optional[TypeEnv] = None) -> Tuple[TypeEnv, List[Type]]:
    """Reads `candid:args` text: type definitions followed by an argument type list."""
    env = env if env is not None else TypeEnv()
    p = _Parser(text)
    p.definitions(env)
    args = p._arg_types()
    p.expect_end()
    return env, list(args)


def merge_init_args(service_text: str, args_text: str) -> Tuple[TypeEnv, List[Type]]:
    """Combines a service description with separately stored init argument types."""
    prog = parse_idl(service_text)
    return parse_init_args(args_text, prog.env)
