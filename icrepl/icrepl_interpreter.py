"""
The icrepl evaluator.

`evaluate` reduces an expression tree to a value against a `Helper` context.
Around it live the builtin registry, user function application, path
projection, method signature resolution, and call execution (direct, encoded,
proxied, offline, and parallel batches).
"""
import asyncio
import gzip
import inspect
import math
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple, Dict, Callable

from icrepl.icrepl_values import (
    ReplError, Named, Principal, label_of,
    Value, Bool, Null, Text, Number, Int, Nat, FixedInt, Int64, Float32, Float64, Opt, NoneValue,
    Blob, Vec, IDLField, Record, Variant, PrincipalValue, ServiceValue, FuncValue,
    Nat8, Nat64, args_to_value, blob_bytes,
)
from icrepl.icrepl_types import TypeEnv, Function, INT, FLOAT64, NAT8, VecType, cast_type
from icrepl.icrepl_candid import encode_args, decode_args, read_leb128
from icrepl.icrepl_datatypes import (
    UndefinedVariable, Method, CALL, ENCODE, Selector, Index, Get, Option, Size,
    Map, Filter, Fold, Exp, Field, Path, AnnVal, Call, ParCall, Decode, Apply, Fail,
    BoolExp, NullExp, TextExp, NumberExp, Float64Exp, OptExp, BlobExp, VecExp,
    RecordExp, VariantExp, PrincipalExp, ServiceExp, FuncExp, Let,
)
from icrepl.icrepl_helper import _dbg
from icrepl.icrepl_idl import parse_value, merge_init_args
from icrepl.icrepl_printer import pformat, stringify
from icrepl.icrepl_routing import get_effective_canister_id, MANAGEMENT_CANISTER
from icrepl.icrepl_offline import (
    Ingress, RequestStatus, IngressWithStatus, output_message, send, send_messages,
)
from icrepl.icrepl_account import (
    account_identifier, subaccount_from_principal, neuron_account,
)
from icrepl.icrepl_wasm import get_metadata, instrument, InstrumentConfig
from icrepl.icrepl_profiling import get_cycles, get_profiling
from icrepl.icrepl_file import resolve_path, read_bytes, write_text, append_text
from icrepl.icrepl_serialize import deserialize


@dataclass(frozen=True)
class MethodInfo:
    canister_id: Principal
    signature: Optional[Tuple[TypeEnv, Function]] = None
    profiling: Optional[Dict[int, str]] = None


# =================================================================
# Evaluation
# =================================================================

async def evaluate(exp: Exp, helper) -> Value:
    """Reduces `exp` to a value. Sub-expressions are evaluated left to right."""
    match exp:
        case Path(name=name, selectors=selectors):
            if name not in helper.env:
                raise UndefinedVariable(name)
            return await project(helper, helper.env[name], selectors)

        case AnnVal(exp=inner, ty=ty):
            value = await evaluate(inner, helper)
            try:
                return cast_type(value, ty)
            except ReplError as e:
                raise ReplError(f"casting to type {ty} fails: {e}") from e

        case Fail(exp=inner):
            try:
                await evaluate(inner, helper)
            except Exception as e:
                return Text(str(e))
            raise ReplError("Expects an error state")

        case Apply(func=func, args=exps):
            return await apply_builtin(helper, func, exps)

        case Decode(method=method, blob=blob_exp):
            return await _decode(helper, method, blob_exp)

        case ParCall(calls=calls):
            return await _par_call(helper, calls)

        case Call(method=method, args=arg_exps, mode=mode):
            args = None
            if arg_exps is not None:
                args = [await evaluate(e, helper) for e in arg_exps]
            info = await get_info(method, helper, mode == ENCODE) if method is not None else None
            data = await _encode_call_args(helper, info, args)
            if mode == ENCODE:
                return Blob(data)
            if method is None:
                raise ReplError("call needs a target method")
            if mode.kind == 'proxy':
                return await _proxy_call(helper, method, mode.relay, data)
            return await _direct_call(helper, info, method.method, data)

        case BoolExp(value=b):
            return Bool(b)
        case NullExp():
            return Null()
        case TextExp(value=s):
            return Text(s)
        case NumberExp(value=s):
            return Number(s)
        case Float64Exp(value=x):
            return Float64(x)
        case OptExp(exp=inner):
            return Opt(await evaluate(inner, helper))
        case BlobExp(value=b):
            return Blob(b)
        case VecExp(items=items):
            return Vec(tuple([await evaluate(e, helper) for e in items]))
        case RecordExp(fields=fields):
            return Record.make([IDLField(f.id, await evaluate(f.val, helper)) for f in fields])
        case VariantExp(field=f, index=idx):
            return Variant(IDLField(f.id, await evaluate(f.val, helper)), idx)
        case PrincipalExp(principal=p):
            return PrincipalValue(p)
        case ServiceExp(principal=p):
            return ServiceValue(p)
        case FuncExp(principal=p, method=m):
            return FuncValue(p, m)

    raise TypeError(f"cannot evaluate {exp!r}")


async def _decode(helper, method: Optional[Method], blob_exp: Exp) -> Value:
    blob = await evaluate(blob_exp, helper)
    if blob.value_ty() != VecType(NAT8):
        raise ReplError("not a blob")
    data = blob_bytes(blob)
    if method is not None:
        info = await get_info(method, helper, False)
        if info.signature is not None:
            env, func = info.signature
            return args_to_value(decode_args(data, list(func.rets), env))
    return args_to_value(decode_args(data))


# =================================================================
# Projection
# =================================================================

async def project(helper, value: Value, selectors) -> Value:
    for sel in selectors:
        value = await _select(helper, value, sel)
    return value


async def _select(helper, value: Value, sel: Selector) -> Value:
    match sel:
        case Index(index=i):
            match value:
                case Vec(items=items):
                    if 0 <= i < len(items):
                        return items[i]
                    raise ReplError(f"index {i} out of bounds for vec of size {len(items)}")
                case Blob(value=b):
                    if 0 <= i < len(b):
                        return Nat8(b[i])
                    raise ReplError(f"index {i} out of bounds for blob of size {len(b)}")
                case Record():
                    found = value.get(str(i))
                    if found is not None:
                        return found
                    raise ReplError(f"record has no field {i}")
            raise TypeError(f"{pformat(value)} cannot be indexed")

        case Get(name=name):
            match value:
                case Record():
                    found = value.get(name)
                    if found is not None:
                        return found
                    raise ReplError(f"record field {name} not found")
                case Variant(field=f):
                    if f.id.get_id() == label_of(name).get_id():
                        return f.val
                    raise ReplError(f"variant field {name} not found")
            raise TypeError(f"{pformat(value)} has no field {name}")

        case Option():
            match value:
                case Opt(value=inner):
                    return inner
                case NoneValue() | Null():
                    raise ReplError("opt is null")
            raise TypeError(f"{pformat(value)} is not an opt value")

        case Size():
            match value:
                case Vec(items=items):
                    return Number(str(len(items)))
                case Blob(value=b) | Text(value=b):
                    return Number(str(len(b)))
                case Record(fields=fields):
                    return Number(str(len(fields)))
            raise TypeError(f"{pformat(value)} has no size")

        case Map(func=func):
            items = _elements(value, "map")
            return Vec(tuple([await invoke(helper, func, [item]) for item in items]))

        case Filter(func=func):
            kept = []
            for item in _elements(value, "filter"):
                keep = await invoke(helper, func, [item])
                if not isinstance(keep, Bool):
                    raise TypeError(f"filter expects {func} to return a bool")
                if keep.value:
                    kept.append(item)
            if isinstance(value, Blob):
                return Blob(bytes(i.value for i in kept))
            return Vec(tuple(kept))

        case Fold(init=init, func=func):
            acc = await evaluate(init, helper)
            for item in _elements(value, "fold"):
                acc = await invoke(helper, func, [acc, item])
            return acc

    raise TypeError(f"unknown selector {sel!r}")


def _elements(value: Value, op: str):
    match value:
        case Vec(items=items):
            return list(items)
        case Blob(value=b):
            return [Nat8(x) for x in b]
    raise TypeError(f"{op} expects a vec")


# =================================================================
# Builtins
# =================================================================

def builtin(lazy=False, online_only=False):
    """A decorator to mark a `Builtins` method as callable from scripts."""
    def mark(func):
        func._icrepl_builtin = {'lazy': lazy, 'online_only': online_only}
        return func
    return mark


@dataclass(frozen=True)
class Builtin:
    name: str
    handler: Callable
    lazy: bool
    online_only: bool


def _is_float(v: Value) -> bool:
    return isinstance(v, (Float32, Float64))


def _float_div(x: float, y: float) -> float:
    if y != 0:
        return x / y
    if x == 0 or math.isnan(x):
        return math.nan
    return math.copysign(math.inf, x) * math.copysign(1.0, y)


_COMPARE = {
    'lt': lambda x, y: x < y,
    'lte': lambda x, y: x <= y,
    'gt': lambda x, y: x > y,
    'gte': lambda x, y: x >= y,
}


def _arith(func: str, args: List[Value]) -> Value:
    match args:
        case [a, b] if _is_float(a) or _is_float(b):
            x = cast_type(a, FLOAT64).value
            y = cast_type(b, FLOAT64).value
            if func in _COMPARE:
                return Bool(_COMPARE[func](x, y))
            match func:
                case 'add':
                    return Float64(x + y)
                case 'sub':
                    return Float64(x - y)
                case 'mul':
                    return Float64(x * y)
                case 'div':
                    return Float64(_float_div(x, y))
        case [a, b]:
            x = cast_type(a, INT).value
            y = cast_type(b, INT).value
            if func in _COMPARE:
                return Bool(_COMPARE[func](x, y))
            match func:
                case 'add':
                    return Number(str(x + y))
                case 'sub':
                    return Number(str(x - y))
                case 'mul':
                    return Number(str(x * y))
                case 'div':
                    if y == 0:
                        raise ReplError("division by zero")
                    q = abs(x) // abs(y)
                    return Number(str(-q if (x < 0) != (y < 0) else q))
    raise TypeError(f"{func} expects two numbers")


def _as_u32(v: Value, message: str) -> int:
    match v:
        case Number():
            n = v.to_int()
        case Int(value=n) | Nat(value=n) | FixedInt(value=n):
            pass
        case _:
            raise TypeError(message)
    if not 0 <= n < 2 ** 32:
        raise TypeError(message)
    return n


def _read_file(path: str) -> bytes:
    try:
        return read_bytes(path)
    except OSError as e:
        raise ReplError(f"Cannot read {path!r}: {e}") from e


def _run_process(helper, argv: List[str], cwd: Optional[str], silence: bool) -> str:
    """Runs `argv`, echoing its output as side effects; returns the last stdout line."""
    last = [""]
    with subprocess.Popen(argv, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                          text=True, errors='replace') as proc:

        def pump_stdout():
            for line in proc.stdout:
                line = line.rstrip("\n")
                if not silence:
                    helper.emit('stdout', line)
                last[0] = line

        def pump_stderr():
            for line in proc.stderr:
                if not silence:
                    helper.emit('stderr', line.rstrip("\n"))

        readers = [threading.Thread(target=pump_stdout), threading.Thread(target=pump_stderr)]
        for t in readers:
            t.start()
        code = proc.wait()
        for t in readers:
            t.join()
    if code != 0:
        raise ReplError(f"exec failed with status {code}")
    return last[0]


@dataclass(frozen=True)
class StatePath:
    kind: str
    principal: Optional[Principal]
    segments: Tuple[str, ...]

    def to_path(self) -> List[bytes]:
        if self.principal is None:
            return [self.kind.encode('utf-8')]
        return [self.kind.encode('utf-8'), self.principal.raw] + [s.encode('utf-8') for s in self.segments]


def parse_state_path(args: List[Value]) -> StatePath:
    match args:
        case [Text(value="time")]:
            return StatePath("time", None, ())
        case [Text(value=prefix), PrincipalValue(principal=p), Text(value=first), *rest] \
                if prefix in ("canister", "subnet"):
            segments = first.split("/")
            for extra in rest:
                if not isinstance(extra, Text):
                    break
                segments.append(extra.value)
            else:
                return StatePath(prefix, p, tuple(segments))
    raise TypeError("read_state expects ([effective_id,] prefix, principal, path, ...)")


async def fetch_state_path(helper, path: StatePath, effective_id: Optional[Principal] = None) -> Value:
    agent = helper.require_agent()
    if effective_id is None:
        if path.kind == "canister":
            effective_id = path.principal
        else:
            effective_id = helper.default_effective_canister_id or MANAGEMENT_CANISTER
    leaf = await agent.read_state(effective_id, path.to_path())
    if leaf is None:
        shown = "/".join([path.kind] + ([path.principal.to_text()] if path.principal else []) + list(path.segments))
        raise ReplError(f"state path {shown} not found")
    last = path.segments[-1] if path.segments else path.kind
    if last == "time":
        return Nat(read_leb128(leaf))
    if last == "controllers":
        controllers = deserialize(leaf, fmt='cbor')
        return Vec(tuple(PrincipalValue(Principal(bytes(c))) for c in controllers))
    if path.segments[:1] == ("metadata",):
        try:
            return Text(leaf.decode('utf-8'))
        except UnicodeDecodeError:
            return Blob(leaf)
    return Blob(leaf)


class Builtins:
    """Python implementations of the builtin functions scripts can apply."""

    # --- control ---

    @builtin(lazy=True)
    async def _ite(self, helper, exps):
        if len(exps) != 3:
            raise TypeError("ite expects a bool, true branch and false branch")
        cond = await evaluate(exps[0], helper)
        match cond:
            case Bool(value=True):
                return await evaluate(exps[1], helper)
            case Bool(value=False):
                return await evaluate(exps[2], helper)
        raise TypeError("ite expects the first argument to be a boolean expression")

    @builtin(lazy=True)
    async def _exist(self, helper, exps):
        if len(exps) != 1:
            raise TypeError("exist expects an expression")
        try:
            await evaluate(exps[0], helper)
        except Exception as e:
            _dbg("exist:", e)
            return Bool(False)
        return Bool(True)

    @builtin(lazy=True)
    async def _export(self, helper, exps):
        if len(exps) <= 1:
            raise TypeError("export expects at least two arguments")
        path = await evaluate(exps[0], helper)
        if not isinstance(path, Text):
            raise TypeError("export expects first argument to be a file path")
        lines = []
        for arg in exps[1:]:
            if not isinstance(arg, Path):
                raise TypeError("export expects variables")
            val = await evaluate(arg, helper)
            lines.append(f"let {arg.name} = {pformat(val)};\n")
        write_text(path.value, "".join(lines), base_dir=os.getcwd())
        return Null()

    # --- accounts ---

    @builtin()
    async def _account(self, helper, args):
        match args:
            case [PrincipalValue(principal=p)]:
                return Blob(account_identifier(p))
            case [PrincipalValue(principal=p), Blob(value=sub)]:
                return Blob(account_identifier(p, sub))
        raise TypeError("account expects principal")

    @builtin()
    async def _subaccount(self, helper, args):
        match args:
            case [PrincipalValue(principal=p)]:
                return Blob(subaccount_from_principal(p))
        raise TypeError("subaccount expects principal")

    @builtin()
    async def _neuron_account(self, helper, args):
        match args:
            case [PrincipalValue(principal=p), Number() as nonce]:
                return Blob(neuron_account(p, nonce.to_int()))
            case [PrincipalValue(principal=p), Nat(value=nonce) | Nat64(value=nonce)]:
                return Blob(neuron_account(p, nonce))
        raise TypeError("neuron_account expects (principal, nonce)")

    # --- environment and state ---

    @builtin()
    async def _replica_url(self, helper, args):
        if args:
            raise TypeError("replica_url expects no arguments")
        return Text(helper.agent_url)

    @builtin(online_only=True)
    async def _read_state(self, helper, args):
        match args:
            case [Text(), *_]:
                return await fetch_state_path(helper, parse_state_path(args))
            case [PrincipalValue(principal=effective), Text(), *_]:
                return await fetch_state_path(helper, parse_state_path(args[1:]), effective)
        raise TypeError("read_state expects ([effective_id,] prefix, principal, path, ...)")

    # --- files and processes ---

    @builtin()
    async def _file(self, helper, args):
        match args:
            case [Text(value=file)]:
                return Blob(_read_file(resolve_path(file, helper.base_path)))
        raise TypeError("file expects file path")

    @builtin()
    async def _gzip(self, helper, args):
        match args:
            case [Blob(value=b)]:
                return Blob(gzip.compress(b))
        raise TypeError("gzip expects blob")

    @builtin()
    async def _exec(self, helper, args):
        match args:
            case [Text(value=cmd), *rest]:
                argv = [cmd]
                cwd = None
                silence = False
                for i, arg in enumerate(rest):
                    match arg:
                        case Text(value=s):
                            argv.append(s)
                        case Record() if i == len(rest) - 1:
                            cwd_v = arg.get("cwd")
                            if cwd_v is not None:
                                if not isinstance(cwd_v, Text):
                                    raise TypeError("cwd expects a string")
                                cwd = resolve_path(cwd_v.value, helper.base_path)
                            silence_v = arg.get("silence")
                            if silence_v is not None:
                                if not isinstance(silence_v, Bool):
                                    raise TypeError("silence expects a boolean")
                                silence = silence_v.value
                        case _:
                            raise TypeError("exec expects string arguments")
                last = await asyncio.to_thread(_run_process, helper, argv, cwd, silence)
                try:
                    return parse_value(last)
                except (ReplError, ValueError):
                    return Text(last)
        raise TypeError("exec expects (text command, ...text args)")

    @builtin(online_only=True)
    async def _send(self, helper, args):
        match args:
            case [Blob(value=b)]:
                try:
                    text = b.decode('utf-8')
                except UnicodeDecodeError as e:
                    raise ReplError(f"not a valid json message: {e}") from e
                first = text.lstrip()[:1]
                data = deserialize(text, fmt='json') if first in ('{', '[') else None
                if first == '{' and isinstance(data, dict):
                    return args_to_value(await send(helper, IngressWithStatus.from_dict(data)))
                if first == '[' and isinstance(data, list):
                    messages = [IngressWithStatus.from_dict(m) for m in data]
                    return args_to_value(await send_messages(helper, messages))
                raise ReplError("not a valid json message")
        raise TypeError("send expects a json blob")

    @builtin()
    async def _wasm_profiling(self, helper, args):
        match args:
            case [Text(value=file)] | [Text(value=file), Record()]:
                module = _read_file(resolve_path(file, helper.base_path))
                config = InstrumentConfig()
                if len(args) == 2:
                    cfg = args[1]
                    start = cfg.get("start_page")
                    if start is not None:
                        config.start_page = _as_u32(start, "start_page expects a number")
                        limit = cfg.get("page_limit")
                        if limit is not None:
                            config.page_limit = _as_u32(limit, "page_limit expects a number")
                    funcs = cfg.get("trace_only_funcs")
                    if funcs is not None:
                        if not isinstance(funcs, Vec):
                            raise TypeError("trace_only_funcs expects a vector of function names")
                        config.trace_only_funcs = [f.value for f in funcs.items if isinstance(f, Text)]
                return Blob(await instrument(module, config, helper.ic_wasm))
        raise TypeError("wasm_profiling expects file path and optionally record for config")

    @builtin()
    async def _flamegraph(self, helper, args):
        match args:
            case [PrincipalValue(principal=cid), Text(value=title), Text(value=file)]:
                try:
                    info = await helper.canister_map.get(helper, cid)
                except Exception as e:
                    raise ReplError(f"{cid} is not instrumented") from e
                if info.profiling is None:
                    raise ReplError(f"{cid} is not instrumented")
                path = resolve_path(file, os.getcwd())
                if not os.path.splitext(path)[1]:
                    path += ".svg"
                cost = await get_profiling(helper.require_agent(), cid, info.profiling, title, path)
                return Nat(cost)
        raise TypeError("flamegraph expects (canister id, title name, svg file name)")

    @builtin()
    async def _output(self, helper, args):
        match args:
            case [Text(value=file), Text(value=content)]:
                append_text(file, content, base_dir=os.getcwd())
                return Text(content)
        raise TypeError("output expects (file path, content)")

    # --- values ---

    @builtin()
    async def _stringify(self, helper, args):
        return Text("".join(stringify(a) for a in args))

    @builtin()
    async def _concat(self, helper, args):
        match args:
            case [Vec(items=a), Vec(items=b)]:
                return Vec(a + b)
            case [Blob(value=a), Blob(value=b)]:
                return Blob(a + b)
            case [Text(value=a), Text(value=b)]:
                return Text(a + b)
            case [Record(fields=a), Record(fields=b)]:
                return Record.make(a + b)
        raise TypeError("concat expects two vec, record or text")

    def _same_type(self, func, args) -> Tuple[Value, Value]:
        """Both operands cast to their common type, so literals compare equal to decoded values."""
        match args:
            case [a, b]:
                ty = a.value_ty()
                if ty != b.value_ty():
                    raise TypeError(f"{func} expects two values of the same type")
                return cast_type(a, ty), cast_type(b, ty)
        raise TypeError(f"{func} expects two values")

    @builtin()
    async def _eq(self, helper, args):
        a, b = self._same_type("eq", args)
        return Bool(a == b)

    @builtin()
    async def _neq(self, helper, args):
        a, b = self._same_type("neq", args)
        return Bool(a != b)

    @builtin()
    async def _and(self, helper, args):
        match args:
            case [Bool(value=a), Bool(value=b)]:
                return Bool(a and b)
        raise TypeError("and expects bool values")

    @builtin()
    async def _or(self, helper, args):
        match args:
            case [Bool(value=a), Bool(value=b)]:
                return Bool(a or b)
        raise TypeError("or expects bool values")

    @builtin()
    async def _not(self, helper, args):
        match args:
            case [Bool(value=a)]:
                return Bool(not a)
        raise TypeError("not expects a bool value")

    @builtin()
    async def _lt(self, helper, args):
        return _arith("lt", args)

    @builtin()
    async def _lte(self, helper, args):
        return _arith("lte", args)

    @builtin()
    async def _gt(self, helper, args):
        return _arith("gt", args)

    @builtin()
    async def _gte(self, helper, args):
        return _arith("gte", args)

    @builtin()
    async def _add(self, helper, args):
        return _arith("add", args)

    @builtin()
    async def _sub(self, helper, args):
        return _arith("sub", args)

    @builtin()
    async def _mul(self, helper, args):
        return _arith("mul", args)

    @builtin()
    async def _div(self, helper, args):
        return _arith("div", args)


def _build_registry() -> Dict[str, Builtin]:
    registry = {}
    lib = Builtins()
    for name, member in inspect.getmembers(lib):
        flags = getattr(member, '_icrepl_builtin', None)
        if flags is None or not name.startswith('_') or name.startswith('__'):
            continue
        registry[name[1:]] = Builtin(name[1:], member, flags['lazy'], flags['online_only'])
    return registry


BUILTINS: Dict[str, Builtin] = _build_registry()


def _lookup_builtin(helper, func: str) -> Optional[Builtin]:
    entry = BUILTINS.get(func)
    if entry is not None and entry.online_only and helper.offline is not None:
        return None
    return entry


async def apply_builtin(helper, func: str, exps) -> Value:
    """`Apply`: a builtin (lazy ones get the raw expressions) or else a user function."""
    entry = _lookup_builtin(helper, func)
    if entry is not None and entry.lazy:
        return await entry.handler(helper, list(exps))
    args = [await evaluate(e, helper) for e in exps]
    if entry is None:
        return await apply_func(helper, func, args)
    return await entry.handler(helper, args)


async def invoke(helper, func: str, args: List[Value]) -> Value:
    """Calls a builtin or user function on already evaluated arguments."""
    entry = _lookup_builtin(helper, func)
    if entry is not None and not entry.lazy:
        return await entry.handler(helper, args)
    return await apply_func(helper, func, args)


async def apply_func(helper, func: str, args: List[Value]) -> Value:
    entry = helper.func_env.get(func)
    if entry is None:
        raise ReplError(f"Unknown function {func}")
    formals, body = entry
    if len(formals) != len(args):
        raise ReplError(f"{func} expects {len(formals)} arguments, but {len(args)} is provided")
    child = helper.spawn()
    for name, value in zip(formals, args):
        child.env[name] = value
    for cmd in body:
        await cmd.run(child)
    return child.env.get("_", Null())


# =================================================================
# Method resolution
# =================================================================

async def get_info(method: Method, helper, is_encode: bool) -> MethodInfo:
    """Resolves a call target to its principal, signature and profiling names."""
    if is_encode and method.method == "__init_args":
        module = helper.module_blob(method.canister)
        if module is not None:
            args = get_metadata(module, "candid:args")
            if args is None:
                helper.warn("no candid:args metadata in the Wasm module, use types inferred from textual value.")
                return MethodInfo(Principal.anonymous())
            service = get_metadata(module, "candid:service")
            service_text = service.decode('utf-8') if service is not None else "service : {}"
            env, init_args = merge_init_args(service_text, args.decode('utf-8'))
            return MethodInfo(Principal.anonymous(), (env, Function(tuple(init_args))))

    canister_id = helper.resolve_principal(method.canister)
    try:
        info = await helper.canister_map.get(helper, canister_id)
    except Exception as e:
        _dbg("cannot fetch the interface of", canister_id, ":", e)
        return MethodInfo(canister_id)

    if method.method == "__init_args":
        if info.init is None:
            helper.warn("no init args in did file, use types inferred from textual value.")
            return MethodInfo(canister_id, None, info.profiling)
        return MethodInfo(canister_id, (info.env, Function(tuple(info.init))), info.profiling)

    func = info.methods.get(method.method)
    if func is None:
        if not method.method.startswith("__"):
            helper.warn(f"cannot get type for {method.canister}.{method.method}, "
                        f"use types inferred from textual value")
        return MethodInfo(canister_id, None, info.profiling)
    return MethodInfo(canister_id, (info.env, func), info.profiling)


async def _generate_args(helper, env: TypeEnv, func: Function) -> List[Value]:
    if helper.arg_generator is None:
        raise ReplError("no arguments given and no argument generator is configured")
    values = helper.arg_generator(env, list(func.args))
    if inspect.isawaitable(values):
        values = await values
    return list(values)


async def _encode_call_args(helper, info: Optional[MethodInfo], args: Optional[List[Value]]) -> bytes:
    signature = info.signature if info is not None else None
    if signature is not None:
        env, func = signature
        if args is None:
            args = await _generate_args(helper, env, func)
        return encode_args(args, list(func.args), env)
    if args is None:
        raise ReplError("cannot get method type, please provide arguments")
    return encode_args(args)


# =================================================================
# Call execution
# =================================================================

def ok_to_profile(helper, info: MethodInfo) -> bool:
    return helper.offline is None and info.profiling is not None


async def call(helper, canister_id: Principal, method: str, args: bytes,
               signature: Optional[Tuple[TypeEnv, Function]], *, force_update: bool = False) -> List[Value]:
    """
    Sends one call and decodes its reply. Offline, the signed request is
    recorded instead and the result is an empty argument list.
    """
    agent = helper.require_agent()
    effective_id = (get_effective_canister_id(canister_id, method, args)
                    or helper.default_effective_canister_id or canister_id)
    is_query = not force_update and signature is not None and signature[1].is_query()
    _dbg("call", canister_id, method, "query" if is_query else "update", "via", effective_id)

    if helper.offline is not None:
        if is_query:
            signed = agent.sign_query(canister_id, method, args, effective_id)
            message = IngressWithStatus(Ingress("query", None, signed.signed_query.hex()))
        else:
            signed = agent.sign_update(canister_id, method, args, effective_id)
            status = agent.sign_request_status(effective_id, signed.request_id)
            message = IngressWithStatus(
                Ingress("update", signed.request_id.hex(), signed.signed_update.hex()),
                RequestStatus(status.effective_canister_id.to_text(), status.request_id.hex(),
                              status.signed_request_status.hex()),
            )
        output_message(helper, message)
        return []

    if is_query:
        data = await agent.query(canister_id, method, args, effective_id)
    else:
        data = await agent.update_and_wait(canister_id, method, args, effective_id)
    if signature is not None:
        env, func = signature
        return decode_args(data, list(func.rets), env)
    return decode_args(data)


async def _direct_call(helper, info: MethodInfo, method: str, data: bytes) -> Value:
    profile = ok_to_profile(helper, info)
    before = await get_cycles(helper.require_agent(), info.canister_id) if profile else 0
    res = await call(helper, info.canister_id, method, data, info.signature)
    if not profile:
        return args_to_value(res)
    cost = await get_cycles(helper.require_agent(), info.canister_id) - before
    helper.emit('stdout', f"Cost: {cost} Wasm instructions")
    cost_record = Record.make([IDLField(Named("__cost"), Int64(cost))])
    return args_to_value([args_to_value(res), cost_record])


async def _proxy_call(helper, method: Method, relay: str, data: bytes) -> Value:
    canister_id = helper.resolve_principal(method.canister)
    proxy_id = helper.resolve_principal(relay)
    try:
        await helper.canister_map.get(helper, proxy_id)
    except Exception as e:
        raise ReplError(f"{proxy_id} canister interface not found") from e
    child = helper.spawn()
    child.env["_msg"] = Blob(data)
    wallet_args = RecordExp((
        Field(Named("args"), Path("_msg")),
        Field(Named("cycles"), NumberExp("0")),
        Field(Named("method_name"), TextExp(method.method)),
        Field(Named("canister"), PrincipalExp(canister_id)),
    ))
    script = [
        Let("_", Call(Method(proxy_id.to_text(), "wallet_call"), (wallet_args,), CALL)),
        Let("_", Decode(Method(canister_id.to_text(), method.method),
                        Path("_", (Get("Ok"), Get("return"))))),
    ]
    for cmd in script:
        await cmd.run(child)
    return child.env["_"]


# =================================================================
# Parallel batches
# =================================================================

async def parallel_calls(coros, limit: int = 10) -> list:
    """
    Runs the coroutines concurrently, at most `limit` at a time, and returns
    their results in submission order. The first failure cancels the calls
    still pending, waits for them to finish, and is raised.
    """
    semaphore = asyncio.Semaphore(limit)

    async def bounded(coro):
        async with semaphore:
            return await coro

    coros = list(coros)
    tasks = [asyncio.ensure_future(bounded(c)) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # jobs cancelled before they got a slot never started
        for c in coros:
            c.close()
        raise


async def _par_call(helper, calls) -> Value:
    prepared = []
    for fc in calls:
        args = [await evaluate(e, helper) for e in fc.args]
        info = await get_info(fc.method, helper, False)
        data = await _encode_call_args(helper, info, args)
        prepared.append((info, fc.method.method, data))

    if helper.offline is not None:
        results = []
        for info, method, data in prepared:
            results.append(await call(helper, info.canister_id, method, data, info.signature, force_update=True))
    else:
        results = await parallel_calls(
            [call(helper, info.canister_id, method, data, info.signature, force_update=True)
             for info, method, data in prepared],
            helper.parallelism,
        )
    return args_to_value([args_to_value(r) for r in results])
