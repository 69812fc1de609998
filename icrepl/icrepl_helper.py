"""
The evaluation context: variable and function environments, the interface
cache, the transport, and the logs (offline messages and side effects).
"""
import os
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Callable, Any

from icrepl.icrepl_values import (
    ReplError, Principal, Value, PrincipalValue, ServiceValue, blob_bytes,
)
from icrepl.icrepl_types import Function, Type, TypeEnv, TEXT, NAT16, VecType, RecordType
from icrepl.icrepl_candid import encode_args, decode_args
from icrepl.icrepl_idl import parse_idl


def _dbg(*parts):
    if os.environ.get("ICREPL_DEBUG"):
        try:
            print("[DBG]", *parts, file=sys.stderr)
        except OSError:
            pass


class Env:
    """Ordered variable bindings. `_` holds the latest result."""

    def __init__(self):
        self.bindings: Dict[str, Value] = {}

    def __getitem__(self, name: str) -> Value:
        return self.bindings[name]

    def __setitem__(self, name: str, value: Value):
        self.bindings[name] = value

    def __contains__(self, name: str) -> bool:
        return name in self.bindings

    def get(self, name: str, default=None):
        return self.bindings.get(name, default)

    def __repr__(self):
        return f"Env({list(self.bindings)})"


class FuncEnv:
    """User-defined functions: name → (formal parameter names, body statements)."""

    def __init__(self):
        self.funcs: Dict[str, Tuple[List[str], List[Any]]] = {}

    def __setitem__(self, name, entry):
        self.funcs[name] = entry

    def get(self, name):
        return self.funcs.get(name)

    def __contains__(self, name):
        return name in self.funcs


@dataclass
class CanisterInfo:
    env: TypeEnv
    methods: Dict[str, Function]
    init: Optional[List[Type]] = None
    profiling: Optional[Dict[int, str]] = None

    @classmethod
    def from_idl(cls, text: str, profiling: Optional[Dict[int, str]] = None) -> 'CanisterInfo':
        prog = parse_idl(text)
        return cls(prog.env, prog.methods(), prog.init_args(), profiling)


async def fetch_metadata(agent, canister_id: Principal, name: str) -> Optional[bytes]:
    path = [b"canister", canister_id.raw, b"metadata", name.encode('utf-8')]
    return await agent.read_state(canister_id, path)


class CanisterMap:
    """Interfaces of canisters fetched so far, keyed by principal."""

    def __init__(self):
        self.entries: Dict[Principal, CanisterInfo] = {}

    def __contains__(self, canister_id):
        return canister_id in self.entries

    async def get(self, helper: 'Helper', canister_id: Principal) -> CanisterInfo:
        if canister_id in self.entries:
            return self.entries[canister_id]
        agent = helper.require_agent()
        raw = await fetch_metadata(agent, canister_id, "candid:service")
        if raw is not None:
            did = raw.decode('utf-8')
        else:
            _dbg("no candid:service metadata for", canister_id, "- trying the tmp hack query")
            reply = await agent.query(canister_id, "__get_candid_interface_tmp_hack",
                                      encode_args([]), canister_id)
            did = decode_args(reply, [TEXT])[0].value
        profiling = None
        names = await fetch_metadata(agent, canister_id, "name")
        if names is not None:
            entries = decode_args(names, [VecType(RecordType.tuple([NAT16, TEXT]))])[0]
            profiling = {e.fields[0].val.value: e.fields[1].val.value for e in entries.items}
        info = CanisterInfo.from_idl(did, profiling)
        self.entries[canister_id] = info
        return info


@dataclass(frozen=True)
class OfflineConfig:
    """Offline mode; `sink` is a file path, or None for stdout."""
    sink: Optional[str] = None


class Helper:
    """The explicit context passed through every evaluation."""

    def __init__(self, agent=None, *, agent_url: str = "", offline: Optional[OfflineConfig] = None,
                 verbose: bool = False, base_path: Optional[str] = None,
                 default_effective_canister_id: Optional[Principal] = None,
                 parallelism: int = 10, ic_wasm: str = "ic-wasm",
                 arg_generator: Optional[Callable] = None):
        self.env = Env()
        self.func_env = FuncEnv()
        self.canister_map = CanisterMap()
        self.agent = agent
        self.agent_url = agent_url or getattr(agent, "url", "")
        self.offline = offline
        self.verbose = verbose
        self.base_path = base_path or os.getcwd()
        self.default_effective_canister_id = default_effective_canister_id
        self.parallelism = parallelism
        self.ic_wasm = ic_wasm
        self.arg_generator = arg_generator
        self.messages: List[Any] = []
        self.side_effects: List[Dict] = []

    @classmethod
    def from_config(cls, config, agent=None) -> 'Helper':
        from icrepl.icrepl_agent import HttpAgent
        if agent is None:
            agent = HttpAgent(config.replica, http_config=config.http)
        default_id = None
        if config.default_effective_canister_id:
            default_id = Principal.from_text(config.default_effective_canister_id)
        helper = cls(
            agent,
            agent_url=config.replica,
            offline=OfflineConfig(config.offline_sink) if config.offline else None,
            verbose=config.verbose,
            base_path=config.base_path,
            default_effective_canister_id=default_id,
            parallelism=config.parallelism,
            ic_wasm=config.ic_wasm,
        )
        for name, text in config.aliases.items():
            helper.env[name] = PrincipalValue(Principal.from_text(text))
        return helper

    def spawn(self) -> 'Helper':
        """A child context with a fresh `Env` sharing everything else."""
        child = Helper.__new__(Helper)
        child.__dict__.update(self.__dict__)
        child.env = Env()
        return child

    def require_agent(self):
        if self.agent is None:
            raise ReplError("no agent is configured")
        return self.agent

    def emit(self, topic: str, message: str):
        self.side_effects.append({'topics': [topic], 'message': message})
        _dbg(f"[{topic}]", message)

    def warn(self, message: str):
        self.emit('stderr', f"Warning: {message}")

    def resolve_principal(self, text: str) -> Principal:
        """Principal text, or an alias bound to a principal or service value."""
        try:
            return Principal.from_text(text)
        except ValueError:
            pass
        match self.env.get(text):
            case PrincipalValue(principal=p) | ServiceValue(principal=p):
                return p
        raise ReplError(f"{text} is not a principal or a bound canister alias")

    def module_blob(self, name: str) -> Optional[bytes]:
        """The bytes bound to `name` when it holds a blob (a wasm module)."""
        value = self.env.get(name)
        return blob_bytes(value) if value is not None else None
