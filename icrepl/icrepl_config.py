"""
Engine configuration: which replica to talk to, whether to run offline, and
the knobs of the call executor. Loaded from a JSON, YAML or TOML file.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Optional, Dict, Any

from icrepl.icrepl_file import read_structured

DEFAULT_REPLICA = "http://127.0.0.1:4943"
REPLICA_ENV = "ICREPL_REPLICA"


@dataclass
class ReplConfig:
    replica: str = DEFAULT_REPLICA
    offline: bool = False
    # None sends offline messages to stdout
    offline_sink: Optional[str] = None
    verbose: bool = False
    default_effective_canister_id: Optional[str] = None
    parallelism: int = 10
    ic_wasm: str = "ic-wasm"
    base_path: Optional[str] = None
    aliases: Dict[str, str] = field(default_factory=dict)
    http: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> 'ReplConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k.replace('-', '_') not in known)
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(unknown)}")
        cfg = cls(**{k.replace('-', '_'): v for k, v in data.items()})
        if not isinstance(cfg.parallelism, int) or cfg.parallelism < 1:
            raise ValueError("parallelism must be a positive integer")
        if not isinstance(cfg.aliases, dict):
            raise ValueError("aliases must map names to principal text")
        return cfg


def load_config(path: Optional[str] = None) -> ReplConfig:
    """
    Reads the configuration file at `path` (if given) and applies the
    ICREPL_REPLICA environment override. Relative `base_path` entries are
    taken relative to the file's directory.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        loaded = read_structured(path)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"{path}: configuration must be a mapping")
        data = loaded
    cfg = ReplConfig.from_mapping(data)
    if path is not None:
        cfg_dir = os.path.dirname(os.path.abspath(path))
        cfg.base_path = os.path.join(cfg_dir, cfg.base_path) if cfg.base_path else cfg_dir
    override = os.environ.get(REPLICA_ENV)
    if override:
        cfg.replica = override
    return cfg
