from __future__ import annotations
import os
from typing import Optional, Any

from icrepl.icrepl_serialize import deserialize, format_for_path


def resolve_path(path: str, base_dir: Optional[str]) -> str:
    # Absolute filesystem path
    if path.startswith("/"):
        return os.path.normpath(path)
    # Home directory
    if path.startswith("~"):
        return os.path.expanduser(path)
    # Empty → base dir or CWD
    if path == "":
        return base_dir or os.getcwd()
    # Default: relative to the base dir (or CWD)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, path))


def read_bytes(path: str, *, base_dir: Optional[str] = None) -> bytes:
    full = resolve_path(path, base_dir)
    with open(full, "rb") as f:
        return f.read()


def read_structured(path: str, *, base_dir: Optional[str] = None) -> Any:
    """Reads a .json/.yaml/.toml file into native structures."""
    full = resolve_path(path, base_dir)
    with open(full, "rb") as f:
        data = f.read()
    return deserialize(data, fmt=format_for_path(full) or 'yaml')


def append_text(path: str, text: str, *, base_dir: Optional[str] = None) -> str:
    full = resolve_path(path, base_dir)
    parent = os.path.dirname(full)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(full, "a", encoding="utf-8") as f:
        f.write(text)
    return full


def write_text(path: str, text: str, *, base_dir: Optional[str] = None) -> str:
    full = resolve_path(path, base_dir)
    parent = os.path.dirname(full)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(full, "w", encoding="utf-8") as f:
        f.write(text)
    return full
