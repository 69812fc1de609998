from __future__ import annotations

import collections.abc
import json
import re
import tomllib
from typing import Any, Optional

import cbor2
import yaml

# Self-describing CBOR tag that prefixes replica envelopes and certificates
CBOR_SELF_DESCRIBE = 55799


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return data.decode(enc, errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def _untag(obj: Any) -> Any:
    if isinstance(obj, cbor2.CBORTag) and obj.tag == CBOR_SELF_DESCRIBE:
        return obj.value
    return obj


def _to_builtin(obj: Any) -> Any:
    # cbor2 may decode maps to frozendict and arrays to tuples
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {k: _to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml', 'toml', 'cbor'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'cbor' in ct:
        return 'cbor'
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct or 'x-yaml' in ct:
        return 'yaml'
    if 'toml' in ct:
        return 'toml'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


def format_for_path(path: str) -> Optional[str]:
    lower = path.lower()
    if lower.endswith('.json'):
        return 'json'
    if lower.endswith(('.yaml', '.yml')):
        return 'yaml'
    if lower.endswith('.toml'):
        return 'toml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data (bytes/string) to native Python structures.
    Supported fmt: 'json', 'yaml', 'toml', 'cbor'.
    If fmt is None, uses content_type, then sniffing.
    Returns dict/list/scalars for structured formats; returns raw text for others.
    CBOR is binary and is never sniffed; malformed CBOR raises.
    """
    f = fmt or detect_format(content_type)
    if f == 'cbor':
        if not data:
            return None
        try:
            decoded = cbor2.loads(bytes(data))
        except cbor2.CBORDecodeError as e:
            raise ValueError(f"malformed CBOR: {e}") from e
        return _to_builtin(_untag(decoded))

    enc = _encoding_from_content_type(content_type)
    text = _norm_text(data, encoding=enc)
    f = f or detect_format(content_type, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Fallback to YAML if declared JSON but content is actually YAML-like
            try:
                return yaml.safe_load(text)
            except yaml.YAMLError:
                return text
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError:
            return text
    if f == 'toml':
        try:
            return tomllib.loads(text)
        except tomllib.TOMLDecodeError:
            return text

    # Unknown/unsupported → return text
    return text


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str | bytes:
    """
    Convert a native Python value into its wire representation.
    - fmt: 'json' | 'yaml' | 'cbor'
    - CBOR output is bytes with the self-describing tag; the others are text.
    """
    f = (fmt or '').lower()
    if f == 'json':
        return json.dumps(value, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(value, sort_keys=False)
    if f == 'cbor':
        return cbor2.dumps(cbor2.CBORTag(CBOR_SELF_DESCRIBE, value))
    if f == 'toml':
        raise RuntimeError("TOML serialization is not supported (tomllib is read-only)")
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "format_for_path",
]
