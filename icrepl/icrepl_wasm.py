"""
Wasm module helpers: reading `icp:public` / `icp:private` metadata custom
sections, and profiling instrumentation through the external `ic-wasm` tool.
"""
import asyncio
import gzip
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from icrepl.icrepl_values import ReplError

_WASM_MAGIC = b"\0asm"
_GZIP_MAGIC = b"\x1f\x8b"


def _uleb(data: bytes, pos: int):
    result, shift = 0, 0
    while True:
        if pos >= len(data):
            raise ReplError("truncated wasm module")
        b = data[pos]
        pos += 1
        result |= (b & 0x7f) << shift
        shift += 7
        if not b & 0x80:
            return result, pos


def decompress(module: bytes) -> bytes:
    if module.startswith(_GZIP_MAGIC):
        return gzip.decompress(module)
    return module


def custom_sections(module: bytes) -> Dict[str, bytes]:
    """Maps custom section names to their contents."""
    data = decompress(module)
    if not data.startswith(_WASM_MAGIC):
        raise ReplError("not a wasm module")
    sections = {}
    pos = 8
    while pos < len(data):
        section_id = data[pos]
        size, pos = _uleb(data, pos + 1)
        end = pos + size
        if end > len(data):
            raise ReplError("truncated wasm module")
        if section_id == 0:
            name_len, name_pos = _uleb(data, pos)
            name = data[name_pos:name_pos + name_len].decode('utf-8', 'replace')
            sections[name] = data[name_pos + name_len:end]
        pos = end
    return sections


def get_metadata(module: bytes, name: str) -> Optional[bytes]:
    sections = custom_sections(module)
    for visibility in ("public", "private"):
        section = sections.get(f"icp:{visibility} {name}")
        if section is not None:
            return section
    return None


@dataclass
class InstrumentConfig:
    trace_only_funcs: List[str] = field(default_factory=list)
    start_page: Optional[int] = None
    page_limit: Optional[int] = None

    def instrument_args(self) -> List[str]:
        args = []
        for name in self.trace_only_funcs:
            args += ["--trace-only", name]
        if self.start_page is not None:
            args += ["--start-page", str(self.start_page)]
            if self.page_limit is not None:
                args += ["--page-limit", str(self.page_limit)]
        return args


def _run_tool(cmd: List[str]) -> None:
    proc = subprocess.run(cmd, capture_output=True, text=True)
    if proc.returncode != 0:
        raise ReplError(f"{os.path.basename(cmd[0])} failed with status {proc.returncode}: {proc.stderr.strip()}")


def _instrument_sync(module: bytes, config: InstrumentConfig, tool: str) -> bytes:
    with tempfile.TemporaryDirectory(prefix="icrepl-") as tmp:
        src = os.path.join(tmp, "input.wasm")
        shrunk = os.path.join(tmp, "shrunk.wasm")
        out = os.path.join(tmp, "instrumented.wasm")
        with open(src, "wb") as f:
            f.write(decompress(module))
        _run_tool([tool, src, "-o", shrunk, "shrink"])
        _run_tool([tool, shrunk, "-o", out, "instrument", *config.instrument_args()])
        with open(out, "rb") as f:
            return f.read()


async def instrument(module: bytes, config: InstrumentConfig, tool: str = "ic-wasm") -> bytes:
    """Shrinks and instruments `module` for profiling with the `ic-wasm` tool."""
    return await asyncio.to_thread(_instrument_sync, module, config, tool)
