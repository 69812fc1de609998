"""
Profiling of instrumented canisters: instruction counters around calls, and
flamegraphs built from the canister's recorded call trace.
"""
import zlib
from typing import Dict, List, Tuple

import pystache

from icrepl.icrepl_values import ReplError, Principal
from icrepl.icrepl_types import INT32, INT64, VecType, RecordType
from icrepl.icrepl_candid import encode_args, decode_args
from icrepl.icrepl_file import write_text

_WIDTH = 1200
_FRAME_HEIGHT = 16
_PAD_TOP = 40
_PAD_SIDE = 10

_SVG_TEMPLATE = """<?xml version="1.0" standalone="no"?>
<svg version="1.1" width="{{width}}" height="{{height}}" xmlns="http://www.w3.org/2000/svg" font-family="Verdana" font-size="12">
<rect x="0" y="0" width="{{width}}" height="{{height}}" fill="#f8f8f8"/>
<text x="{{center}}" y="24" text-anchor="middle" font-size="17">{{title}}</text>
{{#frames}}
<g><title>{{name}} ({{cost}} instructions, {{percent}}%)</title><rect x="{{x}}" y="{{y}}" width="{{w}}" height="15" fill="{{color}}" rx="2" ry="2"/><text x="{{tx}}" y="{{ty}}">{{label}}</text></g>
{{/frames}}
</svg>
"""


async def get_cycles(agent, canister_id: Principal) -> int:
    """Reads the instruction counter of an instrumented canister."""
    data = await agent.query(canister_id, "__get_cycles", encode_args([]), canister_id)
    return decode_args(data, [INT64])[0].value


def render_profiling(trace: List[Tuple[int, int]], names: Dict[int, str]) -> Tuple[List[Tuple[str, int]], int]:
    """
    Folds an enter/exit trace into flamegraph stacks.

    A non-negative id enters that function at the given instruction count; a
    negative id exits it. Each stack line carries the function's self cost.
    Returns the folded stacks and the total cost of the outermost calls.
    """
    stack: List[List[int]] = []
    prefix: List[str] = []
    folded: List[Tuple[str, int]] = []
    total = 0
    for func_id, count in trace:
        if func_id >= 0:
            stack.append([func_id, count, 0])
            prefix.append(names.get(func_id, f"func_{func_id}"))
            continue
        if not stack:
            raise ReplError(f"profiling trace exits func_{-func_id} which was never entered")
        start_id, start, children = stack.pop()
        if start_id != -func_id:
            raise ReplError(f"profiling trace exits func_{-func_id} inside func_{start_id}")
        inclusive = count - start
        frame = ";".join(prefix)
        prefix.pop()
        if stack:
            stack[-1][2] += inclusive
        else:
            total += inclusive
        own = inclusive - children
        if folded and folded[-1][0] == frame:
            folded[-1] = (frame, folded[-1][1] + own)
        else:
            folded.append((frame, own))
    return folded, total


def _color(name: str) -> str:
    h = zlib.crc32(name.encode('utf-8'))
    return f"rgb({205 + h % 50},{(h >> 8) % 180 + 50},{(h >> 16) % 55})"


def _build_tree(folded: List[Tuple[str, int]]) -> dict:
    root = {"name": "all", "value": 0, "children": {}}
    for frame, cost in folded:
        node = root
        node["value"] += cost
        for part in frame.split(";"):
            node = node["children"].setdefault(part, {"name": part, "value": 0, "children": {}})
            node["value"] += cost
    return root


def render_flamegraph(folded: List[Tuple[str, int]], title: str) -> str:
    root = _build_tree(folded)
    total = root["value"] or 1
    scale = (_WIDTH - 2 * _PAD_SIDE) / total

    def depth_of(node):
        return 1 + max((depth_of(c) for c in node["children"].values()), default=0)

    depth = depth_of(root)
    height = _PAD_TOP + depth * _FRAME_HEIGHT + _PAD_SIDE
    frames = []

    def place(node, x, level):
        w = node["value"] * scale
        y = height - _PAD_SIDE - (level + 1) * _FRAME_HEIGHT
        chars = int(w / 7)
        label = node["name"] if len(node["name"]) <= chars else (node["name"][:max(chars - 2, 0)] + ".." if chars > 3 else "")
        frames.append({
            "name": node["name"], "cost": node["value"],
            "percent": f"{100 * node['value'] / total:.2f}",
            "x": f"{x:.2f}", "y": y, "w": f"{w:.2f}", "color": _color(node["name"]),
            "tx": f"{x + 3:.2f}", "ty": y + 11, "label": label,
        })
        child_x = x
        for child in node["children"].values():
            place(child, child_x, level + 1)
            child_x += child["value"] * scale

    place(root, _PAD_SIDE, 0)
    renderer = pystache.Renderer()
    return renderer.render(_SVG_TEMPLATE, {
        "width": _WIDTH, "height": height, "center": _WIDTH // 2,
        "title": title, "frames": frames,
    })


async def get_profiling(agent, canister_id: Principal, names: Dict[int, str], title: str, path: str) -> int:
    """Fetches the call trace, writes its flamegraph to `path`, and returns the total cost."""
    data = await agent.query(canister_id, "__get_profiling", encode_args([]), canister_id)
    trace_ty = VecType(RecordType.tuple([INT32, INT64]))
    trace = decode_args(data, [trace_ty])[0]
    pairs = [(entry.fields[0].val.value, entry.fields[1].val.value) for entry in trace.items]
    folded, total = render_profiling(pairs, names)
    write_text(path, render_flamegraph(folded, title))
    return total
