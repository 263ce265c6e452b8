"""reqchain paths - dotted/indexed traversal into recorded step data."""

from __future__ import annotations

import json
import re
from typing import Any

# ---------------------------------------------------------------------------
# Segment types returned by parse_path:
#   str              → dict key  (exact match first, then case-insensitive)
#   int              → list index (supports negative)
#   None             → every element of a list
#   (start, stop)    → Python-style slice  e.g. [2:], [:-1], [1:3]
# ---------------------------------------------------------------------------

_INT_RE = re.compile(r"^-?\d+$")
_SLICE_RE = re.compile(r"^(-?\d*):(-?\d*)$")
_BRACKETS_RE = re.compile(r"^([^\[]*)((?:\[[^\]]*\])+)$")

Segment = str | int | tuple[int | None, int | None] | None


def parse_path(path: str) -> list[Segment]:
    """Parse a lookup path into typed segments.

    Supports all of:
      body.id                → key, key
      body.items[0].id       → key, key, 0, key
      body.items.0.id        → key, key, 0, key (numeric dot segment = index)
      body.items[-1]         → key, key, -1
      body.items[].id        → key, key, iter, key
      body.items[1:3]        → key, key, (1,3)
      headers[Content-Type]  → key, key   (bracket key access)
    """
    segments: list[Segment] = []
    for part in path.strip().split("."):
        part = part.strip()
        if not part:
            continue
        m = _BRACKETS_RE.match(part)
        if m:
            if m.group(1).strip():
                segments.append(m.group(1).strip())
            for bracket in re.findall(r"\[([^\]]*)\]", m.group(2)):
                segments.append(_classify_bracket(bracket.strip()))
        elif _INT_RE.match(part):
            segments.append(int(part))
        else:
            segments.append(part)
    return segments


def _classify_bracket(content: str) -> Segment:
    if not content:
        return None
    sm = _SLICE_RE.match(content)
    if sm:
        start = int(sm.group(1)) if sm.group(1) else None
        stop = int(sm.group(2)) if sm.group(2) else None
        return (start, stop)
    if _INT_RE.match(content):
        return int(content)
    return content


def _ci_get(d: dict[str, Any], key: str) -> tuple[bool, Any]:
    """Dict lookup, exact key first then case-insensitive."""
    if key in d:
        return True, d[key]
    lower = key.lower()
    for k, v in d.items():
        if isinstance(k, str) and k.lower() == lower:
            return True, v
    return False, None


def _step(current: Any, seg: Segment) -> tuple[bool, Any]:
    if isinstance(seg, str):
        if isinstance(current, dict):
            return _ci_get(current, seg)
        if isinstance(current, list) and _INT_RE.match(seg):
            return _step(current, int(seg))
        return False, None
    if isinstance(seg, int):
        if isinstance(current, list | str):
            try:
                return True, current[seg]
            except IndexError:
                return False, None
        return False, None
    return False, None


def find_value(data: Any, path: str | list[Segment]) -> tuple[bool, Any]:
    """Walk *path* through *data*.

    Returns ``(found, value)``. Iteration (``[]``) and slices collect the
    remaining path from every selected element into a list.
    """
    segments = parse_path(path) if isinstance(path, str) else path
    current = data
    for idx, seg in enumerate(segments):
        if seg is None or isinstance(seg, tuple):
            if not isinstance(current, list):
                return False, None
            selected = current if seg is None else current[slice(*seg)]
            rest = segments[idx + 1 :]
            values = []
            for item in selected:
                found, value = find_value(item, rest)
                if found:
                    values.append(value)
            return True, values
        found, current = _step(current, seg)
        if not found:
            return False, None
    return True, current


def parse_structured_body(body: Any) -> Any:
    """Decode a textual body that looks like JSON; otherwise return it as-is."""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if isinstance(body, str) and body.strip()[:1] in ("{", "["):
        try:
            return json.loads(body)
        except ValueError:
            return body
    return body
