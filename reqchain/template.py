"""reqchain template - tokenizer for {{...}} placeholders and plugin calls.

Placeholders nest: the text inside ``{{ }}`` is itself a template, so
``{{steps.list.response.body.items.{{index}}.id}}`` and
``{{plugins.a.f("{{plugins.b.g()}}")}}`` parse into a tree that the
resolver evaluates innermost-first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

OPEN = "{{"
CLOSE = "}}"

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_CALL_HEAD_RE = re.compile(r"^plugins\.([A-Za-z_][\w-]*)\.([A-Za-z_]\w*)\s*\(")
_CALL_START_RE = re.compile(r"\s*plugins\.[A-Za-z_][\w-]*\.[A-Za-z_]\w*\s*\(")
_CALL_TAIL_RE = re.compile(r"\s*\??\s*\}\}")


class TemplateSyntaxError(ValueError):
    """Raised for malformed call expressions inside a placeholder."""


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Placeholder:
    """One ``{{ ... }}`` occurrence.

    ``raw`` is the full text including braces, ``inner`` the untrimmed
    text between them.
    """

    raw: str
    inner: str

    @property
    def optional(self) -> bool:
        return self.inner.strip().endswith("?")

    @property
    def reference(self) -> str:
        ref = self.inner.strip()
        if ref.endswith("?"):
            ref = ref[:-1].rstrip()
        return ref

    @property
    def parts(self) -> list[Node]:
        return parse_template(self.reference)


Node = Union[Literal, Placeholder]


@dataclass(frozen=True)
class StringArg:
    """A quoted call argument; may itself contain placeholders."""

    text: str


@dataclass(frozen=True)
class NumberArg:
    value: int | float


@dataclass(frozen=True)
class TemplateArg:
    """A bare ``{{...}}`` call argument."""

    text: str


Argument = Union[StringArg, NumberArg, TemplateArg]


@dataclass(frozen=True)
class Call:
    plugin: str
    function: str
    arguments: tuple[Argument, ...]


def parse_template(text: str) -> list[Node]:
    """Split text into literal runs and top-level placeholders.

    An unclosed ``{{`` is kept as literal text.
    """
    nodes: list[Node] = []
    literal_start = 0
    i = 0
    while i < len(text):
        if not text.startswith(OPEN, i):
            i += 1
            continue
        end = _find_close(text, i + len(OPEN))
        if end is None:
            i += 1
            continue
        if i > literal_start:
            nodes.append(Literal(text[literal_start:i]))
        nodes.append(Placeholder(raw=text[i : end + len(CLOSE)], inner=text[i + len(OPEN) : end]))
        i = end + len(CLOSE)
        literal_start = i
    if literal_start < len(text):
        nodes.append(Literal(text[literal_start:]))
    return nodes


def _find_close(text: str, start: int) -> int | None:
    """Index of the ``}}`` matching an already-consumed ``{{``.

    A call expression is scanned quote-aware, so braces inside its quoted
    arguments do not open or close the placeholder.
    """
    head = _CALL_START_RE.match(text, start)
    if head:
        scanned = _scan_call(text, head.end())
        if scanned is not None:
            tail = _CALL_TAIL_RE.match(text, scanned[0] + 1)
            if tail:
                return tail.end() - len(CLOSE)
    i = start
    while i < len(text):
        if text.startswith(OPEN, i):
            nested = _find_close(text, i + len(OPEN))
            if nested is None:
                return None
            i = nested + len(CLOSE)
        elif text.startswith(CLOSE, i):
            return i
        else:
            i += 1
    return None


def _scan_call(text: str, i: int, depth: int = 1, quote: str | None = None) -> tuple[int, list[int]] | None:
    """Scan call arguments starting just past the opening ``(``.

    Returns the index of the closing ``)`` and the positions of the
    top-level commas, or None when the parentheses never balance. Inside
    a quoted string a ``{{`` is a nested placeholder when the rest of the
    call still scans with it; otherwise it is literal text.
    """
    commas: list[int] = []
    while i < len(text):
        if text.startswith(OPEN, i):
            nested = _find_close(text, i + len(OPEN))
            if nested is not None:
                rest = _scan_call(text, nested + len(CLOSE), depth, quote)
                if rest is not None:
                    return rest[0], commas + rest[1]
            if not quote:
                return None
            i += len(OPEN)
            continue
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i, commas
        elif ch == "," and depth == 1:
            commas.append(i)
        i += 1
    return None


def has_placeholders(text: str) -> bool:
    return any(isinstance(node, Placeholder) for node in parse_template(text))


def parse_call(reference: str) -> Call | None:
    """Parse ``plugins.<plugin>.<function>(args...)``.

    Returns None when the reference is not a call expression at all.
    Raises TemplateSyntaxError when it starts like one but is malformed.
    """
    head = _CALL_HEAD_RE.match(reference)
    if not head:
        return None
    open_idx = head.end() - 1
    scanned = _scan_call(reference, open_idx + 1)
    if scanned is None:
        raise TemplateSyntaxError(f"Unbalanced parentheses in function call '{reference}'")
    close_idx = scanned[0]
    if reference[close_idx + 1 :].strip():
        raise TemplateSyntaxError(
            f"Unexpected text after function call '{reference}'. "
            "Expected: plugins.pluginName.functionName(args...)",
        )
    args_text = reference[open_idx + 1 : close_idx]
    arguments = tuple(_classify_argument(arg, reference) for arg in split_arguments(args_text))
    return Call(plugin=head.group(1), function=head.group(2), arguments=arguments)


def split_arguments(args_text: str) -> list[str]:
    """Split a call's argument list on top-level commas.

    Commas inside quotes or inside nested placeholders do not split.
    """
    scanned = _scan_call(args_text + ")", 0)
    commas = scanned[1] if scanned is not None else []
    bounds = [-1, *commas, len(args_text)]
    args = [args_text[a + 1 : b].strip() for a, b in zip(bounds, bounds[1:])]
    return [] if args == [""] else args


def _classify_argument(arg: str, reference: str) -> Argument:
    if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in "\"'":
        quote = arg[0]
        return StringArg(arg[1:-1].replace("\\" + quote, quote).replace("\\\\", "\\"))
    if _NUMBER_RE.match(arg):
        return NumberArg(float(arg) if "." in arg else int(arg))
    nodes = parse_template(arg)
    if len(nodes) == 1 and isinstance(nodes[0], Placeholder):
        return TemplateArg(arg)
    raise TemplateSyntaxError(
        f"Invalid argument '{arg}' in function call '{reference}'. "
        "Arguments must be quoted strings, numbers or {{...}} templates.",
    )
