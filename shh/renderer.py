from __future__ import annotations

import re
from typing import Iterable, List, Tuple

from .synthesizer import DirectiveSet

FRAGMENT_HEADER = "# This file has been autogenerated by shh"
SNIPPET_START = "-------- START OF OPTION OUTPUT SNIPPET --------"
SNIPPET_END = "-------- END OF OPTION OUTPUT SNIPPET --------"

_NEEDS_QUOTES = re.compile(r'["\\]')


def render_value(value: str) -> str:
    """Values are written as-is; only quotes and backslashes need escaping inside unit files."""
    if _NEEDS_QUOTES.search(value):
        return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return value


def render_lines(options: Iterable[Tuple[str, str]]) -> List[str]:
    return [f"{key}={render_value(value)}" for key, value in options]


def render_fragment(directive_set: DirectiveSet) -> str:
    """A complete `[Service]` drop-in for the synthesized options."""
    lines = [FRAGMENT_HEADER, "[Service]"]
    lines.extend(render_lines(directive_set.options()))
    return "\n".join(lines) + "\n"


def render_snippet(directive_set: DirectiveSet) -> str:
    """Options framed by markers, for pasting into an existing unit."""
    lines = [SNIPPET_START]
    lines.extend(render_lines(directive_set.options()))
    lines.append(SNIPPET_END)
    return "\n".join(lines) + "\n"
