from __future__ import annotations

import errno as _errno
import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

# Matches tokens like: '6</real/path>', '7</dev/urandom<char 1:9>>', '3<socket:[12345]>'
_FD_ANN_RE = re.compile(r"^\s*(?P<fd>-?\d+)\s*<(?P<ann>.+)>\s*$")
_STRING_RE = re.compile(r'^@?"((?:[^"\\]|\\.)*)"(\.\.\.)?$', re.DOTALL)
_ESCAPE_RE = re.compile(r"\\(x[0-9a-fA-F]{2}|[0-7]{1,3}|.)", re.DOTALL)
_INT_RE = re.compile(r"^-?(?:0[xX][0-9a-fA-F]+|0[0-7]*|[1-9]\d*)$")

_SIMPLE_ESCAPES = {
    "n": b"\n",
    "t": b"\t",
    "r": b"\r",
    "v": b"\v",
    "f": b"\f",
    "a": b"\a",
    "b": b"\b",
    "e": b"\x1b",
}


def _unescape(body: str) -> str:
    """Decode strace C-style escapes (\\n, \\177, \\x7f, \\") into text (non UTF-8 bytes kept as surrogates)."""
    out = bytearray()
    pos = 0
    for m in _ESCAPE_RE.finditer(body):
        out += body[pos:m.start()].encode("utf-8", "surrogateescape")
        esc = m.group(1)
        if esc[0] == "x" and len(esc) == 3:
            out.append(int(esc[1:], 16))
        elif esc[0] in "01234567":
            out.append(int(esc, 8) & 0xFF)
        else:
            out += _SIMPLE_ESCAPES.get(esc, esc.encode("utf-8", "surrogateescape"))
        pos = m.end()
    out += body[pos:].encode("utf-8", "surrogateescape")
    return out.decode("utf-8", "surrogateescape")


def parse_int(text: str) -> Optional[int]:
    """Parse a C integer literal as printed by strace (decimal, 0x hex, 0 octal)."""
    s = text.strip()
    if not _INT_RE.match(s):
        return None
    neg = s.startswith("-")
    digits = s[1:] if neg else s
    if digits[:2].lower() == "0x":
        value = int(digits, 16)
    elif len(digits) > 1 and digits.startswith("0"):
        value = int(digits, 8)
    else:
        value = int(digits)
    return -value if neg else value


class ArgKind(Enum):
    RAW = "raw"
    STRING = "string"
    STRUCT = "struct"
    ARRAY = "array"
    TRUNCATED = "truncated"


@dataclass(frozen=True)
class Argument:
    """
    One raw argument token of a syscall line.

    Tokens are kept as text and decoded on demand: the tracer output has no
    schema, so each classifier asks for the view it needs (string, integer,
    flag set, fd annotation, struct members).
    """
    text: str
    kind: ArgKind = ArgKind.RAW

    @classmethod
    def from_token(cls, token: str) -> "Argument":
        s = token.strip()
        if s == "...":
            return cls(s, ArgKind.TRUNCATED)
        if s.startswith('"') or s.startswith('@"'):
            return cls(s, ArgKind.STRING)
        if s.startswith("{"):
            return cls(s, ArgKind.STRUCT)
        if s.startswith("["):
            return cls(s, ArgKind.ARRAY)
        return cls(s, ArgKind.RAW)

    def __str__(self):
        return self.text

    @property
    def is_truncated(self) -> bool:
        return self.kind == ArgKind.TRUNCATED or (self.kind == ArgKind.STRING and self.text.endswith("..."))

    @property
    def is_abstract(self) -> bool:
        return self.text.startswith('@"')

    def as_string(self) -> Optional[str]:
        if self.kind != ArgKind.STRING:
            return None
        m = _STRING_RE.match(self.text)
        if not m:
            return None
        return _unescape(m.group(1))

    def as_int(self) -> Optional[int]:
        if self.kind != ArgKind.RAW:
            return None
        fd = self.as_fd()
        if fd is not None:
            return fd
        return parse_int(self.text)

    def as_flags(self) -> FrozenSet[str]:
        """Split 'A|B|0x40' style flag expressions; '0' and 'NULL' decode to an empty set."""
        if self.kind != ArgKind.RAW:
            return frozenset()
        parts = {p.strip() for p in self.text.split("|")}
        return frozenset(p for p in parts if p and p not in ("0", "NULL"))

    def as_fd(self) -> Optional[int]:
        m = _FD_ANN_RE.match(self.text)
        if m:
            return int(m.group("fd"))
        s = self.text.strip()
        if s.isdigit():
            return int(s)
        return None

    def fd_annotation(self) -> Optional[str]:
        m = _FD_ANN_RE.match(self.text)
        return m.group("ann") if m else None

    def fields(self) -> Dict[str, "Argument"]:
        """Members of a '{key=value, ...}' struct, by key."""
        if self.kind != ArgKind.STRUCT:
            return {}
        from .strace_parser import scan_arguments

        inner = self.text.strip()[1:]
        if inner.endswith("}"):
            inner = inner[:-1]
        tokens, _ = scan_arguments(inner, stop_at_paren=False)
        out: Dict[str, Argument] = {}
        for tok in tokens:
            key, sep, value = tok.partition("=")
            if sep and key.strip().isidentifier():
                out[key.strip()] = Argument.from_token(value)
        return out

    def items(self) -> List["Argument"]:
        """Members of a '[a, b, ...]' array."""
        if self.kind != ArgKind.ARRAY:
            return []
        from .strace_parser import scan_arguments

        inner = self.text.strip()[1:]
        if inner.endswith("]"):
            inner = inner[:-1]
        tokens, _ = scan_arguments(inner, stop_at_paren=False)
        return [Argument.from_token(t) for t in tokens]


@dataclass(frozen=True)
class Outcome:
    value: str = "?"
    errno: Optional[str] = None
    errno_code: Optional[int] = None
    message: str = field(default="", compare=False)

    @classmethod
    def failure(cls, value: str, name: str, message: str = "") -> "Outcome":
        code = getattr(_errno, name, None)
        return cls(value, name, code if isinstance(code, int) else None, message)

    @property
    def failed(self) -> bool:
        return self.errno is not None

    @property
    def known(self) -> bool:
        return self.value != "?" or self.errno is not None

    def as_int(self) -> Optional[int]:
        return Argument(self.value).as_int()

    def fd_annotation(self) -> Optional[str]:
        return Argument(self.value).fd_annotation()

    def __str__(self):
        if self.errno:
            return f"{self.value} {self.errno} ({self.message})" if self.message else f"{self.value} {self.errno}"
        return self.value


class Completion(Enum):
    COMPLETE = "complete"
    UNFINISHED = "unfinished"
    RESUMED = "resumed"


@dataclass
class Syscall:
    name: str
    args: Tuple[Argument, ...]
    outcome: Outcome
    pid: int
    tid: int
    unrecognized: bool = False
    completion: Completion = field(default=Completion.COMPLETE, compare=False)
    timestamp: str = field(default="", compare=False)
    duration: str = field(default="", compare=False)

    def __str__(self):
        args = ", ".join(a.text for a in self.args)
        return f"{self.name}({args}) = {self.outcome}"

    def arg(self, idx: int) -> Optional[Argument]:
        if 0 <= idx < len(self.args):
            return self.args[idx]
        return None

    def named_arg(self, key: str) -> Optional[Argument]:
        """Value of a 'key=value' argument, as printed for clone() on most architectures."""
        prefix = key + "="
        for a in self.args:
            if a.kind == ArgKind.RAW and a.text.startswith(prefix):
                return Argument.from_token(a.text[len(prefix):])
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "Syscall",
            "name": self.name,
            "args": [[a.text, a.kind.value] for a in self.args],
            "outcome": {
                "value": self.outcome.value,
                "errno": self.outcome.errno,
                "errno_code": self.outcome.errno_code,
                "message": self.outcome.message,
            },
            "pid": self.pid,
            "tid": self.tid,
            "unrecognized": self.unrecognized,
            "completion": self.completion.value,
            "timestamp": self.timestamp,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Syscall":
        out = d["outcome"]
        return cls(
            name=d["name"],
            args=tuple(Argument(text, ArgKind(kind)) for text, kind in d["args"]),
            outcome=Outcome(out["value"], out.get("errno"), out.get("errno_code"), out.get("message", "")),
            pid=d["pid"],
            tid=d["tid"],
            unrecognized=d.get("unrecognized", False),
            completion=Completion(d.get("completion", "complete")),
            timestamp=d.get("timestamp", ""),
            duration=d.get("duration", ""),
        )


class LifecycleKind(Enum):
    SPAWN = "spawn"
    EXIT = "exit"
    KILLED = "killed"
    EXEC_SUPERSEDED = "exec_superseded"
    PERSONALITY = "personality"


@dataclass
class Lifecycle:
    kind: LifecycleKind
    pid: int
    tid: int
    child: Optional[int] = None
    status: Optional[int] = None
    signal: Optional[str] = None
    thread: bool = False
    detail: str = ""
    timestamp: str = field(default="", compare=False)

    def __str__(self):
        if self.kind == LifecycleKind.SPAWN:
            return f"+++ {'thread' if self.thread else 'process'} {self.child} spawned +++"
        if self.kind == LifecycleKind.EXIT:
            return f"+++ exited with {self.status} +++"
        if self.kind == LifecycleKind.KILLED:
            return f"+++ killed by {self.signal} +++"
        return f"+++ {self.kind.value} {self.detail} +++".replace("  ", " ")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = "Lifecycle"
        d["lifecycle"] = self.kind.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Lifecycle":
        return cls(
            kind=LifecycleKind(d["lifecycle"]),
            pid=d["pid"],
            tid=d["tid"],
            child=d.get("child"),
            status=d.get("status"),
            signal=d.get("signal"),
            thread=d.get("thread", False),
            detail=d.get("detail", ""),
            timestamp=d.get("timestamp", ""),
        )


@dataclass
class Signal:
    name: str
    details: str
    pid: int
    tid: int
    timestamp: str = field(default="", compare=False)

    def __str__(self):
        return f"{self.name} {{{self.details}}}"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = "Signal"
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Signal":
        return cls(
            name=d["name"],
            details=d["details"],
            pid=d["pid"],
            tid=d["tid"],
            timestamp=d.get("timestamp", ""),
        )


Event = Union[Syscall, Lifecycle, Signal]
