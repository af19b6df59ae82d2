from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from ._types import (
    Argument,
    Completion,
    Event,
    Lifecycle,
    LifecycleKind,
    Outcome,
    Signal,
    Syscall,
)
from .syscalls import KNOWN_SYSCALLS, SPAWN_SYSCALLS

logger = logging.getLogger("strace_parser")

# Warning kinds
UNPARSABLE = "unparsable"
TRUNCATED_LINE = "truncated-line"
UNPAIRED_UNFINISHED = "unpaired-unfinished"
ORPHAN_RESUMED = "orphan-resumed"

# 'PID ', '[pid PID] ', then an optional -ttt / -t timestamp
_PREFIX_RE = re.compile(
    r"^(?:\[pid\s+(?P<bpid>\d+)\]\s+|(?P<pid>\d+)\s+)?"
    r"(?:(?P<ts>\d+\.\d+|\d{1,2}:\d{2}:\d{2}(?:\.\d+)?)\s+)?"
    r"(?P<body>.*)$"
)

# Signals and exits
_SIGNAL_RE = re.compile(r"^---\s+(?P<sig>\w+)\s+\{(?P<details>.*)\}\s+---$")
_STOPPED_RE = re.compile(r"^---\s+stopped by\s+(?P<sig>\w+)\s+---$")
_EXITED_RE = re.compile(r"^\+\+\+\s+exited with\s+(?P<code>-?\d+)\s+\+\+\+$")
_KILLED_RE = re.compile(r"^\+\+\+\s+killed by\s+(?P<sig>\w+)(?:\s+\((?P<extra>[^)]+)\))?\s+\+\+\+$")
_SUPERSEDED_RE = re.compile(r"^\+\+\+\s+superseded by execve in pid\s+(?P<pid>\d+)\s+\+\+\+$")
_PERSONALITY_RE = re.compile(r"^\[\s*Process PID=(?P<pid>\d+) runs in (?P<mode>.+?) mode\.\s*\]$")

# Calls
_HEAD_RE = re.compile(r"^(?P<name>[A-Za-z_]\w*)\((?P<rest>.*)$")
_RESUMED_RE = re.compile(r"^<\.\.\.\s+(?P<name>\w+)\s+resumed>\s?(?P<rest>.*)$")
_UNFINISHED_RE = re.compile(r"\s*<unfinished \.\.\.>\s*$")

_DURATION_RE = re.compile(r"\s+<(?P<dur>\d+(?:\.\d+)?)>\s*$")
_ERRNO_RE = re.compile(r"^\s+(?P<errno>E[A-Z0-9_]+)(?:\s+\((?P<message>.*)\))?")

# A '<' opens an fd annotation only right after a bare integer or AT_FDCWD:
# '3</etc/passwd>', 'AT_FDCWD</home/alice>'
_FD_BEFORE_ANGLE_RE = re.compile(r"(?:^|[\s=\[{(,])(?:-?\d+|AT_FDCWD)$")

# Noise we always ignore
_NOISE_RE = re.compile(r"^strace: ")

_CLOSERS = {"(": ")", "[": "]", "{": "}"}


def _skip_string(text: str, i: int) -> int:
    """Index just past the quoted string starting at text[i]."""
    j = i + 1
    n = len(text)
    while j < n:
        c = text[j]
        if c == "\\":
            j += 2
            continue
        if c == '"':
            return j + 1
        j += 1
    return n


def scan_arguments(text: str, stop_at_paren: bool = True) -> Tuple[List[str], Optional[int]]:
    """
    Split an argument list on top-level commas.

    Nesting is tracked over (), [], {}, fd annotations ('3</path>'), quoted
    strings with escapes and /* comments */. With stop_at_paren, scanning ends
    at the first unmatched ')', whose index is returned with the tokens; the
    index is None when the text ends first (truncated or unfinished line).
    """
    tokens: List[str] = []
    stack: List[str] = []
    start = 0
    i = 0
    n = len(text)

    def _push(end: int) -> None:
        tok = text[start:end].strip()
        if tok:
            tokens.append(tok)

    while i < n:
        c = text[i]
        if c == '"':
            i = _skip_string(text, i)
            continue
        if c == "/" and text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end < 0 else end + 2
            continue
        if c in _CLOSERS:
            stack.append(_CLOSERS[c])
        elif c == "<":
            if (stack and stack[-1] == ">") or _FD_BEFORE_ANGLE_RE.search(text[max(0, i - 32):i]):
                stack.append(">")
        elif stack and c == stack[-1]:
            stack.pop()
        elif c in ")]}" and c in stack:
            while stack and stack.pop() != c:
                pass
        elif c == ")" and stop_at_paren:
            _push(i)
            return tokens, i
        elif c == "," and not stack:
            _push(i)
            start = i + 1
        i += 1

    _push(n)
    return tokens, None


def _value_end(s: str) -> int:
    depth = 0
    for i, c in enumerate(s):
        if c in "<[":
            depth += 1
        elif c in ">]" and depth:
            depth -= 1
        elif c.isspace() and depth == 0:
            return i
    return len(s)


def parse_result(text: str) -> Tuple[Optional[Outcome], str]:
    """
    Decode the ' = value [ERRNO (message)] [<duration>]' tail of a call line.

    Returns (None, "") when there is no result at all.
    """
    s = text.strip()
    if not s.startswith("="):
        return None, ""
    s = s[1:].strip()
    duration = ""
    dm = _DURATION_RE.search(s)
    if dm:
        duration = dm.group("dur")
        s = s[:dm.start()]
    end = _value_end(s)
    value, rest = s[:end] or "?", s[end:]
    em = _ERRNO_RE.match(rest)
    if em:
        return Outcome.failure(value, em.group("errno"), em.group("message") or ""), duration
    return Outcome(value, message=rest.strip()), duration


def clone_flags(sc: Syscall) -> FrozenSet[str]:
    """CLONE_* flags of a clone/clone3/unshare call ('flags=' argument, clone3 struct or first flag-like arg)."""
    if sc.name == "clone3":
        first = sc.arg(0)
        flags = first.fields().get("flags") if first is not None else None
        return flags.as_flags() if flags is not None else frozenset()
    named = sc.named_arg("flags")
    if named is not None:
        return named.as_flags()
    for a in sc.args:
        flags = a.as_flags()
        if any(f.startswith("CLONE_") for f in flags):
            return flags
    return frozenset()


@dataclass
class ParseWarnings:
    """Per-kind counts of decoding problems, with a bounded sample of offending lines."""
    sample_size: int = 5
    counts: Dict[str, int] = field(default_factory=dict)
    samples: Dict[str, List[str]] = field(default_factory=dict)

    def record(self, kind: str, line: str) -> None:
        self.counts[kind] = self.counts.get(kind, 0) + 1
        bucket = self.samples.setdefault(kind, [])
        if len(bucket) < self.sample_size:
            bucket.append(line)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def merge(self, other: "ParseWarnings") -> None:
        for kind, count in other.counts.items():
            self.counts[kind] = self.counts.get(kind, 0) + count
            bucket = self.samples.setdefault(kind, [])
            for line in other.samples.get(kind, []):
                if len(bucket) < self.sample_size:
                    bucket.append(line)

    def to_dict(self) -> Dict[str, object]:
        return {
            "counts": dict(sorted(self.counts.items())),
            "samples": {k: list(v) for k, v in sorted(self.samples.items())},
        }


@dataclass
class _Pending:
    name: str
    tokens: List[str]
    timestamp: str
    line: str


class StraceParser:
    """
    Parse `strace -f` output into Syscall / Lifecycle / Signal events.

    Handles:
      - '[pid N]' and 'N ' prefixes, -ttt and -t timestamps, -T durations;
      - '<unfinished ...>' heads stitched with '<... NAME resumed>' tails of
        the same thread (one pending call per thread);
      - truncated heads (no closing ')'), orphan resumed tails;
      - exit / kill / exec-superseded notices and 32-bit personality switches;
      - thread ids mapped to their process through CLONE_THREAD spawns.

    `parse` is a generator and starts from a clean pairing state each time.
    """

    def __init__(
            self,
            known_syscalls: Optional[Iterable[str]] = None,
            default_pid: int = 0,
            warning_samples: int = 5,
    ):
        self.known_syscalls = KNOWN_SYSCALLS if known_syscalls is None else frozenset(known_syscalls)
        self.default_pid = default_pid
        self.warning_samples = warning_samples
        self.warnings = ParseWarnings(warning_samples)
        self._pending: Dict[int, _Pending] = {}
        self._tgid: Dict[int, int] = {}

    def reset(self) -> None:
        self.warnings = ParseWarnings(self.warning_samples)
        self._pending = {}
        self._tgid = {}

    def parse(self, lines: Iterable[str]) -> Iterator[Event]:
        self.reset()
        for raw in lines:
            line = raw.rstrip("\r\n")
            if not line.strip():
                continue
            yield from self._parse_line(line)
        self._flush()

    # ----------------------------
    # Line dispatch
    # ----------------------------

    def _parse_line(self, line: str) -> List[Event]:
        if _NOISE_RE.match(line):
            return []

        m = _PREFIX_RE.match(line)
        tid = int(m.group("bpid") or m.group("pid") or self.default_pid)
        ts = m.group("ts") or ""
        body = m.group("body").strip()
        pid = self._tgid.get(tid, tid)

        if body.startswith("---"):
            sm = _SIGNAL_RE.match(body)
            if sm:
                return [Signal(sm.group("sig"), sm.group("details"), pid, tid, ts)]
            sm = _STOPPED_RE.match(body)
            if sm:
                return [Signal(sm.group("sig"), "stopped", pid, tid, ts)]
        elif body.startswith("+++"):
            events = self._parse_notice(body, line, pid, tid, ts)
            if events is not None:
                return events
        elif body.startswith("[ Process") or body.startswith("[Process"):
            pm = _PERSONALITY_RE.match(body)
            if pm:
                ptid = int(pm.group("pid"))
                return [Lifecycle(LifecycleKind.PERSONALITY, self._tgid.get(ptid, ptid), ptid,
                                  detail=pm.group("mode"), timestamp=ts)]
        elif body.startswith("<..."):
            rm = _RESUMED_RE.match(body)
            if rm:
                return self._resume(rm.group("name"), rm.group("rest"), line, pid, tid, ts)
        else:
            hm = _HEAD_RE.match(body)
            if hm:
                return self._head(hm.group("name"), hm.group("rest"), line, pid, tid, ts)

        self._warn(UNPARSABLE, line)
        return []

    def _parse_notice(self, body: str, line: str, pid: int, tid: int, ts: str) -> Optional[List[Event]]:
        m = _EXITED_RE.match(body)
        if m:
            self._drop_pending(tid)
            return [Lifecycle(LifecycleKind.EXIT, pid, tid, status=int(m.group("code")), timestamp=ts)]

        m = _KILLED_RE.match(body)
        if m:
            self._drop_pending(tid)
            return [Lifecycle(LifecycleKind.KILLED, pid, tid, signal=m.group("sig"),
                              detail=m.group("extra") or "", timestamp=ts)]

        m = _SUPERSEDED_RE.match(body)
        if m:
            # The exec'ing thread takes over the leader's id; its pending execve follows it.
            exec_tid = int(m.group("pid"))
            moved = self._pending.pop(exec_tid, None)
            if moved is not None:
                self._drop_pending(tid)
                self._pending[tid] = moved
            return [Lifecycle(LifecycleKind.EXEC_SUPERSEDED, pid, tid, child=exec_tid, timestamp=ts)]
        return None

    # ----------------------------
    # Calls
    # ----------------------------

    def _head(self, name: str, rest: str, line: str, pid: int, tid: int, ts: str) -> List[Event]:
        um = _UNFINISHED_RE.search(rest)
        if um:
            tokens, _ = scan_arguments(rest[:um.start()])
            if tid in self._pending:
                self._drop_pending(tid)
            self._pending[tid] = _Pending(name, tokens, ts, line)
            return []

        tokens, end = scan_arguments(rest)
        if end is None:
            self._warn(TRUNCATED_LINE, line)
            return self._emit(name, self._truncate(tokens), Outcome(), "", pid, tid, ts, Completion.COMPLETE)
        return self._complete(name, tokens, rest[end + 1:], line, pid, tid, ts, Completion.COMPLETE)

    def _resume(self, name: str, rest: str, line: str, pid: int, tid: int, ts: str) -> List[Event]:
        pending = self._pending.pop(tid, None)
        if pending is not None and pending.name != name:
            self._warn(UNPAIRED_UNFINISHED, pending.line)
            logger.warning("coverage gap: %s on tid %d resumed as %s", pending.name, tid, name)
            pending = None

        um = _UNFINISHED_RE.search(rest)
        if um:
            # resumed, then interrupted again before returning
            tokens, _ = scan_arguments(rest[:um.start()])
            if pending is None:
                self._pending[tid] = _Pending(name, tokens, ts, line)
            else:
                self._pending[tid] = _Pending(name, pending.tokens + tokens, pending.timestamp, pending.line)
            return []

        if pending is None:
            self._warn(ORPHAN_RESUMED, line)
            head, start_ts = [], ts
        else:
            head, start_ts = pending.tokens, pending.timestamp

        tokens, end = scan_arguments(rest)
        if end is None:
            self._warn(TRUNCATED_LINE, line)
            return self._emit(name, self._truncate(head + tokens), Outcome(), "", pid, tid, start_ts,
                              Completion.RESUMED)
        return self._complete(name, head + tokens, rest[end + 1:], line, pid, tid, start_ts, Completion.RESUMED)

    def _complete(
            self,
            name: str,
            tokens: List[str],
            result: str,
            line: str,
            pid: int,
            tid: int,
            ts: str,
            completion: Completion,
    ) -> List[Event]:
        outcome, duration = parse_result(result)
        if outcome is None:
            self._warn(TRUNCATED_LINE, line)
            outcome = Outcome()
        return self._emit(name, tokens, outcome, duration, pid, tid, ts, completion)

    def _emit(
            self,
            name: str,
            tokens: List[str],
            outcome: Outcome,
            duration: str,
            pid: int,
            tid: int,
            ts: str,
            completion: Completion,
    ) -> List[Event]:
        sc = Syscall(
            name=name,
            args=tuple(Argument.from_token(t) for t in tokens),
            outcome=outcome,
            pid=pid,
            tid=tid,
            unrecognized=name not in self.known_syscalls,
            completion=completion,
            timestamp=ts,
            duration=duration,
        )
        events: List[Event] = [sc]
        if name in SPAWN_SYSCALLS and not outcome.failed:
            child = outcome.as_int()
            if child is not None and child > 0:
                thread = "CLONE_THREAD" in clone_flags(sc)
                self._tgid[child] = pid if thread else child
                events.append(Lifecycle(LifecycleKind.SPAWN, pid, tid, child=child, thread=thread, timestamp=ts))
        return events

    # ----------------------------
    # Helpers
    # ----------------------------

    @staticmethod
    def _truncate(tokens: List[str]) -> List[str]:
        if tokens and tokens[-1] == "...":
            return tokens
        return tokens + ["..."]

    def _drop_pending(self, tid: int) -> None:
        pending = self._pending.pop(tid, None)
        if pending is None:
            return
        self._warn(UNPAIRED_UNFINISHED, pending.line)
        logger.warning("coverage gap: unfinished %s on tid %d was never resumed", pending.name, tid)

    def _flush(self) -> None:
        for tid in sorted(self._pending):
            self._drop_pending(tid)
        if self.warnings.total:
            logger.warning(
                "%d trace line(s) could not be decoded cleanly: %s",
                self.warnings.total,
                ", ".join(f"{k}={v}" for k, v in sorted(self.warnings.counts.items())),
            )

    def _warn(self, kind: str, line: str) -> None:
        self.warnings.record(kind, line)
        logger.debug("%s: %s", kind, line)


def parse_strace(f: Iterable[str], **kwargs) -> List[Event]:
    """Parse a whole trace (file object or list of lines) eagerly."""
    return list(StraceParser(**kwargs).parse(f))
