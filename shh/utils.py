from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import orjson

from ._types import Event, Lifecycle, Signal, Syscall
from .profile import PROFILE_VERSION, BehavioralProfile, merge_profiles
from .strace_parser import ParseWarnings
from .synthesizer import DirectiveSet

logger = logging.getLogger("utils")

_PRETTY = orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE | orjson.OPT_SORT_KEYS


def _write(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)


def _read(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class TraceSerializer:
    @staticmethod
    def dumps(items: Iterable[Event], *, indent: bool = False) -> bytes:
        """
        Serialize trace events to JSON bytes.
        Set indent=True for pretty-printing (adds newlines and spaces).
        """
        payload = [obj.to_dict() for obj in items]
        return orjson.dumps(payload, option=_PRETTY if indent else 0)

    @staticmethod
    def dump(items: Iterable[Event], path: str, *, indent: bool = True) -> None:
        _write(path, TraceSerializer.dumps(items, indent=indent))

    @staticmethod
    def loads(data: bytes) -> List[Event]:
        arr = orjson.loads(data)
        if not isinstance(arr, list):
            raise ValueError("Trace JSON must be a list of events")
        return [TraceSerializer._from_tagged(d) for d in arr]

    @staticmethod
    def load(path: str) -> List[Event]:
        return TraceSerializer.loads(_read(path))

    @staticmethod
    def _from_tagged(d: Dict[str, Any]) -> Event:
        kind = d.get("kind")
        if kind == "Syscall":
            return Syscall.from_dict(d)
        if kind == "Lifecycle":
            return Lifecycle.from_dict(d)
        if kind == "Signal":
            return Signal.from_dict(d)
        raise ValueError(f"Unknown kind: {kind!r}")


class ProfileSerializer:
    """Profiles on disk: `{"version": 1, "profile": {...}}`."""

    @staticmethod
    def dumps(profile: BehavioralProfile, *, indent: bool = True) -> bytes:
        payload = {"version": PROFILE_VERSION, "profile": profile.to_dict()}
        return orjson.dumps(payload, option=_PRETTY if indent else 0)

    @staticmethod
    def dump(profile: BehavioralProfile, path: str, *, indent: bool = True) -> None:
        _write(path, ProfileSerializer.dumps(profile, indent=indent))
        logger.info("Profile data written to %s", path)

    @staticmethod
    def loads(data: bytes) -> BehavioralProfile:
        try:
            doc = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid profile JSON: {e}") from e
        if not isinstance(doc, dict) or "profile" not in doc:
            raise ValueError("Profile JSON has no 'profile' section")
        version = doc.get("version")
        if version != PROFILE_VERSION:
            raise ValueError(f"Unsupported profile version {version!r} (expected {PROFILE_VERSION})")
        return BehavioralProfile.from_dict(doc["profile"])

    @staticmethod
    def load(path: str) -> BehavioralProfile:
        return ProfileSerializer.loads(_read(path))

    @staticmethod
    def load_and_merge(paths: Iterable[str]) -> BehavioralProfile:
        """Load several profile files and widen them into one."""
        profiles = []
        for path in paths:
            logger.info("Loading profile data: %s", path)
            profiles.append(ProfileSerializer.load(path))
        return merge_profiles(profiles)


def build_report(
        directive_set: DirectiveSet,
        profile: Optional[BehavioralProfile] = None,
        warnings: Optional[ParseWarnings] = None,
) -> Dict[str, Any]:
    report: Dict[str, Any] = {"directives": directive_set.to_dict(), "options": [
        [key, value] for key, value in directive_set.options()
    ]}
    if profile is not None:
        report["profile"] = profile.to_dict()
    if warnings is not None:
        report["parse_warnings"] = warnings.to_dict()
    return report


def dump_report(report: Dict[str, Any], path: str) -> None:
    _write(path, orjson.dumps(report, option=_PRETTY))
    logger.info("Report written to %s", path)
