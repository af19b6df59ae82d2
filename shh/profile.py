from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntFlag
from functools import reduce
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

PROFILE_VERSION = 1


class Access(IntFlag):
    """Observed access to a path. Merging ORs the flags, so the join is the strongest mode."""
    NONE = 0
    READ = 1
    EXEC = 2
    WRITE = 4
    CREATE = 8

    @property
    def labels(self) -> List[str]:
        return [a.name.lower() for a in (Access.READ, Access.EXEC, Access.WRITE, Access.CREATE) if self & a]

    @property
    def writes(self) -> bool:
        return bool(self & (Access.WRITE | Access.CREATE))

    @classmethod
    def from_labels(cls, labels: Iterable[str]) -> "Access":
        out = cls.NONE
        for label in labels:
            out |= cls[label.upper()]
        return out


@dataclass(frozen=True, order=True)
class SocketSpec:
    family: str
    type: str = ""
    protocol: str = ""

    def to_list(self) -> List[str]:
        return [self.family, self.type, self.protocol]


@dataclass(frozen=True, order=True)
class BindSpec:
    family: str
    protocol: str
    port: int

    def to_list(self) -> List[Any]:
        return [self.family, self.protocol, self.port]


RAW_FAMILIES = frozenset({"AF_PACKET"})


def _frozen_paths(paths: Mapping[str, Access]) -> Mapping[str, Access]:
    return MappingProxyType({p: Access(paths[p]) for p in sorted(paths)})


@dataclass(frozen=True)
class BehavioralProfile:
    """
    Everything a service was seen doing across one or more profiling runs.

    Immutable; `merge` only ever widens. Paths are absolute, or path classes
    such as /proc/self/... and /proc/[pid]/...
    """
    syscalls: FrozenSet[str] = frozenset()
    unknown_syscalls: FrozenSet[str] = frozenset()
    paths: Mapping[str, Access] = field(default_factory=dict)
    sockets: FrozenSet[SocketSpec] = frozenset()
    bind_ports: FrozenSet[BindSpec] = frozenset()
    capabilities: FrozenSet[str] = frozenset()
    namespaces: FrozenSet[str] = frozenset()
    flags: FrozenSet[str] = frozenset()

    def __post_init__(self):
        for name in ("syscalls", "unknown_syscalls", "sockets", "bind_ports", "capabilities", "namespaces", "flags"):
            object.__setattr__(self, name, frozenset(getattr(self, name)))
        object.__setattr__(self, "paths", _frozen_paths(self.paths))

    # ----------------------------
    # Derived views
    # ----------------------------

    @property
    def families(self) -> FrozenSet[str]:
        return frozenset(s.family for s in self.sockets)

    @property
    def raw_sockets(self) -> bool:
        return any(s.family in RAW_FAMILIES or (s.type == "SOCK_RAW" and s.family in ("AF_INET", "AF_INET6"))
                   for s in self.sockets)

    @property
    def required_syscalls(self) -> FrozenSet[str]:
        return self.syscalls | self.unknown_syscalls

    def access(self, path: str) -> Access:
        return self.paths.get(path, Access.NONE)

    def paths_under(self, root: str, include_root: bool = True) -> Dict[str, Access]:
        root = root.rstrip("/") or "/"
        prefix = "/" if root == "/" else root + "/"
        return {
            p: a for p, a in self.paths.items()
            if (include_root and p == root) or p.startswith(prefix)
        }

    def written_paths(self) -> Dict[str, Access]:
        return {p: a for p, a in self.paths.items() if a.writes}

    def is_empty(self) -> bool:
        return not (self.syscalls or self.unknown_syscalls or self.paths or self.sockets or self.bind_ports
                    or self.capabilities or self.namespaces or self.flags)

    # ----------------------------
    # Merge
    # ----------------------------

    def merge(self, other: "BehavioralProfile") -> "BehavioralProfile":
        paths: Dict[str, Access] = dict(self.paths)
        for p, a in other.paths.items():
            paths[p] = paths.get(p, Access.NONE) | a
        return BehavioralProfile(
            syscalls=self.syscalls | other.syscalls,
            unknown_syscalls=self.unknown_syscalls | other.unknown_syscalls,
            paths=paths,
            sockets=self.sockets | other.sockets,
            bind_ports=self.bind_ports | other.bind_ports,
            capabilities=self.capabilities | other.capabilities,
            namespaces=self.namespaces | other.namespaces,
            flags=self.flags | other.flags,
        )

    # ----------------------------
    # Persistence
    # ----------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "syscalls": sorted(self.syscalls),
            "unknown_syscalls": sorted(self.unknown_syscalls),
            "paths": {p: a.labels for p, a in self.paths.items()},
            "sockets": [s.to_list() for s in sorted(self.sockets)],
            "bind_ports": [b.to_list() for b in sorted(self.bind_ports)],
            "capabilities": sorted(self.capabilities),
            "namespaces": sorted(self.namespaces),
            "flags": sorted(self.flags),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BehavioralProfile":
        try:
            return cls(
                syscalls=d.get("syscalls", ()),
                unknown_syscalls=d.get("unknown_syscalls", ()),
                paths={p: Access.from_labels(labels) for p, labels in d.get("paths", {}).items()},
                sockets=(SocketSpec(*s) for s in d.get("sockets", ())),
                bind_ports=(BindSpec(f, proto, int(port)) for f, proto, port in d.get("bind_ports", ())),
                capabilities=d.get("capabilities", ()),
                namespaces=d.get("namespaces", ()),
                flags=d.get("flags", ()),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed profile data: {e}") from e


def merge_profiles(profiles: Iterable[BehavioralProfile]) -> BehavioralProfile:
    return reduce(BehavioralProfile.merge, profiles, BehavioralProfile())


class ProfileBuilder:
    """Mutable accumulator used while folding one run; `freeze()` yields the profile."""

    def __init__(self):
        self.syscalls: Set[str] = set()
        self.unknown_syscalls: Set[str] = set()
        self.paths: Dict[str, Access] = {}
        self.sockets: Set[SocketSpec] = set()
        self.bind_ports: Set[BindSpec] = set()
        self.capabilities: Set[str] = set()
        self.namespaces: Set[str] = set()
        self.flags: Set[str] = set()

    def add_path(self, path: Optional[str], access: Access) -> None:
        if not path or not access:
            return
        self.paths[path] = self.paths.get(path, Access.NONE) | access

    def add_socket(self, family: str, type_: str = "", protocol: str = "") -> None:
        if family:
            self.sockets.add(SocketSpec(family, type_, protocol))

    def freeze(self) -> BehavioralProfile:
        return BehavioralProfile(
            syscalls=self.syscalls,
            unknown_syscalls=self.unknown_syscalls,
            paths=self.paths,
            sockets=self.sockets,
            bind_ports=self.bind_ports,
            capabilities=self.capabilities,
            namespaces=self.namespaces,
            flags=self.flags,
        )
