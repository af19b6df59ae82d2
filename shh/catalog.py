from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from ._types import Syscall
from .config import HardeningOptions
from .profile import Access, BehavioralProfile
from .syscalls import BASE_SYSCALLS, SYSCALL_GROUPS, is_nameable

logger = logging.getLogger("catalog")

Chosen = Mapping[str, str]
SafePredicate = Callable[[BehavioralProfile, Chosen], bool]
LevelRenderer = Callable[[BehavioralProfile, Chosen], List[Tuple[str, str]]]


@dataclass(frozen=True)
class Level:
    name: str
    effect: str
    safe: Optional[SafePredicate] = None
    render: Optional[LevelRenderer] = None


@dataclass(frozen=True)
class Directive:
    """
    A hardening directive and its levels, most permissive first.

    The first level is what systemd does when the directive is absent, so it
    is always safe and never rendered.
    """
    name: str
    description: str
    levels: Tuple[Level, ...]
    depends_on: Tuple[str, ...] = ()
    conflicts_with: Tuple[str, ...] = ()
    syscall_groups: Tuple[Tuple[str, FrozenSet[str]], ...] = ()
    required_syscalls: FrozenSet[str] = frozenset()
    companions: Tuple[Tuple[str, str], ...] = ()
    aggressive: bool = False

    def __post_init__(self):
        if not self.levels:
            raise ValueError(f"Directive {self.name} has no levels")

    @property
    def default(self) -> str:
        return self.levels[0].name

    @property
    def is_filter(self) -> bool:
        return bool(self.syscall_groups)

    def level(self, name: str) -> Optional[Level]:
        for lv in self.levels:
            if lv.name == name:
                return lv
        return None


class Catalog:
    """Ordered collection of directives plus the matching API the synthesizer uses."""

    def __init__(self, directives: Iterable[Directive]):
        self._directives: Dict[str, Directive] = {}
        for d in directives:
            if d.name in self._directives:
                raise ValueError(f"Duplicate directive: {d.name}")
            self._directives[d.name] = d

        # conflicts are symmetric
        conflicts: Dict[str, Set[str]] = {name: set() for name in self._directives}
        for d in self._directives.values():
            for other in d.conflicts_with:
                if other in self._directives and other != d.name:
                    conflicts[d.name].add(other)
                    conflicts[other].add(d.name)
        self._conflicts = {name: frozenset(v) for name, v in conflicts.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._directives

    def __iter__(self) -> Iterator[Directive]:
        return iter(self._directives.values())

    def __len__(self) -> int:
        return len(self._directives)

    def names(self) -> List[str]:
        return list(self._directives)

    def get(self, name: str) -> Optional[Directive]:
        return self._directives.get(name)

    def levels_of(self, name: str) -> List[str]:
        d = self.get(name)
        return [lv.name for lv in d.levels] if d else []

    def default_of(self, name: str) -> Optional[str]:
        d = self.get(name)
        return d.default if d else None

    def conflicts_of(self, name: str) -> FrozenSet[str]:
        return self._conflicts.get(name, frozenset())

    def groups_of(self, name: str) -> Dict[str, FrozenSet[str]]:
        d = self.get(name)
        return dict(d.syscall_groups) if d else {}

    def predicate(self, name: str, level: str, profile: BehavioralProfile, chosen: Chosen) -> bool:
        d = self.get(name)
        if d is None:
            return False
        lv = d.level(level)
        if lv is None:
            return False
        if level == d.default:
            return True
        for other in self._conflicts[name]:
            od = self._directives[other]
            if chosen.get(other, od.default) != od.default:
                return False
        if lv.safe is None:
            return True
        return bool(lv.safe(profile, chosen))

    def render(
            self,
            name: str,
            level: str,
            profile: BehavioralProfile,
            chosen: Chosen,
            value: Optional[str] = None,
    ) -> List[Tuple[str, str]]:
        """
        Key/value lines for a directive at a level (nothing for the default level).

        Filter directives get their value (the syscall cover) from the caller.
        """
        d = self.get(name)
        if d is None or level == d.default:
            return []
        lv = d.level(level)
        if lv is None:
            return []
        if value is not None:
            lines = [(d.name, value)]
        elif lv.render is not None:
            lines = list(lv.render(profile, chosen))
        else:
            lines = [(d.name, level)]
        return lines + list(d.companions)

    def listing(self) -> List[Dict[str, object]]:
        return [
            {
                "name": d.name,
                "description": d.description,
                "aggressive": d.aggressive,
                "levels": [{"name": lv.name, "effect": lv.effect} for lv in d.levels],
            }
            for d in self._directives.values()
        ]

    def subset(self, names: Iterable[str]) -> "Catalog":
        wanted = set(names)
        return Catalog(d for d in self._directives.values() if d.name in wanted)

    def without(self, names: Iterable[str]) -> "Catalog":
        unwanted = set(names)
        return Catalog(d for d in self._directives.values() if d.name not in unwanted)


# ----------------------------
# Filesystem helpers
# ----------------------------

API_TREES = ("/dev", "/proc", "/sys")
HOME_TREES = ("/home", "/root", "/run/user")
TMP_TREES = ("/tmp", "/var/tmp")
SYSTEM_TREES = {
    "true": ("/usr", "/boot", "/efi"),
    "full": ("/usr", "/boot", "/efi", "/etc"),
    "strict": ("/",),
}
# Top-level directories that may themselves be a writable exception
EXCEPTION_TOP_LEVEL = frozenset({"/tmp", "/run", "/srv", "/opt", "/mnt", "/media"})

PSEUDO_DEVICES = frozenset({
    "/dev/null", "/dev/zero", "/dev/full", "/dev/random", "/dev/urandom", "/dev/tty", "/dev/ptmx",
    "/dev/stdin", "/dev/stdout", "/dev/stderr",
})
PSEUDO_DEVICE_TREES = ("/dev/pts", "/dev/shm", "/dev/mqueue", "/dev/hugepages", "/dev/fd")

KERNEL_TUNABLE_TREES = (
    "/proc/sys", "/sys", "/proc/sysrq-trigger", "/proc/latency_stats", "/proc/acpi", "/proc/timer_stats",
    "/proc/fs", "/proc/irq", "/proc/bus",
)
CGROUP_TREE = "/sys/fs/cgroup"
MODULE_TREES = ("/lib/modules", "/usr/lib/modules")
KERNEL_LOG_PATHS = ("/dev/kmsg", "/proc/kmsg")


def is_under(path: str, root: str) -> bool:
    if root == "/":
        return path.startswith("/")
    return path == root or path.startswith(root + "/")


def exception_root(path: str, access: Access) -> str:
    """Directory that must stay writable: the parent for creations, the path itself otherwise."""
    if access & Access.CREATE:
        return posixpath.dirname(path) or "/"
    return path


def exception_allowed(root: str, options: HardeningOptions) -> bool:
    if not options.filesystem_exceptions or not root.startswith("/"):
        return False
    return root.count("/") >= 2 or root in EXCEPTION_TOP_LEVEL


def collapse_exceptions(roots: Iterable[str], threshold: int, options: HardeningOptions) -> List[str]:
    """Drop nested exceptions and fold `threshold` or more siblings into their parent."""
    current = set(roots)
    while True:
        kept = {r for r in current if not any(o != r and is_under(r, o) for o in current)}
        if threshold > 0:
            by_parent: Dict[str, Set[str]] = {}
            for r in kept:
                by_parent.setdefault(posixpath.dirname(r), set()).add(r)
            for parent, children in sorted(by_parent.items()):
                if len(children) >= threshold and exception_allowed(parent, options):
                    kept -= children
                    kept.add(parent)
        if kept == current:
            return sorted(kept)
        current = kept


def writable_exceptions(
        profile: BehavioralProfile,
        trees: Sequence[str],
        carve_outs: Sequence[str],
        options: HardeningOptions,
) -> List[str]:
    roots = set()
    for path, access in profile.paths.items():
        if not access.writes:
            continue
        if not any(is_under(path, t) for t in trees):
            continue
        if any(is_under(path, c) for c in carve_outs):
            continue
        roots.add(exception_root(path, access))
    return collapse_exceptions(roots, options.merge_paths_threshold, options)


def _level(chosen: Chosen, name: str, default: str) -> str:
    return chosen.get(name, default)


def _touches(profile: BehavioralProfile, roots: Iterable[str], include_root: bool = True) -> bool:
    return any(profile.paths_under(r, include_root) for r in roots)


def _writes_under(profile: BehavioralProfile, roots: Iterable[str], exclude: Iterable[str] = ()) -> bool:
    exclude = tuple(exclude)
    for path, access in profile.paths.items():
        if not access.writes:
            continue
        if any(is_under(path, r) for r in roots) and not any(is_under(path, e) for e in exclude):
            return True
    return False


def _flag_free(flag: str) -> SafePredicate:
    return lambda profile, chosen: flag not in profile.flags


# ----------------------------
# Filesystem directives
# ----------------------------

def _protect_system_exceptions(level: str, profile: BehavioralProfile, chosen: Chosen,
                               options: HardeningOptions) -> List[str]:
    carve = list(API_TREES)
    if _level(chosen, "PrivateTmp", "false") == "true":
        carve.extend(TMP_TREES)
    if _level(chosen, "ProtectHome", "false") != "false":
        carve.extend(HOME_TREES)
    return writable_exceptions(profile, SYSTEM_TREES[level], carve, options)


def _protect_system_level(level: str, effect: str, options: HardeningOptions) -> Level:
    def safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
        if "unresolved-write" in profile.flags:
            return False
        return all(exception_allowed(r, options)
                   for r in _protect_system_exceptions(level, profile, chosen, options))

    def render(profile: BehavioralProfile, chosen: Chosen) -> List[Tuple[str, str]]:
        lines = [("ProtectSystem", level)]
        lines.extend(("ReadWritePaths", f"-{r}")
                     for r in _protect_system_exceptions(level, profile, chosen, options))
        return lines

    return Level(level, effect, safe, render)


def _protect_system(options: HardeningOptions) -> Directive:
    return Directive(
        name="ProtectSystem",
        description="Mount system directories read-only for the service.",
        levels=(
            Level("false", "no protection"),
            _protect_system_level("true", "/usr, /boot and /efi read-only", options),
            _protect_system_level("full", "/usr, /boot, /efi and /etc read-only", options),
            _protect_system_level("strict", "the whole filesystem read-only except API trees and "
                                            "explicit ReadWritePaths= exceptions", options),
        ),
        depends_on=("PrivateTmp", "ProtectHome"),
    )


def _protect_home(options: HardeningOptions) -> Directive:
    def _exceptions(profile: BehavioralProfile) -> List[str]:
        return writable_exceptions(profile, HOME_TREES, (), options)

    def read_only_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
        if "unresolved-write" in profile.flags:
            return False
        return all(exception_allowed(r, options) for r in _exceptions(profile))

    def read_only_render(profile: BehavioralProfile, chosen: Chosen) -> List[Tuple[str, str]]:
        return [("ProtectHome", "read-only")] + [("ReadWritePaths", f"-{r}") for r in _exceptions(profile)]

    return Directive(
        name="ProtectHome",
        description="Restrict access to /home, /root and /run/user.",
        levels=(
            Level("false", "no protection"),
            Level("read-only", "home directories read-only", read_only_safe, read_only_render),
            Level("tmpfs", "empty writable tmpfs over home directories",
                  lambda p, c: "unresolved-path" not in p.flags and not _touches(p, HOME_TREES, include_root=False)),
            Level("true", "home directories inaccessible",
                  lambda p, c: "unresolved-path" not in p.flags and not _touches(p, HOME_TREES)),
        ),
    )


def _private_tmp_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    for tree in TMP_TREES:
        below = profile.paths_under(tree, include_root=False)
        for path in below:
            node = path
            created = False
            while node != tree:
                if profile.access(node) & Access.CREATE:
                    created = True
                    break
                node = posixpath.dirname(node)
            if not created:
                return False
    return True


def _private_devices_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    for path in profile.paths_under("/dev", include_root=False):
        if path in PSEUDO_DEVICES or any(is_under(path, t) for t in PSEUDO_DEVICE_TREES):
            continue
        return False
    if profile.capabilities & {"CAP_MKNOD", "CAP_SYS_RAWIO"}:
        return False
    return not (profile.syscalls & _GROUPS["@raw-io"])


def _private_network_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    if "abstract-unix" in profile.flags:
        return False
    return all(s.family in ("AF_UNIX", "AF_LOCAL") for s in profile.sockets)


MOUNT_SYSCALLS = frozenset({
    "mount", "umount", "umount2", "pivot_root", "move_mount", "open_tree", "fsopen", "fsmount", "fspick",
    "fsconfig", "mount_setattr",
})
MODULE_SYSCALLS = frozenset({"init_module", "finit_module", "delete_module"})
HOSTNAME_SYSCALLS = frozenset({"sethostname", "setdomainname"})

_GROUPS: Dict[str, FrozenSet[str]] = dict(SYSCALL_GROUPS)


def _kernel_tunables_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    # /proc/kcore is masked along with the tunables
    if "kernel-memory" in profile.flags:
        return False
    return not _writes_under(profile, KERNEL_TUNABLE_TREES, exclude=(CGROUP_TREE,))


def _kernel_modules_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    if profile.syscalls & MODULE_SYSCALLS or "CAP_SYS_MODULE" in profile.capabilities:
        return False
    return not _touches(profile, MODULE_TREES)


def _kernel_logs_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    if "syslog" in profile.syscalls or "CAP_SYSLOG" in profile.capabilities:
        return False
    return not _touches(profile, KERNEL_LOG_PATHS)


def _clock_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    if profile.syscalls & _GROUPS["@clock"]:
        return False
    if profile.capabilities & {"CAP_SYS_TIME", "CAP_WAKE_ALARM"}:
        return False
    return not any(p.startswith("/dev/rtc") for p in profile.paths)


# ----------------------------
# Network, namespaces, capabilities
# ----------------------------

_FAMILY_RE = re.compile(r"^AF_[A-Z0-9_]+$")
NAMEABLE_NAMESPACES = frozenset({"cgroup", "ipc", "net", "mnt", "pid", "user", "uts"})
BIND_PAIRS = (("AF_INET", "tcp", "ipv4:tcp"), ("AF_INET", "udp", "ipv4:udp"),
              ("AF_INET6", "tcp", "ipv6:tcp"), ("AF_INET6", "udp", "ipv6:udp"))


def _families_render(profile: BehavioralProfile, chosen: Chosen) -> List[Tuple[str, str]]:
    return [("RestrictAddressFamilies", " ".join(sorted(profile.families)))]


def _bound(profile: BehavioralProfile, family: str, protocol: str) -> bool:
    return any(b.family == family and b.protocol in (protocol, "any") for b in profile.bind_ports)


def _socket_bind_render(profile: BehavioralProfile, chosen: Chosen) -> List[Tuple[str, str]]:
    return [("SocketBindDeny", label) for family, proto, label in BIND_PAIRS if not _bound(profile, family, proto)]


def _namespaces_render(profile: BehavioralProfile, chosen: Chosen) -> List[Tuple[str, str]]:
    return [("RestrictNamespaces", " ".join(sorted(profile.namespaces)))]


def _unused_capabilities(profile: BehavioralProfile) -> List[str]:
    return sorted(DENYABLE_CAPABILITIES - profile.capabilities)


def _capabilities_render(profile: BehavioralProfile, chosen: Chosen) -> List[Tuple[str, str]]:
    return [("CapabilityBoundingSet", "~" + " ".join(_unused_capabilities(profile)))]


def _filter_safe(profile: BehavioralProfile, chosen: Chosen) -> bool:
    return all(is_nameable(s) for s in profile.required_syscalls)


def _simple(name: str, description: str, effect: str, safe: SafePredicate, **kwargs) -> Directive:
    return Directive(
        name=name,
        description=description,
        levels=(Level("false", "not enforced"), Level("true", effect, safe)),
        **kwargs,
    )


def default_catalog(options: Optional[HardeningOptions] = None) -> Catalog:
    """Every directive shh knows, for the given mode and options."""
    options = options or HardeningOptions()
    companions: Tuple[Tuple[str, str], ...] = ()
    if options.syscall_error_number:
        companions = (("SystemCallErrorNumber", options.syscall_error_number),)

    directives = [
        _protect_system(options),
        _protect_home(options),
        _simple("PrivateTmp", "Private /tmp and /var/tmp.", "private temporary directories",
                _private_tmp_safe),
        _simple("PrivateDevices", "Minimal private /dev.", "only pseudo devices in /dev",
                _private_devices_safe),
        _simple("PrivateNetwork", "Private network namespace with loopback only.", "no network access",
                _private_network_safe),
        _simple("PrivateMounts", "Private mount namespace.", "mounts not propagated",
                lambda p, c: not (p.syscalls & MOUNT_SYSCALLS)),
        _simple("ProtectKernelTunables", "Read-only /proc/sys, /sys and other tunables.",
                "kernel tunables read-only", _kernel_tunables_safe),
        _simple("ProtectKernelModules", "Deny module loading and module tree access.",
                "kernel modules inaccessible", _kernel_modules_safe),
        _simple("ProtectKernelLogs", "Deny access to the kernel log ring buffer.",
                "kernel logs inaccessible", _kernel_logs_safe),
        _simple("ProtectControlGroups", "Read-only cgroup hierarchy.", "cgroupfs read-only",
                lambda p, c: not _writes_under(p, (CGROUP_TREE,))),
        _simple("ProtectClock", "Deny changing system and hardware clocks.", "clocks read-only",
                _clock_safe),
        _simple("ProtectHostname", "Deny changing hostname and domain name.", "hostname read-only",
                lambda p, c: not (p.syscalls & HOSTNAME_SYSCALLS)),
        Directive(
            name="ProtectProc",
            description="Restrict access to other processes in /proc.",
            levels=(
                Level("default", "no restriction"),
                Level("noaccess", "other processes' /proc entries inaccessible", _flag_free("proc-foreign")),
                Level("invisible", "other processes hidden from /proc",
                      lambda p, c: not ({"proc-foreign", "proc-listing"} & p.flags)),
            ),
        ),
        Directive(
            name="ProcSubset",
            description="Restrict /proc to process directories.",
            levels=(
                Level("all", "full /proc"),
                Level("pid", "only /proc/PID directories", _flag_free("proc-non-pid")),
            ),
        ),
        _simple("MemoryDenyWriteExecute", "Deny writable and executable memory.", "no W+X mappings",
                _flag_free("write-execute")),
        _simple("LockPersonality", "Lock the execution domain.", "personality locked",
                _flag_free("personality")),
        _simple("RestrictRealtime", "Deny realtime scheduling.", "no realtime scheduling",
                _flag_free("realtime")),
        _simple("RestrictSUIDSGID", "Deny creating set-user/group-ID files.", "no SUID/SGID bits",
                _flag_free("suid-sgid")),
        _simple("NoNewPrivileges", "Deny gaining privileges through execve.", "no privilege gain",
                _flag_free("suid-exec")),
        Directive(
            name="SystemCallArchitectures",
            description="Restrict syscalls to the native ABI.",
            levels=(
                Level("unset", "any ABI"),
                Level("native", "native ABI only", _flag_free("non-native-arch")),
            ),
        ),
        Directive(
            name="RestrictAddressFamilies",
            description="Restrict socket address families.",
            levels=(
                Level("unset", "any address family"),
                Level("allowlist", "only observed address families",
                      lambda p, c: all(_FAMILY_RE.match(f) for f in p.families), _families_render),
                Level("none", "no sockets", lambda p, c: not p.sockets),
            ),
            aggressive=True,
        ),
        Directive(
            name="SocketBindDeny",
            description="Deny binding IPv4/IPv6 TCP/UDP ports.",
            levels=(
                Level("unset", "any bind allowed"),
                Level("unused", "binding denied for protocol pairs never bound", None, _socket_bind_render),
            ),
            aggressive=True,
        ),
        Directive(
            name="RestrictNamespaces",
            description="Restrict namespace creation and joining.",
            levels=(
                Level("false", "any namespace"),
                Level("allowlist", "only observed namespace types",
                      lambda p, c: p.namespaces <= NAMEABLE_NAMESPACES, _namespaces_render),
                Level("true", "no namespaces", lambda p, c: not p.namespaces),
            ),
        ),
        Directive(
            name="CapabilityBoundingSet",
            description="Restrict the capability bounding set.",
            levels=(
                Level("unset", "all capabilities"),
                Level("denylist", "detectable capabilities never used are dropped",
                      lambda p, c: bool(_unused_capabilities(p)), _capabilities_render),
            ),
            aggressive=True,
        ),
        Directive(
            name="SystemCallFilter",
            description="Allow only the observed system calls.",
            levels=(
                Level("unset", "any system call"),
                Level("allowlist", "only observed system calls (by group where possible)", _filter_safe),
            ),
            syscall_groups=SYSCALL_GROUPS,
            required_syscalls=BASE_SYSCALLS,
            companions=companions,
            aggressive=True,
        ),
    ]

    known = {d.name for d in directives}
    if not options.aggressive:
        directives = [d for d in directives if not d.aggressive]
    if options.disabled_directives:
        unknown = options.disabled_directives - known
        for name in sorted(unknown):
            logger.warning("Ignoring unknown disabled directive: %s", name)
        directives = [d for d in directives if d.name not in options.disabled_directives]
    return Catalog(directives)


# ----------------------------
# Capability mapping
# ----------------------------

@dataclass(frozen=True)
class CapabilityRule:
    """
    A capability inferred from a syscall.

    Rules fire on any outcome: a successful call used the capability, a
    denied one tried to. `when` narrows a rule to the argument values that
    actually need the capability.
    """
    capability: str
    syscalls: FrozenSet[str]
    when: Optional[Callable[[Syscall], bool]] = None

    def matches(self, sc: Syscall) -> bool:
        if sc.name not in self.syscalls:
            return False
        return self.when is None or bool(self.when(sc))


_PORT_RE = re.compile(r"sin6?_port=htons\((\d+)\)")
_NS_FLAGS_NEEDING_ADMIN = frozenset({
    "CLONE_NEWNS", "CLONE_NEWUTS", "CLONE_NEWIPC", "CLONE_NEWPID", "CLONE_NEWNET", "CLONE_NEWCGROUP",
    "CLONE_NEWTIME",
})
REALTIME_POLICIES = frozenset({"SCHED_FIFO", "SCHED_RR", "SCHED_DEADLINE"})
_READ_ONLY_MODES_RE = re.compile(r"modes=\s*0(?![0-9a-fA-Fx])")


def _arg_text(sc: Syscall, idx: int) -> str:
    a = sc.arg(idx)
    return a.text if a is not None else ""


def _arg_flags(sc: Syscall, idx: int) -> FrozenSet[str]:
    a = sc.arg(idx)
    return a.as_flags() if a is not None else frozenset()


def _low_port_bind(sc: Syscall) -> bool:
    m = _PORT_RE.search(_arg_text(sc, 1))
    return bool(m) and 0 < int(m.group(1)) < 1024


def _raw_socket(sc: Syscall) -> bool:
    family = _arg_text(sc, 0)
    return family == "AF_PACKET" or (family in ("AF_INET", "AF_INET6") and "SOCK_RAW" in _arg_flags(sc, 1))


def _privileged_namespaces(sc: Syscall) -> bool:
    from .strace_parser import clone_flags

    flags = clone_flags(sc)
    return bool(flags & _NS_FLAGS_NEEDING_ADMIN) and "CLONE_NEWUSER" not in flags


def _realtime_policy(sc: Syscall) -> bool:
    if sc.name == "sched_setattr":
        attr = sc.arg(1)
        policy = attr.fields().get("sched_policy") if attr is not None else None
        return policy is not None and bool(policy.as_flags() & REALTIME_POLICIES)
    return bool(_arg_flags(sc, 1) & REALTIME_POLICIES)


def _device_node(sc: Syscall) -> bool:
    idx = 2 if sc.name == "mknodat" else 1
    return bool(_arg_flags(sc, idx) & {"S_IFCHR", "S_IFBLK"})


def _alarm_clock(sc: Syscall) -> bool:
    return _arg_text(sc, 0) in ("CLOCK_REALTIME_ALARM", "CLOCK_BOOTTIME_ALARM")


def _sets_time(sc: Syscall) -> bool:
    idx = 1 if sc.name.startswith("clock_adjtime") else 0
    return not _READ_ONLY_MODES_RE.search(_arg_text(sc, idx))


def _trusted_xattr(sc: Syscall) -> bool:
    a = sc.arg(1)
    name = a.as_string() if a is not None else None
    return bool(name) and name.startswith(("trusted.", "security."))


def _raises_priority(sc: Syscall) -> bool:
    # only negative nice values need the capability
    a = sc.arg(2 if sc.name == "setpriority" else 0)
    value = a.as_int() if a is not None else None
    return value is None or value < 0


def _sets_limit(sc: Syscall) -> bool:
    # prlimit64 with a NULL new limit only reads it
    return sc.name == "setrlimit" or _arg_text(sc, 2) != "NULL"


CAPABILITY_RULES: Tuple[CapabilityRule, ...] = (
    CapabilityRule("CAP_CHOWN", frozenset({"chown", "fchown", "lchown", "fchownat", "chown32", "fchown32",
                                           "lchown32"})),
    CapabilityRule("CAP_FOWNER", frozenset({"chmod", "fchmod", "fchmodat", "fchmodat2", "utime", "utimes",
                                            "utimensat", "futimesat"})),
    CapabilityRule("CAP_KILL", frozenset({"kill", "tkill", "tgkill", "pidfd_send_signal", "rt_sigqueueinfo",
                                          "rt_tgsigqueueinfo"})),
    CapabilityRule("CAP_SETUID", frozenset({"setuid", "setreuid", "setresuid", "setfsuid", "setuid32",
                                            "setreuid32", "setresuid32", "setfsuid32"})),
    CapabilityRule("CAP_SETGID", frozenset({"setgid", "setregid", "setresgid", "setfsgid", "setgroups",
                                            "setgid32", "setregid32", "setresgid32", "setfsgid32",
                                            "setgroups32"})),
    CapabilityRule("CAP_SETPCAP", frozenset({"prctl"}),
                   lambda sc: _arg_text(sc, 0) in ("PR_CAPBSET_DROP", "PR_SET_SECUREBITS")),
    CapabilityRule("CAP_NET_BIND_SERVICE", frozenset({"bind"}), _low_port_bind),
    CapabilityRule("CAP_NET_RAW", frozenset({"socket"}), _raw_socket),
    CapabilityRule("CAP_NET_ADMIN", frozenset({"setsockopt"}),
                   lambda sc: _arg_text(sc, 2) in ("SO_MARK", "IP_TRANSPARENT", "IPV6_TRANSPARENT",
                                                   "SO_BINDTODEVICE")),
    CapabilityRule("CAP_NET_ADMIN", frozenset({"ioctl"}), lambda sc: _arg_text(sc, 1).startswith("SIOCS")),
    CapabilityRule("CAP_AUDIT_WRITE", frozenset({"socket"}), lambda sc: _arg_text(sc, 2) == "NETLINK_AUDIT"),
    CapabilityRule("CAP_SYS_PTRACE", frozenset({"ptrace"}), lambda sc: _arg_text(sc, 0) != "PTRACE_TRACEME"),
    CapabilityRule("CAP_SYS_PTRACE", frozenset({"process_vm_readv", "process_vm_writev", "kcmp", "pidfd_getfd"})),
    CapabilityRule("CAP_SYS_ADMIN", MOUNT_SYSCALLS | frozenset({"swapon", "swapoff", "setns", "quotactl",
                                                                "quotactl_fd", "fanotify_init",
                                                                "lookup_dcookie", "sethostname", "setdomainname"})),
    CapabilityRule("CAP_SYS_ADMIN", frozenset({"unshare", "clone", "clone3"}), _privileged_namespaces),
    CapabilityRule("CAP_SYS_ADMIN", frozenset({"setxattr", "lsetxattr", "fsetxattr"}), _trusted_xattr),
    CapabilityRule("CAP_SYS_BOOT", frozenset({"reboot", "kexec_load", "kexec_file_load"})),
    CapabilityRule("CAP_SYS_MODULE", MODULE_SYSCALLS),
    CapabilityRule("CAP_SYS_RAWIO", frozenset({"iopl", "ioperm"})),
    CapabilityRule("CAP_SYS_CHROOT", frozenset({"chroot"})),
    CapabilityRule("CAP_SYS_TIME", frozenset({"settimeofday", "clock_settime", "clock_settime64", "stime"})),
    CapabilityRule("CAP_SYS_TIME", frozenset({"adjtimex", "clock_adjtime", "clock_adjtime64"}), _sets_time),
    CapabilityRule("CAP_SYS_NICE", frozenset({"sched_setscheduler", "sched_setattr"}), _realtime_policy),
    CapabilityRule("CAP_SYS_NICE", frozenset({"setpriority", "nice"}), _raises_priority),
    CapabilityRule("CAP_SYS_NICE", frozenset({"sched_setaffinity", "ioprio_set", "mbind", "migrate_pages",
                                              "move_pages"})),
    CapabilityRule("CAP_SYS_RESOURCE", frozenset({"setrlimit", "prlimit64"}), _sets_limit),
    CapabilityRule("CAP_IPC_LOCK", frozenset({"mlock", "mlock2", "mlockall"})),
    CapabilityRule("CAP_MKNOD", frozenset({"mknod", "mknodat"}), _device_node),
    CapabilityRule("CAP_SYS_TTY_CONFIG", frozenset({"vhangup"})),
    CapabilityRule("CAP_SYS_PACCT", frozenset({"acct"})),
    CapabilityRule("CAP_SYSLOG", frozenset({"syslog"})),
    CapabilityRule("CAP_DAC_READ_SEARCH", frozenset({"open_by_handle_at"})),
    CapabilityRule("CAP_BPF", frozenset({"bpf"})),
    CapabilityRule("CAP_PERFMON", frozenset({"perf_event_open"})),
    CapabilityRule("CAP_WAKE_ALARM", frozenset({"timer_create", "timerfd_create"}), _alarm_clock),
    CapabilityRule("CAP_LINUX_IMMUTABLE", frozenset({"ioctl"}),
                   lambda sc: _arg_text(sc, 1).startswith("FS_IOC_SETFLAGS")),
)


# Used implicitly by ordinary file, device and netlink operations or by
# exceeding kernel limits, so no trace can rule them out
UNDETECTABLE_CAPABILITIES = frozenset({
    "CAP_DAC_OVERRIDE", "CAP_DAC_READ_SEARCH", "CAP_FOWNER", "CAP_FSETID", "CAP_NET_ADMIN",
    "CAP_SYS_ADMIN", "CAP_SYS_RAWIO", "CAP_SYS_RESOURCE",
})
DENYABLE_CAPABILITIES = frozenset(rule.capability for rule in CAPABILITY_RULES) - UNDETECTABLE_CAPABILITIES


def capabilities_for(sc: Syscall, rules: Sequence[CapabilityRule] = CAPABILITY_RULES) -> Set[str]:
    return {rule.capability for rule in rules if rule.matches(sc)}
