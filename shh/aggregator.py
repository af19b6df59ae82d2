from __future__ import annotations

import logging
import posixpath
import re
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from ._types import Argument, Event, Lifecycle, LifecycleKind, Signal, Syscall
from .catalog import CAPABILITY_RULES, CapabilityRule, REALTIME_POLICIES, capabilities_for
from .profile import Access, BehavioralProfile, BindSpec, ProfileBuilder
from .strace_parser import clone_flags

logger = logging.getLogger("aggregator")

# ----------------------------
# Annotation normalization
# ----------------------------

_SOCKET_FAMILY_BY_PROTO = {
    "TCP": "AF_INET", "UDP": "AF_INET", "UDPLITE": "AF_INET", "RAW": "AF_INET", "PING": "AF_INET",
    "TCPV6": "AF_INET6", "UDPV6": "AF_INET6", "UDPLITEV6": "AF_INET6", "RAWV6": "AF_INET6", "PINGV6": "AF_INET6",
    "UNIX": "AF_UNIX", "UNIX-STREAM": "AF_UNIX", "UNIX-DGRAM": "AF_UNIX", "UNIX-SEQPACKET": "AF_UNIX",
    "NETLINK": "AF_NETLINK", "PACKET": "AF_PACKET",
}


def _normalize_annotation(ann: str) -> Tuple[str, str]:
    """
    Normalize strace -y/-yy inline annotations to (value, kind).

    Examples:
      '/dev/urandom<char 1:9>'          -> ('/dev/urandom', 'file')
      'socket:[12345]'                  -> ('[socket]', 'socket')
      'TCP:[10.0.0.1:80->10.0.0.2:5]'   -> ('AF_INET', 'socket')
      'UNIX-STREAM:[1->2,"/run/x"]'     -> ('AF_UNIX', 'socket')
      'pipe:[67890]'                    -> ('[pipe]', 'pipe')
      'anon_inode:[eventfd]'            -> ('[anon]', 'anon')
      'net:[4026531840]'                -> ('net', 'namespace')
      '/tmp/x (deleted)'                -> ('/tmp/x', 'file')
    """
    s = ann.strip()

    if s.startswith("/") and "<" in s:
        s = s.split("<", 1)[0].rstrip()
    s = s.replace(" (deleted)", "").strip()

    proto, sep, _ = s.partition(":[")
    if sep:
        upper = proto.upper()
        if upper == "SOCKET":
            return "[socket]", "socket"
        if upper in _SOCKET_FAMILY_BY_PROTO:
            return _SOCKET_FAMILY_BY_PROTO[upper], "socket"
        if proto in NAMESPACE_TYPES:
            return proto, "namespace"
        if proto == "pipe":
            return "[pipe]", "pipe"
    if s.startswith("anon_inode:"):
        return "[anon]", "anon"
    if s.startswith("memfd:"):
        return "[memfd]", "memfd"
    if s.startswith("/"):
        return s, "file"
    return s, "unknown"


NAMESPACE_BY_FLAG = {
    "CLONE_NEWNS": "mnt",
    "CLONE_NEWUTS": "uts",
    "CLONE_NEWIPC": "ipc",
    "CLONE_NEWUSER": "user",
    "CLONE_NEWPID": "pid",
    "CLONE_NEWNET": "net",
    "CLONE_NEWCGROUP": "cgroup",
    "CLONE_NEWTIME": "time",
}
NAMESPACE_TYPES = frozenset(NAMESPACE_BY_FLAG.values()) | {"pid_for_children", "time_for_children"}

# Set-uid helpers that NoNewPrivileges= would neuter
SETUID_HELPERS = frozenset({
    "sudo", "su", "pkexec", "passwd", "chsh", "chfn", "newgrp", "gpasswd", "mount", "umount", "fusermount",
    "fusermount3", "ping", "ping6", "unix_chkpwd", "ssh-keysign", "newuidmap", "newgidmap", "crontab", "at",
    "doas", "Xorg.wrap", "dbus-daemon-launch-helper", "polkit-agent-helper-1",
})
KERNEL_MEMORY_PATHS = frozenset({"/dev/mem", "/dev/kmem", "/dev/port", "/proc/kcore", "/proc/kallsyms"})

_AT_FDCWD_RE = re.compile(r"^\s*AT_FDCWD\s*<(?P<ann>.+)>\s*$")
_PROC_PID_RE = re.compile(r"^/proc/(?P<pid>\d+)(?P<rest>/.*)?$")
_PROC_OURS = ("self", "thread-self")
_SA_FAMILY_RE = re.compile(r"sa_family=(AF_[A-Z0-9_]+)")
_SUN_PATH_RE = re.compile(r'sun_path=(@?"(?:[^"\\]|\\.)*")')
_PORT_RE = re.compile(r"sin6?_port=htons\((\d+)\)")
_CAP_NAME_RE = re.compile(r"CAP_[A-Z_]+")
_MODE_BITS_SUID_SGID = 0o6000

OPEN_ACCESS = "open"

# name -> [(dirfd index or None, path index, access)]
PATH_ARGS: Dict[str, List[Tuple[Optional[int], int, Any]]] = {
    "open": [(None, 0, OPEN_ACCESS)],
    "openat": [(0, 1, OPEN_ACCESS)],
    "openat2": [(0, 1, OPEN_ACCESS)],
    "creat": [(None, 0, Access.WRITE | Access.CREATE)],
    "execve": [(None, 0, Access.READ | Access.EXEC)],
    "execveat": [(0, 1, Access.READ | Access.EXEC)],
    "uselib": [(None, 0, Access.READ | Access.EXEC)],
    "stat": [(None, 0, Access.READ)],
    "lstat": [(None, 0, Access.READ)],
    "stat64": [(None, 0, Access.READ)],
    "lstat64": [(None, 0, Access.READ)],
    "newfstatat": [(0, 1, Access.READ)],
    "fstatat64": [(0, 1, Access.READ)],
    "statx": [(0, 1, Access.READ)],
    "access": [(None, 0, Access.READ)],
    "faccessat": [(0, 1, Access.READ)],
    "faccessat2": [(0, 1, Access.READ)],
    "readlink": [(None, 0, Access.READ)],
    "readlinkat": [(0, 1, Access.READ)],
    "statfs": [(None, 0, Access.READ)],
    "statfs64": [(None, 0, Access.READ)],
    "getxattr": [(None, 0, Access.READ)],
    "lgetxattr": [(None, 0, Access.READ)],
    "listxattr": [(None, 0, Access.READ)],
    "llistxattr": [(None, 0, Access.READ)],
    "chdir": [(None, 0, Access.READ)],
    "chroot": [(None, 0, Access.READ)],
    "inotify_add_watch": [(None, 1, Access.READ)],
    "name_to_handle_at": [(0, 1, Access.READ)],
    "swapon": [(None, 0, Access.READ)],
    "truncate": [(None, 0, Access.WRITE)],
    "truncate64": [(None, 0, Access.WRITE)],
    "chmod": [(None, 0, Access.WRITE)],
    "fchmodat": [(0, 1, Access.WRITE)],
    "fchmodat2": [(0, 1, Access.WRITE)],
    "chown": [(None, 0, Access.WRITE)],
    "lchown": [(None, 0, Access.WRITE)],
    "chown32": [(None, 0, Access.WRITE)],
    "lchown32": [(None, 0, Access.WRITE)],
    "fchownat": [(0, 1, Access.WRITE)],
    "utime": [(None, 0, Access.WRITE)],
    "utimes": [(None, 0, Access.WRITE)],
    "utimensat": [(0, 1, Access.WRITE)],
    "futimesat": [(0, 1, Access.WRITE)],
    "setxattr": [(None, 0, Access.WRITE)],
    "lsetxattr": [(None, 0, Access.WRITE)],
    "removexattr": [(None, 0, Access.WRITE)],
    "lremovexattr": [(None, 0, Access.WRITE)],
    "acct": [(None, 0, Access.WRITE)],
    "mkdir": [(None, 0, Access.CREATE)],
    "mkdirat": [(0, 1, Access.CREATE)],
    "mknod": [(None, 0, Access.CREATE)],
    "mknodat": [(0, 1, Access.CREATE)],
    "unlink": [(None, 0, Access.CREATE)],
    "unlinkat": [(0, 1, Access.CREATE)],
    "rmdir": [(None, 0, Access.CREATE)],
    "symlink": [(None, 1, Access.CREATE)],
    "symlinkat": [(1, 2, Access.CREATE)],
    "link": [(None, 0, Access.READ), (None, 1, Access.CREATE)],
    "linkat": [(0, 1, Access.READ), (2, 3, Access.CREATE)],
    "rename": [(None, 0, Access.CREATE), (None, 1, Access.CREATE)],
    "renameat": [(0, 1, Access.CREATE), (2, 3, Access.CREATE)],
    "renameat2": [(0, 1, Access.CREATE), (2, 3, Access.CREATE)],
    "mount": [(None, 1, Access.WRITE)],
    "umount": [(None, 0, Access.WRITE)],
    "umount2": [(None, 0, Access.WRITE)],
}

# Index of the mode argument for calls that can set permission bits
MODE_ARG_INDEX = {
    "open": 2, "openat": 3, "creat": 1, "mkdir": 1, "mkdirat": 2, "mknod": 1, "mknodat": 2,
    "chmod": 1, "fchmod": 1, "fchmodat": 2, "fchmodat2": 2,
}


def _open_access(flags: FrozenSet[str]) -> Access:
    access = Access.NONE
    if "O_WRONLY" in flags or "O_RDWR" in flags:
        access |= Access.WRITE
    if "O_WRONLY" not in flags:
        access |= Access.READ
    if "O_CREAT" in flags or "O_TMPFILE" in flags or "__O_TMPFILE" in flags:
        access |= Access.CREATE
    if "O_TRUNC" in flags:
        access |= Access.WRITE
    return access


def _mode_sets_suid_sgid(arg: Optional[Argument]) -> bool:
    if arg is None:
        return False
    flags = arg.as_flags()
    if flags & {"S_ISUID", "S_ISGID"}:
        return True
    for part in flags:
        value = Argument(part).as_int()
        if value is not None and value & _MODE_BITS_SUID_SGID:
            return True
    return False


class ProfileAggregator:
    """
    Fold the event stream of one profiling run into a BehavioralProfile.

    One instance = one profiling run.
    Create a new instance for each run, then merge the resulting profiles.

    Attempts count like successes: a call that failed with EPERM still tells
    what the service tried to do.
    """

    # fd whose path is written by the call
    DEST_FD_INDEX = {
        "write": 0,
        "pwrite64": 0,
        "writev": 0,
        "pwritev": 0,
        "pwritev2": 0,
        "sendfile": 0,  # out_fd, in_fd, offset, count
        "sendfile64": 0,
        "copy_file_range": 2,  # fd_in, off_in, fd_out, off_out, len, flags
        "splice": 2,  # fd_in, off_in, fd_out, off_out, len, flags
        "ftruncate": 0,
        "ftruncate64": 0,
        "fallocate": 0,
        "fchmod": 0,
        "fchown": 0,
        "fchown32": 0,
        "fsetxattr": 0,
        "fremovexattr": 0,
    }

    SOCKADDR_INDEX = {
        "connect": 1,
        "bind": 1,
        "sendto": 4,
    }

    def __init__(
            self,
            events: Iterable[Event],
            tracked: Optional[Iterable[int]] = None,
            capability_rules: Sequence[CapabilityRule] = CAPABILITY_RULES,
            cwd: Optional[str] = None,
    ):
        self._builder = ProfileBuilder()
        self._capability_rules = capability_rules
        self.fd_table: Dict[Tuple[int, int], Dict[str, Any]] = {}
        self.cwd: Dict[int, str] = {}
        self.initial_cwd = cwd
        self.tracked: Set[int] = set(tracked or ())
        self.events_total = 0
        self.signals = 0
        self.unresolved_paths = 0
        self._profile: Optional[BehavioralProfile] = None

        self._run(events)

    @property
    def profile(self) -> BehavioralProfile:
        if self._profile is None:
            self._profile = self._builder.freeze()
        return self._profile

    # ----------------------------
    # FD table
    # ----------------------------

    def _fd_set(self, pid: int, fd: int, path_or_tag: str, kind: str = "file", cloexec: bool = False, **extra):
        self.fd_table[(pid, fd)] = {"path": path_or_tag, "kind": kind, "cloexec": cloexec, **extra}

    def _fd_del(self, pid: int, fd: int):
        self.fd_table.pop((pid, fd), None)

    def _fd_get(self, pid: int, fd: Optional[int]) -> Dict[str, Any]:
        if fd is None:
            return {"path": None, "kind": "unknown", "cloexec": False}
        return self.fd_table.get((pid, fd), {"path": None, "kind": "unknown", "cloexec": False})

    def _maybe_learn_fd_from_annotation(self, pid: int, arg: Optional[Argument]):
        if arg is None:
            return
        fd, ann = arg.as_fd(), arg.fd_annotation()
        if fd is None or ann is None:
            return
        value, kind = _normalize_annotation(ann)
        info = self._fd_get(pid, fd)
        if info.get("kind") == "unknown" or (kind == "file" and info.get("path") != value):
            if kind == "socket" and value != "[socket]":
                self._fd_set(pid, fd, value, kind=kind, cloexec=info.get("cloexec", False), family=value)
            else:
                self._fd_set(pid, fd, value, kind=kind, cloexec=info.get("cloexec", False))

    def _fd_path(self, pid: int, arg: Optional[Argument]) -> Optional[str]:
        """Path behind an fd argument, from its -y annotation or the fd table."""
        if arg is None:
            return None
        self._maybe_learn_fd_from_annotation(pid, arg)
        info = self._fd_get(pid, arg.as_fd())
        return info["path"] if info.get("kind") == "file" else None

    def _fork_fd_table(self, parent: int, child: int):
        for (pid, fd), info in list(self.fd_table.items()):
            if pid == parent:
                self.fd_table[(child, fd)] = dict(info)

    def _exec_fd_table(self, pid: int):
        for key in [k for k, info in self.fd_table.items() if k[0] == pid and info.get("cloexec")]:
            del self.fd_table[key]

    # ----------------------------
    # Paths
    # ----------------------------

    def _track(self, pid: int):
        self.tracked.add(pid)

    def _normalize_path(self, path: str) -> str:
        path = posixpath.normpath(path)
        if path.startswith("//"):
            path = "/" + path.lstrip("/")
        m = _PROC_PID_RE.match(path)
        if m:
            rest = m.group("rest") or ""
            if int(m.group("pid")) in self.tracked:
                return "/proc/self" + rest
            self._builder.flags.add("proc-foreign")
            return "/proc/[pid]" + rest
        if path == "/proc":
            self._builder.flags.add("proc-listing")
        elif path.startswith("/proc/"):
            top = path.split("/")[2]
            if top not in _PROC_OURS:
                self._builder.flags.add("proc-non-pid")
        if path in KERNEL_MEMORY_PATHS:
            self._builder.flags.add("kernel-memory")
        return path

    def _cwd_of(self, pid: int, dirfd: Optional[Argument]) -> Optional[str]:
        """Working directory of `pid`, refreshed from an AT_FDCWD</dir> annotation when strace printed one."""
        m = _AT_FDCWD_RE.match(dirfd.text) if dirfd is not None else None
        if m:
            value, kind = _normalize_annotation(m.group("ann"))
            if kind == "file":
                self.cwd[pid] = value
                return value
        return self.cwd.get(pid, self.initial_cwd)

    def _unresolved(self, sc: Syscall, path: str, access: Access):
        if not access:
            return
        self.unresolved_paths += 1
        self._builder.flags.add("unresolved-path")
        if access.writes:
            self._builder.flags.add("unresolved-write")
        logger.debug("cannot resolve %r for %s[%d]", path, sc.name, sc.pid)

    def _resolve(self, sc: Syscall, dirfd_idx: Optional[int], path: str,
                 access: Access = Access.READ) -> Optional[str]:
        if path.startswith("/"):
            return self._normalize_path(path)
        dirfd = sc.arg(dirfd_idx) if dirfd_idx is not None else None
        if dirfd is None or dirfd.text.startswith("AT_FDCWD"):
            base = self._cwd_of(sc.pid, dirfd)
        else:
            base = self._fd_path(sc.pid, dirfd)
        if base is None:
            self._unresolved(sc, path, access)
            return None
        if not path:
            return self._normalize_path(base)
        return self._normalize_path(posixpath.join(base, path))

    def _record_path(self, path: Optional[str], access: Access):
        self._builder.add_path(path, access)

    def _path_syscall(self, sc: Syscall):
        for dirfd_idx, path_idx, access in PATH_ARGS.get(sc.name, ()):
            arg = sc.arg(path_idx)
            if arg is None:
                continue
            path = arg.as_string()
            if path is None:
                # AT_EMPTY_PATH / NULL path: the call acts on the dirfd itself
                if dirfd_idx is not None and arg.text in ("NULL", "") and sc.arg(dirfd_idx) is not None:
                    path = ""
                else:
                    continue
            if access == OPEN_ACCESS:
                access = self._open_call_access(sc)
            resolved = self._resolve(sc, dirfd_idx, path, access)
            self._record_path(resolved, access)

            # -yy annotates the returned fd with the real (symlink-resolved) path
            if sc.name in ("open", "openat", "openat2", "creat"):
                self._learn_opened_fd(sc, resolved, access)

    def _open_call_access(self, sc: Syscall) -> Access:
        if sc.name == "openat2":
            how = sc.arg(2)
            flags = how.fields().get("flags") if how is not None else None
            return _open_access(flags.as_flags() if flags is not None else frozenset())
        idx = 2 if sc.name == "openat" else 1
        flags = sc.arg(idx).as_flags() if sc.arg(idx) is not None else frozenset()
        if "O_PATH" in flags:
            return Access.READ
        return _open_access(flags)

    def _learn_opened_fd(self, sc: Syscall, requested: Optional[str], access: Access):
        fd = sc.outcome.as_int()
        if sc.outcome.failed or fd is None or fd < 0:
            return
        ann = sc.outcome.fd_annotation()
        real = None
        if ann is not None:
            value, kind = _normalize_annotation(ann)
            if kind == "file":
                real = self._normalize_path(value)
                if real != requested:
                    self._record_path(real, access)
        flags_idx = 2 if sc.name in ("openat", "openat2") else 1
        flags = sc.arg(flags_idx).text if sc.arg(flags_idx) is not None else ""
        path = real or requested
        self._fd_set(sc.pid, fd, path or "[unknown]", kind="file" if path else "unknown", cloexec="O_CLOEXEC" in flags)

    # ----------------------------
    # FD tracking (per-run)
    # ----------------------------

    def _track_fd_syscalls(self, sc: Syscall):
        pid, name = sc.pid, sc.name
        if name in ("close",):
            fd = sc.arg(0).as_fd() if sc.arg(0) is not None else None
            if fd is not None:
                self._fd_del(pid, fd)

        elif name in ("dup", "dup2", "dup3", "fcntl", "fcntl64") and not sc.outcome.failed:
            if name.startswith("fcntl") and not (sc.arg(1) and sc.arg(1).text.startswith("F_DUPFD")):
                return
            new_fd = sc.outcome.as_int()
            old = sc.arg(0)
            if new_fd is not None and old is not None:
                self._maybe_learn_fd_from_annotation(pid, old)
                info = dict(self._fd_get(pid, old.as_fd()))
                info["cloexec"] = "O_CLOEXEC" in (sc.arg(2).text if sc.arg(2) else "") or \
                                  "F_DUPFD_CLOEXEC" in (sc.arg(1).text if sc.arg(1) else "")
                self.fd_table[(pid, new_fd)] = info

        elif name in ("pipe", "pipe2"):
            fds = sc.arg(0)
            for item in fds.items() if fds is not None else ():
                fd = item.as_fd()
                if fd is not None:
                    self._fd_set(pid, fd, "[pipe]", kind="pipe")

        elif name == "memfd_create":
            fd = sc.outcome.as_int()
            if fd is not None and fd >= 0:
                self._fd_set(pid, fd, "[memfd]", kind="memfd")

        elif name in ("chdir", "fchdir") and not sc.outcome.failed:
            if name == "chdir":
                arg = sc.arg(0)
                path = arg.as_string() if arg is not None else None
                # an unresolvable target was already counted when the path was recorded
                target = self._resolve(sc, None, path, Access.NONE) if path is not None else None
            else:
                target = self._fd_path(pid, sc.arg(0))
            if target:
                self.cwd[pid] = target

        elif name == "getcwd" and not sc.outcome.failed:
            path = sc.arg(0).as_string() if sc.arg(0) is not None else None
            if path and path.startswith("/"):
                self.cwd[pid] = self._normalize_path(path)

        elif name in ("execve", "execveat") and not sc.outcome.failed:
            self._exec_fd_table(pid)

    def _fd_write(self, sc: Syscall):
        idx = self.DEST_FD_INDEX.get(sc.name)
        if idx is None:
            return
        path = self._fd_path(sc.pid, sc.arg(idx))
        if path:
            self._record_path(self._normalize_path(path), Access.WRITE)

    # ----------------------------
    # Network
    # ----------------------------

    def _network_family_from_args(self, text: str) -> Optional[str]:
        m = _SA_FAMILY_RE.search(text or "")
        if m and m.group(1) != "AF_UNSPEC":
            return m.group(1)
        return None

    def _socket_syscalls(self, sc: Syscall):
        b = self._builder
        if sc.name in ("socket", "socketpair"):
            family = sc.arg(0).text if sc.arg(0) is not None else ""
            type_flags = sc.arg(1).as_flags() if sc.arg(1) is not None else frozenset()
            sock_type = next((f for f in sorted(type_flags) if f.startswith("SOCK_") and f not in
                              ("SOCK_CLOEXEC", "SOCK_NONBLOCK")), "")
            protocol = sc.arg(2).text if sc.arg(2) is not None else ""
            b.add_socket(family, sock_type, protocol)
            fd = sc.outcome.as_int()
            if sc.name == "socket" and fd is not None and fd >= 0:
                self._fd_set(sc.pid, fd, "[socket]", kind="socket", family=family, type=sock_type,
                             cloexec="SOCK_CLOEXEC" in type_flags)
            return

        if sc.name == "sendmsg" or sc.name == "sendmmsg":
            text = sc.arg(1).text if sc.arg(1) is not None else ""
            family = self._network_family_from_args(text)
            if family:
                b.add_socket(family)
            return

        idx = self.SOCKADDR_INDEX.get(sc.name)
        if idx is None:
            return
        addr = sc.arg(idx)
        text = addr.text if addr is not None else ""
        sock = sc.arg(0)
        self._maybe_learn_fd_from_annotation(sc.pid, sock)
        info = self._fd_get(sc.pid, sock.as_fd() if sock is not None else None)
        family = self._network_family_from_args(text) or info.get("family")
        if not family or not family.startswith("AF_"):
            return
        if "type" not in info:
            # socket() was not seen for this fd
            b.add_socket(family)

        if family in ("AF_UNIX", "AF_LOCAL"):
            m = _SUN_PATH_RE.search(text)
            if m:
                sun = Argument.from_token(m.group(1))
                if sun.is_abstract:
                    b.flags.add("abstract-unix")
                else:
                    path = sun.as_string()
                    if path:
                        access = Access.CREATE if sc.name == "bind" else Access.READ
                        self._record_path(self._resolve(sc, None, path, access), access)
            return

        if sc.name == "bind" and family in ("AF_INET", "AF_INET6"):
            m = _PORT_RE.search(text)
            if m:
                sock_type = info.get("type", "")
                protocol = {"SOCK_STREAM": "tcp", "SOCK_DGRAM": "udp"}.get(sock_type, "any")
                b.bind_ports.add(BindSpec(family, protocol, int(m.group(1))))

    # ----------------------------
    # Capabilities, namespaces, flags
    # ----------------------------

    def _capabilities(self, sc: Syscall):
        caps = self._builder.capabilities
        caps.update(capabilities_for(sc, self._capability_rules))
        if sc.name == "capset" and sc.arg(1) is not None:
            caps.update(_CAP_NAME_RE.findall(sc.arg(1).text))
        elif sc.name == "prctl" and sc.arg(0) is not None and sc.arg(0).text == "PR_CAP_AMBIENT":
            for a in sc.args[1:3]:
                caps.update(_CAP_NAME_RE.findall(a.text))

    def _namespaces(self, sc: Syscall):
        ns = self._builder.namespaces
        if sc.name in ("unshare", "clone", "clone3"):
            for flag in clone_flags(sc):
                if flag in NAMESPACE_BY_FLAG:
                    ns.add(NAMESPACE_BY_FLAG[flag])
        elif sc.name == "setns":
            nstype = sc.arg(1).as_flags() if sc.arg(1) is not None else frozenset()
            named = {NAMESPACE_BY_FLAG[f] for f in nstype if f in NAMESPACE_BY_FLAG}
            if not named:
                fd = sc.arg(0)
                self._maybe_learn_fd_from_annotation(sc.pid, fd)
                info = self._fd_get(sc.pid, fd.as_fd() if fd is not None else None)
                if info.get("kind") == "namespace":
                    named = {info["path"].replace("_for_children", "")}
                elif info.get("path") and "/ns/" in str(info["path"]):
                    named = {posixpath.basename(info["path"]).replace("_for_children", "")}
            # an unknown type could be any namespace
            ns.update(named or NAMESPACE_BY_FLAG.values())

    def _flags(self, sc: Syscall):
        flags = self._builder.flags
        name = sc.name
        if name == "ptrace":
            flags.add("ptrace")
        elif name == "personality":
            arg = sc.arg(0)
            if arg is not None and arg.text not in ("0xffffffff", "PER_LINUX", "0"):
                flags.add("personality")
        elif name in ("mmap", "mmap2"):
            prot = sc.arg(2).as_flags() if sc.arg(2) is not None else frozenset()
            if {"PROT_WRITE", "PROT_EXEC"} <= prot:
                flags.add("write-execute")
        elif name in ("mprotect", "pkey_mprotect"):
            if sc.arg(2) is not None and "PROT_EXEC" in sc.arg(2).as_flags():
                flags.add("write-execute")
        elif name == "shmat":
            if sc.arg(2) is not None and "SHM_EXEC" in sc.arg(2).as_flags():
                flags.add("write-execute")
        elif name in ("sched_setscheduler", "sched_setattr"):
            if sc.name == "sched_setattr":
                attr = sc.arg(1)
                policy = attr.fields().get("sched_policy") if attr is not None else None
                policies = policy.as_flags() if policy is not None else frozenset()
            else:
                policies = sc.arg(1).as_flags() if sc.arg(1) is not None else frozenset()
            if policies & REALTIME_POLICIES:
                flags.add("realtime")
        elif name in ("execve", "execveat"):
            arg = sc.arg(1 if name == "execveat" else 0)
            path = arg.as_string() if arg is not None else None
            if path and posixpath.basename(path) in SETUID_HELPERS:
                flags.add("suid-exec")

        idx = MODE_ARG_INDEX.get(name)
        if idx is not None and _mode_sets_suid_sgid(sc.arg(idx)):
            if name in ("open", "openat") and not ({"O_CREAT", "O_TMPFILE"} & self._open_flags(sc)):
                return
            flags.add("suid-sgid")

    @staticmethod
    def _open_flags(sc: Syscall) -> FrozenSet[str]:
        idx = 2 if sc.name == "openat" else 1
        return sc.arg(idx).as_flags() if sc.arg(idx) is not None else frozenset()

    # ----------------------------
    # Lifecycle
    # ----------------------------

    def _lifecycle(self, ev: Lifecycle):
        self._track(ev.pid)
        self.tracked.add(ev.tid)
        if ev.kind == LifecycleKind.SPAWN and ev.child is not None:
            self.tracked.add(ev.child)
            if not ev.thread:
                self._fork_fd_table(ev.pid, ev.child)
                if ev.pid in self.cwd:
                    self.cwd[ev.child] = self.cwd[ev.pid]
        elif ev.kind == LifecycleKind.PERSONALITY:
            if "64 bit" not in ev.detail:
                self._builder.flags.add("non-native-arch")

    # ----------------------------
    # Core per-run aggregation
    # ----------------------------

    def _aggregate_syscall(self, sc: Syscall):
        self._track(sc.pid)
        self.tracked.add(sc.tid)
        b = self._builder
        b.syscalls.add(sc.name)
        if sc.unrecognized:
            b.unknown_syscalls.add(sc.name)

        self._path_syscall(sc)
        self._track_fd_syscalls(sc)
        self._fd_write(sc)
        self._socket_syscalls(sc)
        self._capabilities(sc)
        self._namespaces(sc)
        self._flags(sc)

    def _run(self, events: Iterable[Event]):
        logger.info("Aggregating events...")
        for ev in events:
            self.events_total += 1
            try:
                if isinstance(ev, Syscall):
                    self._aggregate_syscall(ev)
                elif isinstance(ev, Lifecycle):
                    self._lifecycle(ev)
                elif isinstance(ev, Signal):
                    self.signals += 1
            except (AttributeError, IndexError, TypeError, ValueError) as e:
                logger.error("Aggregator error on %s %r", ev, e, exc_info=logger.isEnabledFor(logging.DEBUG))
        if self.unresolved_paths:
            logger.warning("%d relative path(s) could not be resolved", self.unresolved_paths)
        logger.info("Aggregated %d events from %d process(es).", self.events_total, len(self.tracked))
