import random
import textwrap
from typing import List, Optional, Sequence

from shh._types import Event, Syscall
from shh.aggregator import ProfileAggregator
from shh.profile import Access, BehavioralProfile, BindSpec, SocketSpec
from shh.strace_parser import StraceParser


def trace_lines(text: str) -> List[str]:
    return textwrap.dedent(text).strip("\n").splitlines()


def parse_text(text: str, **kwargs) -> List[Event]:
    return list(StraceParser(**kwargs).parse(trace_lines(text)))


def syscalls_of(events: Sequence[Event]) -> List[Syscall]:
    return [e for e in events if isinstance(e, Syscall)]


def aggregate_text(text: str, **kwargs) -> BehavioralProfile:
    return ProfileAggregator(parse_text(text), **kwargs).profile


# A small but realistic service run: dynamic loading, config read, state
# written under /var/lib, a unix socket to the system bus and a TCP listener.
SERVICE_TRACE = """
    1200  1700000000.000100 execve("/usr/bin/svcd", ["svcd", "--foreground"], 0x7ffc2b1c3d88 /* 12 vars */) = 0
    1200  1700000000.000200 brk(NULL) = 0x55d0c0a9e000
    1200  1700000000.000300 openat(AT_FDCWD, "/etc/ld.so.cache", O_RDONLY|O_CLOEXEC) = 3</etc/ld.so.cache>
    1200  1700000000.000400 mmap(NULL, 24576, PROT_READ, MAP_PRIVATE, 3</etc/ld.so.cache>, 0) = 0x7f6b1c000000
    1200  1700000000.000500 close(3</etc/ld.so.cache>) = 0
    1200  1700000000.000600 openat(AT_FDCWD, "/lib/x86_64-linux-gnu/libc.so.6", O_RDONLY|O_CLOEXEC) = 3</usr/lib/x86_64-linux-gnu/libc.so.6>
    1200  1700000000.000700 read(3</usr/lib/x86_64-linux-gnu/libc.so.6>, "\\177ELF\\2\\1\\1\\3\\0\\0\\0\\0\\0\\0\\0\\0\\3\\0>\\0\\1\\0\\0\\0", 832) = 832
    1200  1700000000.000800 close(3</usr/lib/x86_64-linux-gnu/libc.so.6>) = 0
    1200  1700000000.000900 openat(AT_FDCWD, "/etc/svcd.conf", O_RDONLY) = 3</etc/svcd.conf>
    1200  1700000000.001000 read(3</etc/svcd.conf>, "listen=8080\\n", 4096) = 12
    1200  1700000000.001100 close(3</etc/svcd.conf>) = 0
    1200  1700000000.001200 mkdir("/var/lib/svcd/cache", 0755) = -1 EEXIST (File exists)
    1200  1700000000.001300 openat(AT_FDCWD, "/var/lib/svcd/state.db", O_RDWR|O_CREAT, 0600) = 4</var/lib/svcd/state.db>
    1200  1700000000.001400 pwrite64(4</var/lib/svcd/state.db>, "\\0\\0\\0\\1", 4, 0) = 4
    1200  1700000000.001500 socket(AF_UNIX, SOCK_STREAM|SOCK_CLOEXEC|SOCK_NONBLOCK, 0) = 5<UNIX-STREAM:[40001]>
    1200  1700000000.001600 connect(5<UNIX-STREAM:[40001]>, {sa_family=AF_UNIX, sun_path="/run/dbus/system_bus_socket"}, 110) = 0
    1200  1700000000.001700 socket(AF_INET6, SOCK_STREAM|SOCK_CLOEXEC, IPPROTO_TCP) = 6<TCPv6:[40002]>
    1200  1700000000.001800 bind(6<TCPv6:[40002]>, {sa_family=AF_INET6, sin6_port=htons(8080), sin6_flowinfo=htonl(0), inet_pton(AF_INET6, "::", &sin6_addr), sin6_scope_id=0}, 28) = 0
    1200  1700000000.001900 listen(6<TCPv6:[40002]>, 128) = 0
    1200  1700000000.002000 clone(child_stack=0x7f6b1b7fefb0, flags=CLONE_VM|CLONE_FS|CLONE_FILES|CLONE_SIGHAND|CLONE_THREAD|CLONE_SYSVSEM|CLONE_SETTLS|CLONE_PARENT_SETTID|CLONE_CHILD_CLEARTID, parent_tid=[1201], tls=0x7f6b1b7ff6c0, child_tidptr=0x7f6b1b7ff990) = 1201
    1201  1700000000.002100 openat(AT_FDCWD, "/proc/1201/stat", O_RDONLY) = 7</proc/1200/task/1201/stat>
    1201  1700000000.002200 read(7</proc/1200/task/1201/stat>, "1201 (svcd) S 1 1200", 1024) = 20
    1200  1700000000.002300 epoll_wait(8<anon_inode:[eventpoll]>,  <unfinished ...>
    1201  1700000000.002400 write(4</var/lib/svcd/state.db>, "ok", 2) = 2
    1200  1700000000.002500 <... epoll_wait resumed>[], 16, 1000) = 0
    1201  1700000000.002600 exit(0) = ?
    1201  1700000000.002700 +++ exited with 0 +++
    1200  1700000000.002800 exit_group(0) = ?
    1200  1700000000.002900 +++ exited with 0 +++
"""

_RANDOM_SYSCALLS = (
    "read", "write", "openat", "close", "mmap", "mprotect", "futex", "socket", "connect", "bind", "clone3",
    "setuid", "mount", "ptrace", "sethostname", "clock_settime", "init_module", "syslog", "personality",
    "perf_event_open", "io_uring_setup", "brand_new_call", "syscall_0x1b6",
)
_RANDOM_PATHS = (
    "/etc/svc.conf", "/var/lib/svc/db", "/var/lib/svc", "/tmp/svc.sock", "/tmp", "/home/alice/.cache/x",
    "/root/.profile", "/dev/null", "/dev/sda", "/dev/kmsg", "/dev/rtc0", "/proc/self/status",
    "/proc/[pid]/cmdline", "/proc/meminfo", "/sys/fs/cgroup/svc/memory.max", "/proc/sys/net/core/somaxconn",
    "/usr/lib/modules/6.1/modules.dep", "/srv", "/opt/svc/data/a", "/opt/svc/data/b", "/run/user/1000/bus",
    "/", "/usr/bin/svc",
)
_RANDOM_SOCKETS = (
    SocketSpec("AF_UNIX", "SOCK_STREAM", "0"),
    SocketSpec("AF_INET", "SOCK_STREAM", "IPPROTO_TCP"),
    SocketSpec("AF_INET6", "SOCK_DGRAM", "IPPROTO_UDP"),
    SocketSpec("AF_NETLINK", "SOCK_RAW", "NETLINK_ROUTE"),
    SocketSpec("AF_PACKET", "SOCK_RAW", "0"),
)
_RANDOM_BINDS = (BindSpec("AF_INET", "tcp", 80), BindSpec("AF_INET6", "udp", 5353), BindSpec("AF_INET", "any", 9))
_RANDOM_CAPS = ("CAP_NET_BIND_SERVICE", "CAP_SETUID", "CAP_SYS_ADMIN", "CAP_SYS_TIME", "CAP_MKNOD", "CAP_SYSLOG")
_RANDOM_NAMESPACES = ("mnt", "net", "user", "time")
_RANDOM_FLAGS = (
    "ptrace", "personality", "write-execute", "realtime", "suid-sgid", "suid-exec", "proc-foreign",
    "proc-listing", "proc-non-pid", "abstract-unix", "non-native-arch", "kernel-memory", "unresolved-path",
    "unresolved-write",
)
_ACCESSES = (Access.READ, Access.READ | Access.EXEC, Access.WRITE, Access.READ | Access.WRITE, Access.CREATE,
             Access.WRITE | Access.CREATE)


def _sample(rng: random.Random, population, max_k: int):
    return rng.sample(population, rng.randint(0, min(max_k, len(population))))


def random_profile(rng: random.Random) -> BehavioralProfile:
    syscalls = set(_sample(rng, _RANDOM_SYSCALLS, 8))
    unknown = {s for s in syscalls if s in ("brand_new_call", "syscall_0x1b6")}
    return BehavioralProfile(
        syscalls=syscalls,
        unknown_syscalls=unknown,
        paths={p: rng.choice(_ACCESSES) for p in _sample(rng, _RANDOM_PATHS, 6)},
        sockets=_sample(rng, _RANDOM_SOCKETS, 3),
        bind_ports=_sample(rng, _RANDOM_BINDS, 2),
        capabilities=_sample(rng, _RANDOM_CAPS, 2),
        namespaces=_sample(rng, _RANDOM_NAMESPACES, 2),
        flags=_sample(rng, _RANDOM_FLAGS, 3),
    )


def fake_strace(trace_text: str, returncode: int = 0, calls: Optional[list] = None):
    """Stand-in for subprocess.call that writes `trace_text` where strace's -o points."""
    def _call(cmd):
        if calls is not None:
            calls.append(cmd)
        out = cmd[cmd.index("-o") + 1]
        with open(out, "w") as f:
            f.write("\n".join(trace_lines(trace_text)) + "\n")
        return returncode

    return _call
