import pytest

from shh.catalog import (
    DENYABLE_CAPABILITIES,
    UNDETECTABLE_CAPABILITIES,
    Catalog,
    Directive,
    Level,
    capabilities_for,
    collapse_exceptions,
    default_catalog,
    exception_allowed,
    exception_root,
)
from shh.config import HardeningOptions
from shh.profile import Access, BehavioralProfile, BindSpec, SocketSpec
from shh.syscalls import SYSCALL_GROUPS
from tests.utils.traces import parse_text, random_profile, syscalls_of

OPTIONS = HardeningOptions()
AGGRESSIVE_ONLY = {"RestrictAddressFamilies", "SocketBindDeny", "CapabilityBoundingSet", "SystemCallFilter"}


@pytest.fixture
def catalog():
    return default_catalog(OPTIONS)


def safe(catalog, name, level, profile, **chosen):
    return catalog.predicate(name, level, profile, chosen)


# ------------------ Structure ---------------------


def test_default_catalog_order(catalog):
    names = catalog.names()
    assert names[0] == "ProtectSystem"
    assert names[-1] == "SystemCallFilter"
    assert AGGRESSIVE_ONLY <= set(names)
    assert len(names) == len(set(names)) == 25
    assert catalog.levels_of("ProtectSystem") == ["false", "true", "full", "strict"]
    assert catalog.levels_of("ProtectProc") == ["default", "noaccess", "invisible"]
    assert catalog.get("ProtectSystem").depends_on == ("PrivateTmp", "ProtectHome")


def test_groups_of(catalog):
    groups = catalog.groups_of("SystemCallFilter")
    assert list(groups) == [name for name, _ in SYSCALL_GROUPS]
    assert {"read", "write", "exit_group"} <= groups["@system-service"]
    assert catalog.groups_of("ProtectSystem") == {}
    assert catalog.groups_of("NoSuchDirective") == {}


def test_safe_mode_drops_aggressive_directives(caplog):
    with caplog.at_level("WARNING", logger="catalog"):
        cat = default_catalog(HardeningOptions(mode="safe", disabled_directives={"SystemCallFilter"}))
    assert not AGGRESSIVE_ONLY & set(cat.names())
    assert "ProtectSystem" in cat
    assert not caplog.records


def test_disabled_directives(caplog):
    with caplog.at_level("WARNING", logger="catalog"):
        cat = default_catalog(HardeningOptions(disabled_directives={"PrivateNetwork", "Bogus"}))
    assert "PrivateNetwork" not in cat
    assert "Bogus" in caplog.text


def test_directive_needs_levels():
    with pytest.raises(ValueError):
        Directive("Empty", "no levels", ())


def test_duplicate_directive():
    d = Directive("A", "a", (Level("off", ""), Level("on", "")))
    with pytest.raises(ValueError):
        Catalog([d, d])


def test_subset_and_without(catalog):
    sub = catalog.subset(["SystemCallFilter", "ProtectSystem"])
    assert sub.names() == ["ProtectSystem", "SystemCallFilter"]
    assert "ProtectSystem" not in catalog.without(["ProtectSystem"])
    assert len(catalog.without(["ProtectSystem"])) == len(catalog) - 1


def test_listing(catalog):
    listing = catalog.listing()
    assert listing[0]["name"] == "ProtectSystem"
    assert [lv["name"] for lv in listing[0]["levels"]] == ["false", "true", "full", "strict"]
    assert {entry["name"] for entry in listing if entry["aggressive"]} == AGGRESSIVE_ONLY


def test_unknown_names_and_levels(catalog):
    p = BehavioralProfile()
    assert not catalog.predicate("NoSuchDirective", "true", p, {})
    assert not catalog.predicate("PrivateTmp", "sometimes", p, {})
    assert catalog.render("PrivateTmp", "false", p, {}) == []
    assert catalog.render("NoSuchDirective", "true", p, {}) == []


def test_conflicts_are_symmetric():
    a = Directive("A", "a", (Level("off", ""), Level("on", "")), conflicts_with=("B",))
    b = Directive("B", "b", (Level("off", ""), Level("on", "")))
    cat = Catalog([a, b])
    p = BehavioralProfile()
    assert cat.conflicts_of("B") == {"A"}
    assert cat.predicate("A", "on", p, {"B": "off"})
    assert not cat.predicate("A", "on", p, {"B": "on"})
    assert not cat.predicate("B", "on", p, {"A": "on"})
    # the default level never conflicts
    assert cat.predicate("B", "off", p, {"A": "on"})


def test_default_level_always_safe(catalog, rng):
    for _ in range(20):
        p = random_profile(rng)
        for d in catalog:
            assert catalog.predicate(d.name, d.default, p, {})


# ------------------ Filesystem ---------------------


def test_exception_root():
    assert exception_root("/var/lib/svc/db", Access.WRITE) == "/var/lib/svc/db"
    assert exception_root("/var/lib/svc/db", Access.WRITE | Access.CREATE) == "/var/lib/svc"
    assert exception_root("/x", Access.CREATE) == "/"


@pytest.mark.parametrize(
    "root, allowed",
    [("/var/lib/svc", True), ("/var/lib", True), ("/tmp", True), ("/srv", True), ("/var", False),
     ("/etc", False), ("/", False), ("relative/dir", False)],
)
def test_exception_allowed(root, allowed):
    assert exception_allowed(root, OPTIONS) is allowed


def test_exceptions_disabled():
    assert not exception_allowed("/var/lib/svc", HardeningOptions(filesystem_exceptions=False))


def test_collapse_exceptions():
    assert collapse_exceptions(["/var/lib/a/x", "/var/lib/a", "/srv/b"], 0, OPTIONS) == ["/srv/b", "/var/lib/a"]
    assert collapse_exceptions(["/opt/svc/data/a", "/opt/svc/data/b", "/srv"], 2, OPTIONS) == \
        ["/opt/svc/data", "/srv"]
    # /var is never an exception itself, so its children stay
    assert collapse_exceptions(["/var/a", "/var/b"], 2, OPTIONS) == ["/var/a", "/var/b"]


def test_protect_system_levels(catalog):
    p = BehavioralProfile(paths={"/var/lib/svc": Access.READ | Access.WRITE, "/usr/bin/svc": Access.READ})
    for level in ("true", "full", "strict"):
        assert safe(catalog, "ProtectSystem", level, p)
    assert catalog.render("ProtectSystem", "strict", p, {}) == [
        ("ProtectSystem", "strict"), ("ReadWritePaths", "-/var/lib/svc"),
    ]
    assert catalog.render("ProtectSystem", "full", p, {}) == [("ProtectSystem", "full")]


def test_protect_system_unexceptionable_write(catalog):
    p = BehavioralProfile(paths={"/newfile": Access.CREATE, "/etc/svc.conf": Access.WRITE})
    assert safe(catalog, "ProtectSystem", "true", p)
    assert safe(catalog, "ProtectSystem", "full", p)
    assert not safe(catalog, "ProtectSystem", "strict", p)
    assert catalog.render("ProtectSystem", "full", p, {}) == [
        ("ProtectSystem", "full"), ("ReadWritePaths", "-/etc/svc.conf"),
    ]


def test_protect_system_follows_private_tmp_and_home(catalog):
    p = BehavioralProfile(paths={"/tmp/svc.sock": Access.CREATE, "/home/alice/out": Access.WRITE})
    assert catalog.render("ProtectSystem", "strict", p, {}) == [
        ("ProtectSystem", "strict"), ("ReadWritePaths", "-/home/alice/out"), ("ReadWritePaths", "-/tmp"),
    ]
    chosen = {"PrivateTmp": "true", "ProtectHome": "read-only"}
    assert catalog.render("ProtectSystem", "strict", p, chosen) == [("ProtectSystem", "strict")]


def test_protect_system_api_trees_need_no_exception(catalog):
    p = BehavioralProfile(paths={"/dev/null": Access.WRITE, "/proc/self/oom_score_adj": Access.WRITE})
    assert catalog.render("ProtectSystem", "strict", p, {}) == [("ProtectSystem", "strict")]


def test_unresolved_paths_keep_filesystem_protection_permissive(catalog):
    unknown_write = BehavioralProfile(flags={"unresolved-path", "unresolved-write"})
    for level in ("true", "full", "strict"):
        assert not safe(catalog, "ProtectSystem", level, unknown_write)
    for level in ("read-only", "tmpfs", "true"):
        assert not safe(catalog, "ProtectHome", level, unknown_write)

    unknown_read = BehavioralProfile(flags={"unresolved-path"})
    assert safe(catalog, "ProtectSystem", "strict", unknown_read)
    assert safe(catalog, "ProtectHome", "read-only", unknown_read)
    assert not safe(catalog, "ProtectHome", "tmpfs", unknown_read)


def test_protect_home(catalog):
    reads = BehavioralProfile(paths={"/home/alice/.config/x": Access.READ})
    assert safe(catalog, "ProtectHome", "read-only", reads)
    assert not safe(catalog, "ProtectHome", "tmpfs", reads)
    assert not safe(catalog, "ProtectHome", "true", reads)

    listing = BehavioralProfile(paths={"/home": Access.READ})
    assert safe(catalog, "ProtectHome", "tmpfs", listing)
    assert not safe(catalog, "ProtectHome", "true", listing)

    writes = BehavioralProfile(paths={"/root/.cache/x": Access.WRITE | Access.CREATE})
    assert catalog.render("ProtectHome", "read-only", writes, {}) == [
        ("ProtectHome", "read-only"), ("ReadWritePaths", "-/root/.cache"),
    ]


@pytest.mark.parametrize(
    "paths, expected",
    [
        ({"/tmp/svc.sock": Access.CREATE}, True),
        ({"/tmp/dir": Access.CREATE, "/tmp/dir/file": Access.WRITE}, True),
        ({"/tmp": Access.READ}, True),
        ({"/tmp/shared": Access.READ}, False),
        ({"/var/tmp/cache/x": Access.WRITE}, False),
    ],
)
def test_private_tmp(catalog, paths, expected):
    assert safe(catalog, "PrivateTmp", "true", BehavioralProfile(paths=paths)) is expected


@pytest.mark.parametrize(
    "profile, expected",
    [
        (BehavioralProfile(paths={"/dev/null": Access.WRITE, "/dev/pts/0": Access.READ}), True),
        (BehavioralProfile(paths={"/dev/sda": Access.READ}), False),
        (BehavioralProfile(capabilities={"CAP_MKNOD"}), False),
        (BehavioralProfile(syscalls={"ioperm"}), False),
    ],
)
def test_private_devices(catalog, profile, expected):
    assert safe(catalog, "PrivateDevices", "true", profile) is expected


def test_private_network(catalog):
    unix = BehavioralProfile(sockets={SocketSpec("AF_UNIX", "SOCK_STREAM", "0")})
    assert safe(catalog, "PrivateNetwork", "true", unix)
    assert not safe(catalog, "PrivateNetwork", "true", BehavioralProfile(flags={"abstract-unix"}))
    inet = BehavioralProfile(sockets={SocketSpec("AF_INET")})
    assert not safe(catalog, "PrivateNetwork", "true", inet)


# ------------------ Kernel and process ---------------------


@pytest.mark.parametrize(
    "name, unsafe",
    [
        ("PrivateMounts", BehavioralProfile(syscalls={"mount"})),
        ("ProtectKernelTunables", BehavioralProfile(paths={"/proc/sys/net/core/somaxconn": Access.WRITE})),
        ("ProtectKernelTunables", BehavioralProfile(flags={"kernel-memory"})),
        ("ProtectKernelModules", BehavioralProfile(syscalls={"finit_module"})),
        ("ProtectKernelModules", BehavioralProfile(paths={"/usr/lib/modules/6.1/modules.dep": Access.READ})),
        ("ProtectKernelLogs", BehavioralProfile(paths={"/dev/kmsg": Access.WRITE})),
        ("ProtectKernelLogs", BehavioralProfile(capabilities={"CAP_SYSLOG"})),
        ("ProtectControlGroups", BehavioralProfile(paths={"/sys/fs/cgroup/svc/memory.max": Access.WRITE})),
        ("ProtectClock", BehavioralProfile(syscalls={"clock_settime"})),
        ("ProtectClock", BehavioralProfile(paths={"/dev/rtc0": Access.READ})),
        ("ProtectHostname", BehavioralProfile(syscalls={"sethostname"})),
        ("MemoryDenyWriteExecute", BehavioralProfile(flags={"write-execute"})),
        ("LockPersonality", BehavioralProfile(flags={"personality"})),
        ("RestrictRealtime", BehavioralProfile(flags={"realtime"})),
        ("RestrictSUIDSGID", BehavioralProfile(flags={"suid-sgid"})),
        ("NoNewPrivileges", BehavioralProfile(flags={"suid-exec"})),
    ],
)
def test_boolean_directives(catalog, name, unsafe):
    assert safe(catalog, name, "true", BehavioralProfile())
    assert not safe(catalog, name, "true", unsafe)
    assert catalog.render(name, "true", BehavioralProfile(), {}) == [(name, "true")]


def test_kernel_tunables_ignore_cgroup_writes(catalog):
    p = BehavioralProfile(paths={"/sys/fs/cgroup/svc/memory.max": Access.WRITE, "/proc/sys/kernel/x": Access.READ})
    assert safe(catalog, "ProtectKernelTunables", "true", p)


def test_protect_proc(catalog):
    foreign = BehavioralProfile(flags={"proc-foreign"})
    listing = BehavioralProfile(flags={"proc-listing"})
    assert not safe(catalog, "ProtectProc", "noaccess", foreign)
    assert safe(catalog, "ProtectProc", "noaccess", listing)
    assert not safe(catalog, "ProtectProc", "invisible", listing)
    assert safe(catalog, "ProtectProc", "invisible", BehavioralProfile(flags={"proc-non-pid"}))
    assert not safe(catalog, "ProcSubset", "pid", BehavioralProfile(flags={"proc-non-pid"}))
    assert catalog.render("ProtectProc", "invisible", BehavioralProfile(), {}) == [("ProtectProc", "invisible")]


def test_system_call_architectures(catalog):
    assert safe(catalog, "SystemCallArchitectures", "native", BehavioralProfile())
    assert not safe(catalog, "SystemCallArchitectures", "native", BehavioralProfile(flags={"non-native-arch"}))


# ------------------ Network, namespaces, capabilities ---------------------


def test_restrict_address_families(catalog):
    none = BehavioralProfile()
    assert safe(catalog, "RestrictAddressFamilies", "none", none)
    assert catalog.render("RestrictAddressFamilies", "none", none, {}) == [("RestrictAddressFamilies", "none")]

    p = BehavioralProfile(sockets={SocketSpec("AF_UNIX"), SocketSpec("AF_INET", "SOCK_DGRAM", "IPPROTO_UDP")})
    assert not safe(catalog, "RestrictAddressFamilies", "none", p)
    assert safe(catalog, "RestrictAddressFamilies", "allowlist", p)
    assert catalog.render("RestrictAddressFamilies", "allowlist", p, {}) == [
        ("RestrictAddressFamilies", "AF_INET AF_UNIX"),
    ]
    odd = BehavioralProfile(sockets={SocketSpec("42")})
    assert not safe(catalog, "RestrictAddressFamilies", "allowlist", odd)


def test_socket_bind_deny(catalog):
    p = BehavioralProfile(bind_ports={BindSpec("AF_INET6", "tcp", 8080), BindSpec("AF_INET", "any", 9)})
    assert safe(catalog, "SocketBindDeny", "unused", p)
    assert catalog.render("SocketBindDeny", "unused", p, {}) == [("SocketBindDeny", "ipv6:udp")]
    assert len(catalog.render("SocketBindDeny", "unused", BehavioralProfile(), {})) == 4


def test_restrict_namespaces(catalog):
    p = BehavioralProfile(namespaces={"user", "net"})
    assert safe(catalog, "RestrictNamespaces", "allowlist", p)
    assert not safe(catalog, "RestrictNamespaces", "true", p)
    assert catalog.render("RestrictNamespaces", "allowlist", p, {}) == [("RestrictNamespaces", "net user")]
    # no RestrictNamespaces= name for the time namespace
    assert not safe(catalog, "RestrictNamespaces", "allowlist", BehavioralProfile(namespaces={"time"}))


def test_capability_bounding_set(catalog):
    [(key, value)] = catalog.render("CapabilityBoundingSet", "denylist", BehavioralProfile(), {})
    assert key == "CapabilityBoundingSet"
    assert value == "~" + " ".join(sorted(DENYABLE_CAPABILITIES))
    p = BehavioralProfile(capabilities={"CAP_SETUID", "CAP_NET_BIND_SERVICE"})
    assert safe(catalog, "CapabilityBoundingSet", "denylist", p)
    denied = catalog.render("CapabilityBoundingSet", "denylist", p, {})[0][1][1:].split()
    assert "CAP_SETUID" not in denied
    assert "CAP_NET_BIND_SERVICE" not in denied
    assert "CAP_SETGID" in denied


def test_capability_bounding_set_keeps_undetectable_capabilities(catalog):
    assert not UNDETECTABLE_CAPABILITIES & DENYABLE_CAPABILITIES
    value = catalog.render("CapabilityBoundingSet", "denylist", BehavioralProfile(), {})[0][1]
    for cap in UNDETECTABLE_CAPABILITIES:
        assert cap not in value.split()
    everything = BehavioralProfile(capabilities=set(DENYABLE_CAPABILITIES))
    assert not safe(catalog, "CapabilityBoundingSet", "denylist", everything)


def test_system_call_filter(catalog):
    assert catalog.get("SystemCallFilter").is_filter
    assert "exit_group" in catalog.get("SystemCallFilter").required_syscalls
    assert safe(catalog, "SystemCallFilter", "allowlist", BehavioralProfile(syscalls={"read"},
                                                                           unknown_syscalls={"brand_new_call"}))
    assert not safe(catalog, "SystemCallFilter", "allowlist", BehavioralProfile(unknown_syscalls={"syscall_0x1b6"}))
    assert catalog.render("SystemCallFilter", "allowlist", BehavioralProfile(), {}, value="@system-service") == [
        ("SystemCallFilter", "@system-service"), ("SystemCallErrorNumber", "EPERM"),
    ]


def test_system_call_filter_without_error_number():
    cat = default_catalog(HardeningOptions(syscall_error_number=None))
    assert cat.render("SystemCallFilter", "allowlist", BehavioralProfile(), {}, value="read") == [
        ("SystemCallFilter", "read"),
    ]


# ------------------ Capability rules ---------------------


@pytest.mark.parametrize(
    "line, expected",
    [
        ('1 mknod("/dev/x", S_IFCHR|0600, makedev(0x1, 0x3)) = 0', {"CAP_MKNOD"}),
        ('1 mknod("/tmp/fifo", S_IFIFO|0600) = 0', set()),
        ("1 ptrace(PTRACE_ATTACH, 77) = 0", {"CAP_SYS_PTRACE"}),
        ("1 ptrace(PTRACE_TRACEME) = 0", set()),
        ("1 clock_settime(CLOCK_REALTIME, {tv_sec=0, tv_nsec=0}) = 0", {"CAP_SYS_TIME"}),
        ("1 adjtimex({modes=0, offset=0}) = 0 (TIME_OK)", set()),
        ("1 adjtimex({modes=ADJ_OFFSET, offset=5}) = 0 (TIME_OK)", {"CAP_SYS_TIME"}),
        ("1 timerfd_create(CLOCK_BOOTTIME_ALARM, 0) = 3", {"CAP_WAKE_ALARM"}),
        ('1 setxattr("/f", "security.capability", "\\1", 1, 0) = 0', {"CAP_SYS_ADMIN"}),
        ('1 setxattr("/f", "user.note", "x", 1, 0) = 0', set()),
        ("1 unshare(CLONE_NEWNET) = 0", {"CAP_SYS_ADMIN"}),
        ("1 unshare(CLONE_NEWNET|CLONE_NEWUSER) = 0", set()),
        ("1 setpriority(PRIO_PROCESS, 0, -5) = -1 EACCES (Permission denied)", {"CAP_SYS_NICE"}),
        ("1 setpriority(PRIO_PROCESS, 0, 5) = 0", set()),
        ("1 mlockall(MCL_CURRENT|MCL_FUTURE) = 0", {"CAP_IPC_LOCK"}),
        ("1 setrlimit(RLIMIT_NOFILE, {rlim_cur=65536, rlim_max=65536}) = 0", {"CAP_SYS_RESOURCE"}),
        ("1 prlimit64(0, RLIMIT_NOFILE, NULL, {rlim_cur=1024, rlim_max=4096}) = 0", set()),
        ("1 kill(200, SIGTERM) = 0", {"CAP_KILL"}),
        ("1 setpriority(PRIO_PROCESS, 0, -5) = -1 EPERM (Operation not permitted)", {"CAP_SYS_NICE"}),
        ("1 socket(AF_NETLINK, SOCK_RAW, NETLINK_AUDIT) = 3", {"CAP_AUDIT_WRITE"}),
        ("1 socket(AF_INET, SOCK_RAW, IPPROTO_ICMP) = 3", {"CAP_NET_RAW"}),
        ("1 setsockopt(3, SOL_SOCKET, SO_MARK, [1], 4) = 0", {"CAP_NET_ADMIN"}),
    ],
)
def test_capability_rules(line, expected):
    [sc] = syscalls_of(parse_text(line))
    assert capabilities_for(sc) == expected
