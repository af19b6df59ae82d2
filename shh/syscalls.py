from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, Set, Tuple

# Syscall names strace may print on Linux (x86_64 table first, then the
# 32-bit / time64 / other-arch names that show up with multi-arch tracing).
_X86_64 = """
read write open close stat fstat lstat poll lseek mmap mprotect munmap brk
rt_sigaction rt_sigprocmask rt_sigreturn ioctl pread64 pwrite64 readv writev
access pipe select sched_yield mremap msync mincore madvise shmget shmat shmctl
dup dup2 pause nanosleep getitimer alarm setitimer getpid sendfile socket
connect accept sendto recvfrom sendmsg recvmsg shutdown bind listen getsockname
getpeername socketpair setsockopt getsockopt clone fork vfork execve exit wait4
kill uname semget semop semctl shmdt msgget msgsnd msgrcv msgctl fcntl flock
fsync fdatasync truncate ftruncate getdents getcwd chdir fchdir rename mkdir
rmdir creat link unlink symlink readlink chmod fchmod chown fchown lchown umask
gettimeofday getrlimit getrusage sysinfo times ptrace getuid syslog getgid
setuid setgid geteuid getegid setpgid getppid getpgrp setsid setreuid setregid
getgroups setgroups setresuid getresuid setresgid getresgid getpgid setfsuid
setfsgid getsid capget capset rt_sigpending rt_sigtimedwait rt_sigqueueinfo
rt_sigsuspend sigaltstack utime mknod uselib personality ustat statfs fstatfs
sysfs getpriority setpriority sched_setparam sched_getparam sched_setscheduler
sched_getscheduler sched_get_priority_max sched_get_priority_min
sched_rr_get_interval mlock munlock mlockall munlockall vhangup modify_ldt
pivot_root _sysctl prctl arch_prctl adjtimex setrlimit chroot sync acct
settimeofday mount umount2 swapon swapoff reboot sethostname setdomainname iopl
ioperm create_module init_module delete_module get_kernel_syms query_module
quotactl nfsservctl getpmsg putpmsg afs_syscall tuxcall security gettid
readahead setxattr lsetxattr fsetxattr getxattr lgetxattr fgetxattr listxattr
llistxattr flistxattr removexattr lremovexattr fremovexattr tkill time futex
sched_setaffinity sched_getaffinity set_thread_area io_setup io_destroy
io_getevents io_submit io_cancel get_thread_area lookup_dcookie epoll_create
epoll_ctl_old epoll_wait_old remap_file_pages getdents64 set_tid_address
restart_syscall semtimedop fadvise64 timer_create timer_settime timer_gettime
timer_getoverrun timer_delete clock_settime clock_gettime clock_getres
clock_nanosleep exit_group epoll_wait epoll_ctl tgkill utimes vserver mbind
set_mempolicy get_mempolicy mq_open mq_unlink mq_timedsend mq_timedreceive
mq_notify mq_getsetattr kexec_load waitid add_key request_key keyctl ioprio_set
ioprio_get inotify_init inotify_add_watch inotify_rm_watch migrate_pages openat
mkdirat mknodat fchownat futimesat newfstatat unlinkat renameat linkat
symlinkat readlinkat fchmodat faccessat pselect6 ppoll unshare set_robust_list
get_robust_list splice tee sync_file_range vmsplice move_pages utimensat
epoll_pwait signalfd timerfd_create eventfd fallocate timerfd_settime
timerfd_gettime accept4 signalfd4 eventfd2 epoll_create1 dup3 pipe2
inotify_init1 preadv pwritev rt_tgsigqueueinfo perf_event_open recvmmsg
fanotify_init fanotify_mark prlimit64 name_to_handle_at open_by_handle_at
clock_adjtime syncfs sendmmsg setns getcpu process_vm_readv process_vm_writev
kcmp finit_module sched_setattr sched_getattr renameat2 seccomp getrandom
memfd_create kexec_file_load bpf execveat userfaultfd membarrier mlock2
copy_file_range preadv2 pwritev2 pkey_mprotect pkey_alloc pkey_free statx
io_pgetevents rseq pidfd_send_signal io_uring_setup io_uring_enter
io_uring_register open_tree move_mount fsopen fsconfig fsmount fspick
pidfd_open clone3 close_range openat2 pidfd_getfd faccessat2 process_madvise
epoll_pwait2 mount_setattr quotactl_fd landlock_create_ruleset
landlock_add_rule landlock_restrict_self memfd_secret process_mrelease
futex_waitv set_mempolicy_home_node cachestat fchmodat2 map_shadow_stack
futex_wake futex_wait futex_requeue statmount listmount lsm_get_self_attr
lsm_set_self_attr lsm_list_modules mseal setxattrat getxattrat listxattrat
removexattrat
"""

_OTHER_ARCHES = """
_llseek _newselect stat64 fstat64 lstat64 fstatat64 mmap2 fcntl64 truncate64
ftruncate64 sendfile64 statfs64 fstatfs64 getuid32 getgid32 geteuid32
getegid32 setuid32 setgid32 setreuid32 setregid32 setresuid32 getresuid32
setresgid32 getresgid32 setfsuid32 setfsgid32 getgroups32 setgroups32 chown32
fchown32 lchown32 socketcall ipc sigreturn sigaction sigprocmask sigsuspend
sigpending signal waitpid oldstat oldfstat oldlstat olduname oldolduname
readdir nice stime sgetmask ssetmask umount ugetrlimit fadvise64_64
arm_fadvise64_64 sync_file_range2 arm_sync_file_range cacheflush set_tls
breakpoint riscv_flush_icache riscv_hwprobe recv send vm86 vm86old
subpage_prot switch_endian swapcontext sys_debug_setcontext rtas
s390_runtime_instr s390_pci_mmio_read s390_pci_mmio_write pciconfig_iobase
pciconfig_read pciconfig_write bdflush break ftime gtty idle lock mpx prof
profil stty ulimit clock_gettime64 clock_settime64 clock_adjtime64
clock_getres_time64 clock_nanosleep_time64 timer_gettime64 timer_settime64
timerfd_gettime64 timerfd_settime64 utimensat_time64 pselect6_time64
ppoll_time64 io_pgetevents_time64 recvmmsg_time64 mq_timedsend_time64
mq_timedreceive_time64 semtimedop_time64 rt_sigtimedwait_time64 futex_time64
sched_rr_get_interval_time64
"""

KNOWN_SYSCALLS: FrozenSet[str] = frozenset(_X86_64.split()) | frozenset(_OTHER_ARCHES.split())

# systemd SystemCallFilter= groups, in the order systemd itself lists them.
# Entries starting with '@' reference another group.
_GROUP_DEFINITIONS: Tuple[Tuple[str, str], ...] = (
    ("@default", """
        arch_prctl brk cacheflush clock_getres clock_getres_time64 clock_gettime
        clock_gettime64 clock_nanosleep clock_nanosleep_time64 execve exit
        exit_group futex futex_time64 futex_waitv get_robust_list
        get_thread_area getegid getegid32 geteuid geteuid32 getgid getgid32
        getgroups getgroups32 getpgid getpgrp getpid getppid getrandom
        getresgid getresgid32 getresuid getresuid32 getrlimit getsid gettid
        gettimeofday getuid getuid32 membarrier mmap mmap2 mprotect munmap
        nanosleep pause prlimit64 restart_syscall riscv_flush_icache
        riscv_hwprobe rseq rt_sigreturn sched_getaffinity sched_yield
        set_robust_list set_thread_area set_tid_address set_tls sigreturn time
        ugetrlimit
    """),
    ("@aio", """
        io_cancel io_destroy io_getevents io_pgetevents io_pgetevents_time64
        io_setup io_submit io_uring_enter io_uring_register io_uring_setup
    """),
    ("@basic-io", """
        _llseek close close_range dup dup2 dup3 lseek pread64 preadv preadv2
        pwrite64 pwritev pwritev2 read readv write writev
    """),
    ("@chown", """
        chown chown32 fchown fchown32 fchownat lchown lchown32
    """),
    ("@clock", """
        adjtimex clock_adjtime clock_adjtime64 clock_settime clock_settime64
        settimeofday
    """),
    ("@cpu-emulation", """
        modify_ldt subpage_prot switch_endian vm86 vm86old
    """),
    ("@debug", """
        lookup_dcookie perf_event_open pidfd_getfd ptrace rtas
        s390_runtime_instr sys_debug_setcontext
    """),
    ("@file-system", """
        access chdir chmod close creat faccessat faccessat2 fallocate fchdir
        fchmod fchmodat fchmodat2 fcntl fcntl64 fgetxattr flistxattr
        fremovexattr fsetxattr fstat fstat64 fstatat64 fstatfs fstatfs64
        ftruncate ftruncate64 futimesat getcwd getdents getdents64 getxattr
        inotify_add_watch inotify_init inotify_init1 inotify_rm_watch
        lgetxattr link linkat listxattr llistxattr lremovexattr lsetxattr
        lstat lstat64 mkdir mkdirat mknod mknodat newfstatat oldfstat oldlstat
        oldstat open openat openat2 readlink readlinkat removexattr rename
        renameat renameat2 rmdir setxattr stat stat64 statfs statfs64 statx
        symlink symlinkat truncate truncate64 unlink unlinkat utime utimensat
        utimensat_time64 utimes
    """),
    ("@io-event", """
        _newselect epoll_create epoll_create1 epoll_ctl epoll_ctl_old
        epoll_pwait epoll_pwait2 epoll_wait epoll_wait_old eventfd eventfd2
        poll ppoll ppoll_time64 pselect6 pselect6_time64 select
    """),
    ("@ipc", """
        ipc memfd_create mq_getsetattr mq_notify mq_open mq_timedreceive
        mq_timedreceive_time64 mq_timedsend mq_timedsend_time64 mq_unlink
        msgctl msgget msgrcv msgsnd pipe pipe2 process_madvise
        process_vm_readv process_vm_writev semctl semget semop semtimedop
        semtimedop_time64 shmat shmctl shmdt shmget
    """),
    ("@keyring", """
        add_key keyctl request_key
    """),
    ("@memlock", """
        mlock mlock2 mlockall munlock munlockall
    """),
    ("@module", """
        delete_module finit_module init_module
    """),
    ("@mount", """
        chroot fsconfig fsmount fsopen fspick mount mount_setattr move_mount
        open_tree pivot_root umount umount2
    """),
    ("@network-io", """
        accept accept4 bind connect getpeername getsockname getsockopt listen
        recv recvfrom recvmmsg recvmmsg_time64 recvmsg send sendmmsg sendmsg
        sendto setsockopt shutdown socket socketcall socketpair
    """),
    ("@obsolete", """
        _sysctl afs_syscall bdflush break create_module ftime get_kernel_syms
        getpmsg gtty idle lock mpx prof profil putpmsg query_module security
        sgetmask ssetmask stime stty sysfs tuxcall ulimit uselib ustat vserver
    """),
    ("@pkey", """
        pkey_alloc pkey_free pkey_mprotect
    """),
    ("@privileged", """
        @chown @clock @module @raw-io @reboot @swap _sysctl acct bpf capset
        chroot fanotify_init fanotify_mark nfsservctl open_by_handle_at
        pivot_root quotactl quotactl_fd setdomainname setfsuid setfsuid32
        setgroups setgroups32 sethostname setresuid setresuid32 setreuid
        setreuid32 setuid setuid32 vhangup
    """),
    ("@process", """
        capget clone clone3 execveat fork getrusage kill pidfd_open
        pidfd_send_signal prctl rt_sigqueueinfo rt_tgsigqueueinfo setns
        swapcontext tgkill times tkill unshare vfork wait4 waitid waitpid
    """),
    ("@raw-io", """
        ioperm iopl pciconfig_iobase pciconfig_read pciconfig_write
        s390_pci_mmio_read s390_pci_mmio_write
    """),
    ("@reboot", """
        kexec_file_load kexec_load reboot
    """),
    ("@resources", """
        ioprio_set mbind migrate_pages move_pages nice sched_setaffinity
        sched_setattr sched_setparam sched_setscheduler set_mempolicy
        set_mempolicy_home_node setpriority setrlimit
    """),
    ("@sandbox", """
        landlock_add_rule landlock_create_ruleset landlock_restrict_self
        seccomp
    """),
    ("@setuid", """
        setgid setgid32 setgroups setgroups32 setregid setregid32 setresgid
        setresgid32 setresuid setresuid32 setreuid setreuid32 setuid setuid32
    """),
    ("@signal", """
        rt_sigaction rt_sigpending rt_sigprocmask rt_sigsuspend
        rt_sigtimedwait rt_sigtimedwait_time64 sigaction sigaltstack signal
        signalfd signalfd4 sigpending sigprocmask sigsuspend
    """),
    ("@swap", """
        swapoff swapon
    """),
    ("@sync", """
        fdatasync fsync msync sync sync_file_range sync_file_range2 syncfs
    """),
    ("@system-service", """
        @aio @basic-io @chown @default @file-system @io-event @ipc @keyring
        @memlock @network-io @process @resources @setuid @signal @sync @timer
        arm_fadvise64_64 capget capset copy_file_range fadvise64 fadvise64_64
        flock get_mempolicy getcpu getpriority ioctl ioprio_get kcmp madvise
        mremap name_to_handle_at oldolduname olduname personality readahead
        readdir remap_file_pages sched_get_priority_max sched_get_priority_min
        sched_getattr sched_getparam sched_getscheduler sched_rr_get_interval
        sched_rr_get_interval_time64 sched_yield sendfile sendfile64 setfsgid
        setfsgid32 setfsuid setfsuid32 setpgid setsid splice sysinfo tee umask
        uname userfaultfd vmsplice
    """),
    ("@timer", """
        alarm getitimer setitimer timer_create timer_delete timer_getoverrun
        timer_gettime timer_gettime64 timer_settime timer_settime64
        timerfd_create timerfd_gettime timerfd_gettime64 timerfd_settime
        timerfd_settime64 times
    """),
)


def _expand(name: str, raw: Dict[str, Tuple[str, ...]], seen: Set[str]) -> Set[str]:
    out: Set[str] = set()
    if name in seen:
        return out
    seen.add(name)
    for entry in raw[name]:
        if entry.startswith("@"):
            out |= _expand(entry, raw, seen)
        else:
            out.add(entry)
    return out


def expand_groups(definitions: Iterable[Tuple[str, str]]) -> Tuple[Tuple[str, FrozenSet[str]], ...]:
    """Resolve '@group' references, keeping the definition order."""
    definitions = tuple(definitions)
    raw = {name: tuple(body.split()) for name, body in definitions}
    return tuple((name, frozenset(_expand(name, raw, set()))) for name, _ in definitions)


SYSCALL_GROUPS: Tuple[Tuple[str, FrozenSet[str]], ...] = expand_groups(_GROUP_DEFINITIONS)
SYSCALL_GROUP_ORDER: Tuple[str, ...] = tuple(name for name, _ in SYSCALL_GROUPS)

# Calls the service manager's own filter needs for any process to terminate.
BASE_SYSCALLS: FrozenSet[str] = frozenset({"exit", "exit_group", "rt_sigreturn", "sigreturn", "restart_syscall"})

SPAWN_SYSCALLS: FrozenSet[str] = frozenset({"fork", "vfork", "clone", "clone2", "clone3"})
EXEC_SYSCALLS: FrozenSet[str] = frozenset({"execve", "execveat"})


_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
# strace prints numbers it has no name for as syscall_0x1b6 / syscall_438
_ANONYMOUS_RE = re.compile(r"^syscall_(?:0x[0-9a-f]+|\d+)$")


def is_nameable(name: str) -> bool:
    """Whether a SystemCallFilter= entry can name this syscall."""
    if name in KNOWN_SYSCALLS:
        return True
    return bool(_NAME_RE.match(name)) and not _ANONYMOUS_RE.match(name)
