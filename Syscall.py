from Errors import MissingSyscall
from Int64 import Int

# FreeBSD numbering, shared by the PS4 kernel
FREEBSD_SYSCALLS = {
    'exit': 1,
    'fork': 2,
    'read': 3,
    'write': 4,
    'open': 5,
    'close': 6,
    'getpid': 20,
    'setuid': 23,
    'getuid': 24,
    'geteuid': 25,
    'kill': 37,
    'getppid': 39,
    'dup': 41,
    'pipe': 42,
    'getgid': 47,
    'ioctl': 54,
    'munmap': 73,
    'mprotect': 74,
    'dup2': 90,
    'fcntl': 92,
    'select': 93,
    'socket': 97,
    'connect': 98,
    'bind': 104,
    'setsockopt': 105,
    'listen': 106,
    'gettimeofday': 116,
    'getsockopt': 118,
    'sendto': 133,
    'socketpair': 135,
    'mkdir': 136,
    'sysctl': 202,
    'nanosleep': 240,
    'sched_yield': 331,
    'kqueue': 362,
    'kevent': 363,
    'mmap': 477,
    'thr_self': 432,
    'cpuset_getaffinity': 487,
    'cpuset_setaffinity': 488,
    'rtprio_thread': 466,
}

class SyscallTable(object):
    def __init__(self, numbers=None):
        if numbers is None:
            numbers = FREEBSD_SYSCALLS
        self._numbers = dict(numbers)

    def __getitem__(self, name):
        if isinstance(name, (int, Int)):
            return int(name)
        try:
            return self._numbers[name]
        except KeyError:
            raise MissingSyscall(name)

    def __contains__(self, name):
        return name in self._numbers

    def __len__(self):
        return len(self._numbers)

    def name_of(self, number):
        for name, num in self._numbers.items():
            if num == number:
                return name
        return None
