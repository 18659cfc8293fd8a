"""
Child-side launcher, run as a plain script by the host interpreter:

    python -I -B launch.py --cpu 11 --as 134217728 ... -- python3 main.py

Joins the cgroup leaf, makes itself a child subreaper and forks. The child
loads the seccomp deny-list, applies rlimits and execs the real command, so
every limit is in place before the first instruction of untrusted code and
nothing runs in a preexec_fn of the (threaded) host. The launcher stays as
the root of the tree: daemonized descendants re-parent to it whatever
session they moved to, and once the program exits it kills and reaps all of
them before exiting with the program's status. Standard library only,
except the optional seccomp binding.
"""
from __future__ import annotations
import argparse
import errno
import os
import resource
import signal
import sys

TAG = "[coderunner-launch]"
PR_SET_CHILD_SUBREAPER = 36


def _set(res: int, value: int) -> None:
    _, hard = resource.getrlimit(res)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(res, (value, value))


def apply_rlimits(cpu_seconds: int, memory_bytes: int | None, nofile: int,
                  fsize_bytes: int, nproc: int | None) -> None:
    """CPU time, address space, open files, file size, core dumps, process count."""
    _set(resource.RLIMIT_CPU, cpu_seconds)
    if memory_bytes:
        _set(resource.RLIMIT_AS, memory_bytes)
    _set(resource.RLIMIT_NOFILE, nofile)
    _set(resource.RLIMIT_FSIZE, fsize_bytes)
    _set(resource.RLIMIT_CORE, 0)
    if nproc:
        _set(resource.RLIMIT_NPROC, nproc)


def join_cgroup(leaf: str) -> None:
    with open(os.path.join(leaf, "cgroup.procs"), "w") as f:
        f.write(str(os.getpid()))


def load_seccomp(deny: list[str], action: str) -> None:
    import pyseccomp as sc  # optional extra: coderunner[seccomp]

    f = sc.SyscallFilter(sc.ALLOW)
    act = sc.KILL_PROCESS if action == "kill" else sc.ERRNO(errno.EPERM)
    for name in deny:
        try:
            f.add_rule(act, name)
        except Exception as e:
            # syscall missing on this architecture
            print(f"{TAG} seccomp: skipping {name}: {e}", file=sys.stderr)
    f.load()


def _parse(argv: list[str]):
    if "--" not in argv:
        raise SystemExit(f"{TAG} usage: launch.py [options] -- command ...")
    split = argv.index("--")
    opts, cmd = argv[:split], argv[split + 1:]
    if not cmd:
        raise SystemExit(f"{TAG} missing command")

    ap = argparse.ArgumentParser(prog="launch.py")
    ap.add_argument("--cpu", type=int, required=True)
    ap.add_argument("--as", dest="address_space", type=int)
    ap.add_argument("--nofile", type=int, default=64)
    ap.add_argument("--fsize", type=int, default=10 * 1024 * 1024)
    ap.add_argument("--nproc", type=int)
    ap.add_argument("--cgroup")
    ap.add_argument("--deny", default="")
    ap.add_argument("--deny-action", choices=("errno", "kill"), default="errno")
    return ap.parse_args(opts), cmd


def become_subreaper() -> bool:
    """Orphaned descendants re-parent to us instead of init, whatever session they moved to."""
    import ctypes
    import ctypes.util

    libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
    if libc.prctl(PR_SET_CHILD_SUBREAPER, 1, 0, 0, 0) != 0:
        err = ctypes.get_errno()
        print(f"{TAG} prctl(PR_SET_CHILD_SUBREAPER) failed: {os.strerror(err)}", file=sys.stderr)
        return False
    return True


def children_of(pid: int) -> list[int]:
    out = []
    for entry in os.listdir("/proc"):
        if not entry.isdigit():
            continue
        try:
            with open(f"/proc/{entry}/stat", "rb") as f:
                stat = f.read()
        except OSError:
            continue
        # comm may hold spaces and parens; fields resume after the last ')'
        fields = stat[stat.rfind(b")") + 2:].split()
        if len(fields) > 1 and int(fields[1]) == pid:
            out.append(int(entry))
    return out


def reap_all() -> None:
    """SIGKILL and reap every child until none is left; killed children hand theirs to us."""
    me = os.getpid()
    if me == 1:
        # init of a pid namespace: the kernel kills the rest when we exit,
        # and /proc still shows the outer pids
        return
    while True:
        kids = children_of(me)
        if not kids:
            return
        for pid in kids:
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        for pid in kids:
            try:
                os.waitpid(pid, 0)
            except ChildProcessError:
                pass


def exit_like(status: int) -> None:
    """Leave with the program's own exit code or terminating signal."""
    if os.WIFSIGNALED(status):
        sig = os.WTERMSIG(status)
        if sig not in (signal.SIGKILL, signal.SIGSTOP):
            signal.signal(sig, signal.SIG_DFL)
        os.kill(os.getpid(), sig)
        os._exit(128 + sig)
    os._exit(os.WEXITSTATUS(status))


def _exec_child(args, cmd: list[str]) -> None:
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    try:
        deny = [s for s in args.deny.split(",") if s]
        if deny:
            load_seccomp(deny, args.deny_action)
        apply_rlimits(args.cpu, args.address_space, args.nofile, args.fsize, args.nproc)
        os.execvp(cmd[0], cmd)
    except OSError as e:
        print(f"{TAG} cannot exec {cmd[0]}: {e}", file=sys.stderr)
    except Exception as e:
        # the forked child must never fall back into the launcher's own loop
        print(f"{TAG} setup failed: {e!r}", file=sys.stderr)
    os._exit(127)


def main(argv: list[str] | None = None) -> None:
    args, cmd = _parse(sys.argv[1:] if argv is None else argv)

    if args.cgroup:
        join_cgroup(args.cgroup)
    become_subreaper()
    # SIGTERM is for the program; we stay alive to hold and reap its orphans
    signal.signal(signal.SIGTERM, lambda signum, frame: None)
    _set(resource.RLIMIT_CORE, 0)

    child = os.fork()
    if child == 0:
        _exec_child(args, cmd)

    # only the program talks to the pipes
    devnull = os.open(os.devnull, os.O_RDWR)
    os.dup2(devnull, 0)
    os.dup2(devnull, 1)
    os.close(devnull)

    while True:
        pid, status = os.waitpid(-1, 0)
        if pid == child:
            break
    reap_all()
    exit_like(status)


if __name__ == "__main__":
    main()
