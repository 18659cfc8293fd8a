from __future__ import annotations
import math
import os
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from ..core.models import Limits
from ..isolation.namespaces import wrap_with_namespaces
from ..isolation.seccomp import SeccompPolicy, load_policy
from ..logging import get_logger
from ..runners.base import Runner
from ..settings import Settings
from . import cgroups

LAUNCHER = Path(__file__).with_name("launch.py")
# passes over the tree before giving up on a process that keeps forking
SWEEP_ROUNDS = 20

log = get_logger(__name__)


@dataclass
class ProcessHandle:
    """A spawned run: the session leader, its cgroup leaf and every descendant seen so far."""
    popen: subprocess.Popen
    limits: Limits
    leaf: Optional[Path] = None
    seen: Dict[int, psutil.Process] = field(default_factory=dict)
    peak_rss: int = 0
    released: bool = False

    @property
    def pgid(self) -> int:
        # start_new_session=True: the child leads its own session and group
        return self.popen.pid


class ResourceLimiter:
    """
    Turns a time/memory budget into OS-level constraints and tears the whole
    process tree down when a budget is blown. Knows nothing about what the
    process runs.

    Memory is enforced by (strongest first) a cgroup v2 leaf with memory.max,
    RLIMIT_AS for interpreters that tolerate it, and a host-side watcher that
    sums the RSS of the process tree.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.seccomp: Optional[SeccompPolicy] = None
        if settings.seccomp_enabled:
            self.seccomp = load_policy(Path(settings.seccomp_policy))

    # ------------ descriptor ------------

    def plan(self, timeout_ms: int, max_memory: int, runner: Runner) -> Limits:
        s = self.settings
        return Limits(
            wall_timeout_ms=timeout_ms,
            memory_bytes=max_memory,
            # RLIMIT_CPU is a backstop; the wall clock fires first
            cpu_seconds=math.ceil(timeout_ms / 1000) + 1,
            address_space_bytes=max_memory if runner.supports_address_space_limit else None,
            nofile=s.nofile,
            fsize_bytes=s.fsize_bytes,
            nproc=s.nproc,
            kill_grace_ms=s.kill_grace_ms,
        )

    # ------------ spawn side ------------

    def open_leaf(self, run_id: str, limits: Limits) -> Optional[Path]:
        if not self.settings.cgroup_enabled:
            return None
        leaf = None
        try:
            leaf = cgroups.create_leaf(run_id, self.settings.cgroup_base)
            cgroups.set_limits(leaf, limits.memory_bytes, self.settings.pids_max)
            return leaf
        except (OSError, RuntimeError, ValueError) as e:
            log.warning("cgroup.unavailable", run_id=run_id, error=str(e))
            if leaf is not None:
                self.close_leaf(leaf)
            return None

    def close_leaf(self, leaf: Path) -> None:
        try:
            cgroups.teardown(leaf)
        except OSError as e:
            log.error("cgroup.teardown_failed", leaf=str(leaf), error=str(e))

    def wrap(self, command: List[str], limits: Limits, leaf: Optional[Path] = None) -> List[str]:
        argv = [
            sys.executable, "-I", "-B", str(LAUNCHER),
            "--cpu", str(limits.cpu_seconds),
            "--nofile", str(limits.nofile),
            "--fsize", str(limits.fsize_bytes),
        ]
        if limits.address_space_bytes:
            argv += ["--as", str(limits.address_space_bytes)]
        if limits.nproc:
            argv += ["--nproc", str(limits.nproc)]
        if leaf is not None:
            argv += ["--cgroup", str(leaf)]
        if self.seccomp is not None:
            argv += self.seccomp.launcher_args()
        argv += ["--", *command]

        if self.settings.iso_strategy == "ns":
            argv = wrap_with_namespaces(argv, self.settings.allow_network)
        return argv

    def attach(self, popen: subprocess.Popen, limits: Limits, leaf: Optional[Path]) -> ProcessHandle:
        return ProcessHandle(popen=popen, limits=limits, leaf=leaf)

    # ------------ watching ------------

    def _tree(self, handle: ProcessHandle) -> List[psutil.Process]:
        try:
            root = psutil.Process(handle.popen.pid)
            procs = [root] + root.children(recursive=True)
        except psutil.NoSuchProcess:
            return []
        for p in procs[1:]:
            handle.seen.setdefault(p.pid, p)
        return procs

    def tree_rss(self, handle: ProcessHandle) -> int:
        total = 0
        # the root is the launcher, not the program
        for p in self._tree(handle)[1:]:
            try:
                total += p.memory_info().rss
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                continue
        handle.peak_rss = max(handle.peak_rss, total)
        return total

    def oom_killed(self, handle: ProcessHandle) -> bool:
        if handle.leaf is None:
            return False
        try:
            events = cgroups.read_events(handle.leaf)
        except OSError:
            return False
        return events.get("oom_kill", 0) > 0 or events.get("oom_group_kill", 0) > 0

    def memory_breached(self, handle: ProcessHandle) -> bool:
        if self.oom_killed(handle):
            return True
        return self.tree_rss(handle) > handle.limits.memory_bytes

    # ------------ teardown ------------

    def _signal_group(self, handle: ProcessHandle, sig: int) -> None:
        # once the leader is reaped its pgid may belong to someone else
        if handle.popen.poll() is not None:
            return
        try:
            os.killpg(handle.pgid, sig)
        except ProcessLookupError:
            pass

    def _stragglers(self, handle: ProcessHandle) -> List[psutil.Process]:
        return [p for p in handle.seen.values() if _running(p)]

    def kill(self, handle: ProcessHandle) -> None:
        """
        SIGTERM the group and every known descendant (also those that setsid()'d
        away), then SIGKILL whatever is still alive after the grace period.
        """
        self._tree(handle)
        log.info("limiter.kill", pid=handle.popen.pid, descendants=len(handle.seen))
        grace = handle.limits.kill_grace_ms / 1000

        self._signal_group(handle, signal.SIGTERM)
        others = self._stragglers(handle)
        for p in others:
            try:
                p.terminate()
            except psutil.NoSuchProcess:
                pass

        try:
            handle.popen.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            pass
        # descendants are not our children: psutil polls them
        _, alive = psutil.wait_procs(others, timeout=0.05)

        self._hard_kill(handle, alive)
        handle.popen.wait()

    def _sweep(self, handle: ProcessHandle) -> None:
        """
        SIGKILL every descendant while the launcher is still alive. It is a
        child subreaper, so orphans of killed processes land under it and show
        up on the next pass.
        """
        for _ in range(SWEEP_ROUNDS):
            alive = [p for p in self._tree(handle)[1:] if _running(p)]
            if not alive:
                return
            for p in alive:
                try:
                    p.kill()
                except psutil.NoSuchProcess:
                    pass
            psutil.wait_procs(alive, timeout=0.1)
        log.warning("limiter.sweep_incomplete", pid=handle.popen.pid)

    def _hard_kill(self, handle: ProcessHandle, extra: List[psutil.Process]) -> None:
        if handle.leaf is not None:
            try:
                cgroups.kill_all(handle.leaf)
            except OSError as e:
                log.warning("cgroup.kill_failed", leaf=str(handle.leaf), error=str(e))
        if handle.popen.poll() is None:
            self._sweep(handle)
        self._signal_group(handle, signal.SIGKILL)
        if handle.popen.poll() is None:
            handle.popen.kill()
        for p in extra:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass

    def release(self, handle: ProcessHandle) -> None:
        """Leaves nothing behind: leftover background children, zombies, the cgroup leaf."""
        if handle.released:
            return
        handle.released = True
        leftovers = self._stragglers(handle)
        self._hard_kill(handle, leftovers)
        handle.popen.wait()
        if leftovers:
            psutil.wait_procs(leftovers, timeout=handle.limits.kill_grace_ms / 1000)
        if handle.leaf is not None:
            self.close_leaf(handle.leaf)


def _running(p: psutil.Process) -> bool:
    try:
        return p.is_running() and p.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
