# src/coderunner/executor/sandbox.py
from __future__ import annotations
import os
import shutil
import signal
import subprocess
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional

from ..core.errors import EngineFault
from ..core.models import ExecutionRequest, ExecutionResult, Limits
from ..core.utils import new_run_id
from ..limiter.limiter import ProcessHandle, ResourceLimiter
from ..logging import get_logger
from ..runners.base import Prepared, Runner
from ..runners.registry import get_runner
from ..settings import Settings, load_settings
from .capture import StdinFeeder, StreamCollector

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"
# how long teardown waits for pipes to hit EOF once the tree is dead
DRAIN_TIMEOUT_S = 2.0

log = get_logger(__name__)


class Outcome(str, Enum):
    EXITED = "exited"
    TIMEOUT = "timeout"
    MEMORY = "memory"


class ExecutionSandbox:
    """
    Runs one untrusted program to completion or forced termination.

    Every call gets a fresh private working directory, its own session /
    process group, limits applied by the launcher before exec, bounded output
    capture, and a guaranteed teardown. `execute` never raises: engine faults
    come back as a result with `error` set.
    """

    def __init__(self, settings: Optional[Settings] = None, limiter: Optional[ResourceLimiter] = None):
        self.settings = settings or load_settings()
        self.limiter = limiter or ResourceLimiter(self.settings)

    # ------------ public ------------

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        try:
            runner = get_runner(request.language, self.settings.runtimes)
            limits = self.limiter.plan(request.timeout_ms, request.max_memory, runner)
        except Exception as e:
            log.exception("execution.engine_fault", stage="plan")
            return ExecutionResult.engine_fault(str(e))
        return self._run(
            runner, limits, request.stdin,
            prepare=lambda wd: runner.prepare(request.code, wd, limits.memory_bytes),
        )

    def check(self, code: str, language) -> ExecutionResult:
        """Parse-only run of the runner's check command under the validator's limits."""
        try:
            runner = get_runner(language, self.settings.runtimes)
            limits = self.limiter.plan(
                self.settings.validator_timeout_ms, self.settings.validator_max_memory_bytes, runner)
        except Exception as e:
            log.exception("execution.engine_fault", stage="plan")
            return ExecutionResult.engine_fault(str(e))
        return self._run(runner, limits, "", prepare=lambda wd: runner.prepare_check(code, wd))

    # ------------ lifecycle ------------

    def _make_workdir(self, run_id: str) -> Path:
        root = Path(self.settings.work_root)
        root.mkdir(parents=True, exist_ok=True)
        # mkdtemp: 0700, unique per run
        return Path(tempfile.mkdtemp(prefix=f"run-{run_id}-", dir=root))

    def _child_env(self, workdir: Path, extra: Dict[str, str]) -> Dict[str, str]:
        # built from scratch: nothing from the host environment leaks in but PATH
        return {
            "PATH": os.environ.get("PATH", DEFAULT_PATH),
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            "LANG": "C.UTF-8",
            "LC_ALL": "C.UTF-8",
            **extra,
        }

    def _run(self, runner: Runner, limits: Limits, stdin: str,
             prepare: Callable[[Path], Prepared]) -> ExecutionResult:
        run_id = new_run_id()
        blog = log.bind(run_id=run_id, language=runner.name)
        workdir: Optional[Path] = None
        leaf: Optional[Path] = None
        handle: Optional[ProcessHandle] = None
        collectors = []
        started = time.monotonic()
        try:
            workdir = self._make_workdir(run_id)
            prepared = prepare(workdir)
            leaf = self.limiter.open_leaf(run_id, limits)
            argv = self.limiter.wrap(prepared.command, limits, leaf)
            blog.info("execution.start", cmd=prepared.command,
                      timeout_ms=limits.wall_timeout_ms, memory_bytes=limits.memory_bytes)

            started = time.monotonic()
            try:
                popen = subprocess.Popen(
                    argv,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=str(workdir),
                    env=self._child_env(workdir, prepared.env),
                    start_new_session=True,
                    close_fds=True,
                )
            except OSError as e:
                raise EngineFault(f"spawn failed: {e}") from e
            handle = self.limiter.attach(popen, limits, leaf)

            feeder = StdinFeeder(popen.stdin, stdin.encode("utf-8"), name=f"{run_id}-stdin")
            out = StreamCollector(popen.stdout, self.settings.max_output_bytes, name=f"{run_id}-stdout")
            err = StreamCollector(popen.stderr, self.settings.max_output_bytes, name=f"{run_id}-stderr")
            collectors = [feeder, out, err]
            for t in collectors:
                t.start()

            outcome = self._supervise(handle)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            if outcome is not Outcome.EXITED:
                self.limiter.kill(handle)
            # stragglers hold the pipes open; kill them before waiting for EOF
            self.limiter.release(handle)
            self._drain(collectors)
            collectors = []

            result = self._build_result(runner, handle, outcome, elapsed_ms, out, err)
            blog.info("execution.finished", exit_code=result.exit_code, timed_out=result.timed_out,
                      memory_exceeded=result.memory_exceeded, duration_ms=result.execution_time_ms,
                      peak_rss=handle.peak_rss)
            return result

        except Exception as e:
            blog.exception("execution.engine_fault")
            return ExecutionResult.engine_fault(str(e), int((time.monotonic() - started) * 1000))

        finally:
            if handle is not None:
                # idempotent; on a fault, the tree must not outlive us
                self.limiter.release(handle)
            elif leaf is not None:
                self.limiter.close_leaf(leaf)
            # only a fault leaves readers to wait for
            self._drain(collectors)
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)

    def _supervise(self, handle: ProcessHandle) -> Outcome:
        """Race process exit, the wall-clock deadline and the memory watcher."""
        deadline = time.monotonic() + handle.limits.wall_timeout_ms / 1000
        poll = self.settings.poll_interval_ms / 1000
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return Outcome.TIMEOUT
            try:
                handle.popen.wait(timeout=min(poll, remaining))
                return Outcome.EXITED
            except subprocess.TimeoutExpired:
                pass
            if self.limiter.memory_breached(handle):
                return Outcome.MEMORY

    @staticmethod
    def _drain(threads) -> None:
        for t in threads:
            if t.is_alive():
                t.join(timeout=DRAIN_TIMEOUT_S)

    def _build_result(self, runner: Runner, handle: ProcessHandle, outcome: Outcome,
                      elapsed_ms: int, out: StreamCollector, err: StreamCollector) -> ExecutionResult:
        stdout = out.buffer.text()
        stderr = err.buffer.text()
        truncated = out.buffer.truncated or err.buffer.truncated
        limits = handle.limits
        rc = handle.popen.returncode

        if outcome is Outcome.TIMEOUT:
            return ExecutionResult(
                stdout=stdout, stderr=stderr,
                error=f"Execution timed out after {limits.wall_timeout_ms} ms",
                exit_code=None, execution_time_ms=elapsed_ms,
                timed_out=True, output_truncated=truncated,
            )

        oom_killed = outcome is Outcome.MEMORY or self.limiter.oom_killed(handle)
        if oom_killed or (rc != 0 and runner.reports_oom(stderr)):
            return ExecutionResult(
                stdout=stdout, stderr=stderr,
                error=f"Memory limit exceeded ({limits.memory_bytes} bytes)",
                # the interpreter's own MemoryError exit keeps its code
                exit_code=None if oom_killed else rc,
                execution_time_ms=elapsed_ms,
                memory_exceeded=True, output_truncated=truncated,
            )

        error = None
        if rc != 0:
            error = stderr.strip() or self._describe_exit(rc)
        return ExecutionResult(
            stdout=stdout, stderr=stderr, error=error, exit_code=rc,
            execution_time_ms=elapsed_ms, output_truncated=truncated,
        )

    @staticmethod
    def _describe_exit(rc: int) -> str:
        if rc < 0:
            try:
                return f"Process killed by signal {signal.Signals(-rc).name}"
            except ValueError:
                return f"Process killed by signal {-rc}"
        return f"Process exited with code {rc}"
