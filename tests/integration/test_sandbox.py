import shutil
import time

import psutil
import pytest

from coderunner.core.models import ExecutionRequest
from coderunner.executor.sandbox import ExecutionSandbox
from coderunner.runners.python_runner import PythonRunner

pytestmark = pytest.mark.integration
needs_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")


def run(sandbox, code, stdin="", language="python", **kw):
    return sandbox.execute(ExecutionRequest(code=code, language=language, stdin=stdin, **kw))


def gone(pid, within=2.0):
    deadline = time.monotonic() + within
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


def test_print(sandbox):
    res = run(sandbox, "print(2+2)")
    assert res.output == "4"
    assert res.exit_code == 0
    assert res.error is None
    assert not res.timed_out and not res.memory_exceeded
    assert res.execution_time_ms >= 0


def test_stdin_reaches_the_program(sandbox):
    res = run(sandbox, "import sys\nprint(sys.stdin.read().upper())", stdin="hello\nworld\n")
    assert res.output == "HELLO\nWORLD"


def test_nonzero_exit_reports_stderr(sandbox):
    res = run(sandbox, "print('before')\nraise ValueError('bad value')")
    assert res.exit_code == 1
    assert res.output == "before"
    assert "ValueError: bad value" in res.error


def test_sys_exit_code_without_stderr(sandbox):
    res = run(sandbox, "import sys\nsys.exit(3)")
    assert res.exit_code == 3
    assert res.error == "Process exited with code 3"


def test_timeout_keeps_partial_output(sandbox):
    t0 = time.monotonic()
    res = run(sandbox, "import time\nprint('partial')\ntime.sleep(30)", timeout_ms=500)
    assert time.monotonic() - t0 < 5
    assert res.timed_out
    assert res.exit_code is None
    assert res.output == "partial"
    assert "timed out" in res.error


def test_busy_loop_times_out(sandbox):
    res = run(sandbox, "while True:\n    pass", timeout_ms=400)
    assert res.timed_out
    assert res.exit_code is None


def test_memory_bomb(sandbox):
    res = run(sandbox, "x = bytearray(1 << 30)\nprint('allocated')", max_memory="128m")
    assert res.memory_exceeded
    assert "allocated" not in res.output
    assert res.exit_code != 0


def test_growing_list_is_stopped(sandbox):
    code = "chunks = []\nwhile True:\n    chunks.append(b'x' * (1 << 20))"
    res = run(sandbox, code, max_memory="64m", timeout_ms=5000)
    assert res.memory_exceeded
    assert not res.timed_out


def test_output_truncated(settings):
    settings.max_output_bytes = 1024
    res = run(ExecutionSandbox(settings), "print('x' * 10000)")
    assert res.output_truncated
    assert res.exit_code == 0
    assert res.stdout.endswith("[output truncated]")
    assert res.stdout.count("x") == 1024


def test_flood_does_not_deadlock(settings):
    settings.max_output_bytes = 4096
    res = run(ExecutionSandbox(settings), "import sys\nfor _ in range(200000):\n    sys.stdout.write('y' * 80 + '\\n')",
              timeout_ms=8000)
    assert not res.timed_out
    assert res.exit_code == 0
    assert res.output_truncated


def test_background_child_is_killed(sandbox):
    code = (
        "import subprocess, sys\n"
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(p.pid)\n"
    )
    res = run(sandbox, code)
    assert res.exit_code == 0
    pid = int(res.output)
    assert gone(pid)


DAEMONIZE = """\
import os, time
if os.fork() == 0:
    os.setsid()
    if os.fork() == 0:
        print(os.getpid(), flush=True)
        time.sleep(60)
    os._exit(0)
time.sleep({parent_sleep})
"""


def test_daemonized_grandchild_is_killed_on_exit(sandbox):
    t0 = time.monotonic()
    res = run(sandbox, DAEMONIZE.format(parent_sleep=0.3))
    took = time.monotonic() - t0
    assert res.exit_code == 0
    pid = int(res.output)
    assert gone(pid, within=0.5)
    assert took < 3


def test_daemonized_grandchild_is_killed_on_timeout(sandbox):
    res = run(sandbox, DAEMONIZE.format(parent_sleep=30), timeout_ms=800)
    assert res.timed_out
    assert res.exit_code is None
    pid = int(res.output)
    assert gone(pid, within=0.5)


def test_timeout_kills_tree_ignoring_sigterm(sandbox, settings):
    code = (
        "import os, signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "if os.fork() == 0:\n"
        "    print('child', os.getpid(), flush=True)\n"
        "    while True:\n"
        "        time.sleep(1)\n"
        "print('parent', os.getpid(), flush=True)\n"
        "while True:\n"
        "    time.sleep(1)\n"
    )
    t0 = time.monotonic()
    res = run(sandbox, code, timeout_ms=600)
    took = time.monotonic() - t0
    assert res.timed_out
    assert res.exit_code is None
    pids = {line.split()[0]: int(line.split()[1]) for line in res.output.splitlines()}
    assert set(pids) == {"parent", "child"}
    assert all(gone(p, within=0.5) for p in pids.values())
    # deadline, then grace, then SIGKILL
    assert took < (600 + settings.kill_grace_ms) / 1000 + 1.5


def test_empty_code(sandbox):
    res = run(sandbox, "")
    assert res.exit_code == 0
    assert res.output == ""
    assert res.error is None


def test_workdir_is_private_and_removed(sandbox, settings):
    res = run(sandbox, "import os\nprint(os.getcwd())\nopen('scratch.txt', 'w').write('x')")
    assert res.exit_code == 0
    assert res.output.startswith(str(settings.work_root))
    assert list(settings.work_root.iterdir()) == []


def test_host_environment_does_not_leak(sandbox, monkeypatch):
    monkeypatch.setenv("SECRET_TOKEN", "hunter2")
    res = run(sandbox, "import os\nprint(os.environ.get('SECRET_TOKEN'))")
    assert res.output == "None"


def test_engine_fault_is_a_result(sandbox, settings, monkeypatch):
    def broken(self, code, workdir, memory_bytes):
        raise OSError("disk full")

    monkeypatch.setattr(PythonRunner, "prepare", broken)
    res = run(sandbox, "print(1)")
    assert res.exit_code is None
    assert res.error == "Internal execution error: disk full"
    assert list(settings.work_root.iterdir()) == []


def test_missing_interpreter(settings):
    settings.runtimes = {**settings.runtimes, "python": "/nonexistent/python9"}
    res = run(ExecutionSandbox(settings), "print(1)")
    assert res.exit_code == 127
    assert "cannot exec /nonexistent/python9" in res.error


@needs_node
def test_node_print(sandbox):
    res = run(sandbox, "console.log(2 + 2)", language="javascript")
    assert res.output == "4"
    assert res.exit_code == 0


@needs_node
def test_node_stdin(sandbox):
    code = "let d='';process.stdin.on('data',c=>d+=c);process.stdin.on('end',()=>console.log(d.trim().split('').reverse().join('')))"
    res = run(sandbox, code, stdin="abc\n", language="javascript")
    assert res.output == "cba"


@needs_node
def test_node_throw(sandbox):
    res = run(sandbox, "throw new Error('nope')", language="javascript")
    assert res.exit_code == 1
    assert "Error: nope" in res.error


@needs_node
def test_node_timeout(sandbox):
    res = run(sandbox, "while (true) {}", language="javascript", timeout_ms=500)
    assert res.timed_out
    assert res.exit_code is None


@needs_node
def test_node_heap_blowup(sandbox):
    code = "const a = []; while (true) { a.push(new Array(1e6).fill(1)); }"
    res = run(sandbox, code, language="javascript", max_memory="64m", timeout_ms=8000)
    assert res.memory_exceeded
