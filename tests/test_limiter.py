import os
import subprocess
import sys

import pytest

from coderunner.isolation import namespaces
from coderunner.isolation.seccomp import SeccompPolicy, load_policy
from coderunner.limiter import cgroups, launch
from coderunner.limiter.limiter import LAUNCHER, ResourceLimiter
from coderunner.runners.node_runner import NodeRunner
from coderunner.runners.python_runner import PythonRunner
from coderunner.settings import Settings

MiB = 1024 * 1024


@pytest.fixture
def limiter(tmp_path):
    return ResourceLimiter(Settings(work_root=tmp_path, nofile=32, fsize_bytes=MiB, kill_grace_ms=200))


def test_plan_python_gets_address_space(limiter):
    limits = limiter.plan(2500, 64 * MiB, PythonRunner("python3"))
    assert limits.wall_timeout_ms == 2500
    assert limits.memory_bytes == 64 * MiB
    assert limits.cpu_seconds == 4
    assert limits.address_space_bytes == 64 * MiB
    assert limits.nofile == 32
    assert limits.kill_grace_ms == 200


def test_plan_node_skips_address_space(limiter):
    limits = limiter.plan(1000, 64 * MiB, NodeRunner("node"))
    assert limits.address_space_bytes is None
    assert limits.memory_bytes == 64 * MiB


def test_wrap_builds_launcher_argv(limiter):
    limits = limiter.plan(1000, 64 * MiB, PythonRunner("python3"))
    argv = limiter.wrap(["python3", "main.py"], limits)
    assert argv[:4] == [sys.executable, "-I", "-B", str(LAUNCHER)]
    assert argv[argv.index("--cpu") + 1] == "2"
    assert argv[argv.index("--as") + 1] == str(64 * MiB)
    assert "--cgroup" not in argv and "--deny" not in argv
    assert argv[-3:] == ["--", "python3", "main.py"]


def test_wrap_passes_cgroup_and_seccomp(tmp_path):
    policy = tmp_path / "policy.yaml"
    policy.write_text("action: kill\nsyscalls: [socket, ptrace]\n")
    lim = ResourceLimiter(Settings(work_root=tmp_path, seccomp_enabled=True, seccomp_policy=policy))
    limits = lim.plan(1000, 64 * MiB, NodeRunner("node"))
    argv = lim.wrap(["node", "main.js"], limits, leaf=tmp_path / "leaf")
    assert argv[argv.index("--cgroup") + 1] == str(tmp_path / "leaf")
    assert argv[argv.index("--deny") + 1] == "socket,ptrace"
    assert argv[argv.index("--deny-action") + 1] == "kill"
    assert "--as" not in argv


def test_wrap_with_namespaces(tmp_path, monkeypatch):
    monkeypatch.setattr(namespaces.shutil, "which", lambda name: "/usr/bin/unshare")
    lim = ResourceLimiter(Settings(work_root=tmp_path, iso_strategy="ns"))
    argv = lim.wrap(["python3", "main.py"], lim.plan(1000, MiB, PythonRunner("python3")))
    assert argv[0] == "/usr/bin/unshare"
    assert "--net" in argv
    assert argv[argv.index("--") + 1] == sys.executable


def test_namespaces_fall_back_without_unshare(monkeypatch):
    monkeypatch.setattr(namespaces.shutil, "which", lambda name: None)
    assert namespaces.wrap_with_namespaces(["a", "b"], allow_network=False) == ["a", "b"]


def test_namespaces_keep_network_when_allowed(monkeypatch):
    monkeypatch.setattr(namespaces.shutil, "which", lambda name: "/usr/bin/unshare")
    assert "--net" not in namespaces.wrap_with_namespaces(["a"], allow_network=True)


def test_open_leaf_disabled(limiter):
    limits = limiter.plan(1000, MiB, PythonRunner("python3"))
    assert limiter.open_leaf("run-1", limits) is None


def test_open_leaf_falls_back_when_cgroups_unavailable(tmp_path, monkeypatch):
    def boom(run_id, base=None):
        raise cgroups.CgroupUnavailable("cgroup v2 is required")

    monkeypatch.setattr(cgroups, "create_leaf", boom)
    lim = ResourceLimiter(Settings(work_root=tmp_path, cgroup_enabled=True))
    assert lim.open_leaf("run-1", lim.plan(1000, MiB, PythonRunner("python3"))) is None


def test_load_policy_mapping_and_list(tmp_path):
    p = tmp_path / "p.yaml"
    p.write_text("action: ERRNO\nsyscalls:\n  - socket\n  - socket\n  - bpf\n")
    assert load_policy(p) == SeccompPolicy(syscalls=["socket", "bpf"], action="errno")

    p.write_text("- mount\n- reboot\n")
    assert load_policy(p).syscalls == ["mount", "reboot"]


def test_load_policy_rejects_bad_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_policy(tmp_path / "missing.yaml")
    p = tmp_path / "p.yaml"
    p.write_text("action: trap\nsyscalls: [socket]\n")
    with pytest.raises(ValueError):
        load_policy(p)


def test_empty_policy_adds_no_launcher_args():
    assert SeccompPolicy(syscalls=[]).launcher_args() == []


def test_launcher_parses_options_and_command():
    ns, cmd = launch._parse(["--cpu", "3", "--as", "1024", "--nofile", "16", "--", "node", "--check", "main.js"])
    assert ns.cpu == 3
    assert ns.address_space == 1024
    assert ns.nofile == 16
    assert ns.cgroup is None
    assert cmd == ["node", "--check", "main.js"]


def test_launcher_requires_a_command():
    with pytest.raises(SystemExit):
        launch._parse(["--cpu", "3"])
    with pytest.raises(SystemExit):
        launch._parse(["--cpu", "3", "--"])


def test_read_events(tmp_path):
    (tmp_path / "memory.events").write_text("low 0\nhigh 0\nmax 3\noom 1\noom_kill 1\noom_group_kill 0\n")
    events = cgroups.read_events(tmp_path)
    assert events["oom_kill"] == 1
    assert events["max"] == 3
    assert cgroups.read_events(tmp_path / "nope") == {}


def test_teardown(tmp_path):
    leaf = tmp_path / "leaf"
    leaf.mkdir()
    cgroups.teardown(leaf)
    assert not leaf.exists()
    # already gone is fine
    cgroups.teardown(leaf)


def test_sbx_base_must_live_under_cgroup_root(tmp_path):
    with pytest.raises(ValueError):
        cgroups.get_sbx_base(tmp_path)


def test_release_is_idempotent_and_spares_a_reaped_group(limiter, monkeypatch):
    limits = limiter.plan(1000, 64 * MiB, PythonRunner("python3"))
    popen = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
    popen.wait()
    handle = limiter.attach(popen, limits, None)

    sent = []
    monkeypatch.setattr(os, "killpg", lambda pgid, sig: sent.append((pgid, sig)))
    limiter.release(handle)
    limiter.release(handle)
    assert handle.released
    assert sent == []


def test_tree_rss_leaves_out_the_launcher(limiter):
    limits = limiter.plan(5000, 64 * MiB, PythonRunner("python3"))
    popen = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(5)"], start_new_session=True)
    handle = limiter.attach(popen, limits, None)
    try:
        assert limiter.tree_rss(handle) == 0
    finally:
        limiter.release(handle)
    assert popen.returncode is not None


def test_children_of_lists_direct_children():
    popen = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(5)"])
    try:
        assert popen.pid in launch.children_of(os.getpid())
    finally:
        popen.kill()
        popen.wait()
