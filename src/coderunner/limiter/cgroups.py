# src/coderunner/limiter/cgroups.py
from __future__ import annotations
from pathlib import Path
import os, signal, time
from typing import Dict, Optional

CGROOT = Path("/sys/fs/cgroup")


class CgroupUnavailable(RuntimeError):
    pass


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise RuntimeError(f"[cgroup] write {p}='{val}' but read-back='{back}'")


def ensure_v2():
    if not (CGROOT / "cgroup.controllers").exists():
        raise CgroupUnavailable("cgroup v2 is required")


def _self_cgroup_base() -> Path:
    # unified v2: '0::/<relative>'
    with open("/proc/self/cgroup") as f:
        rel = ""
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (CGROOT / rel.lstrip("/")).resolve()


def get_sbx_base(configured: Optional[Path] = None) -> Path:
    """Configured base (e.g. .../sandbox.service/sbx), else <own cgroup>/sbx."""
    if configured:
        base = Path(configured)
        if not str(base).startswith(str(CGROOT)):
            raise ValueError(f"cgroup base must start with {CGROOT}, got {base}")
        return base
    return _self_cgroup_base() / "sbx"


def _enable_controllers(node: Path):
    """Enable memory/pids for children of node (v2: node itself must hold no PIDs)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    enabled = set((node / "cgroup.subtree_control").read_text().split())
    want = [f"+{c}" for c in ("memory", "pids") if c in have and c not in enabled]
    if not want:
        return
    if (node / "cgroup.procs").read_text().strip():
        raise PermissionError(f"{node} has PIDs; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def create_leaf(run_id: str, base: Optional[Path] = None) -> Path:
    ensure_v2()
    sbx = get_sbx_base(base)
    sbx.mkdir(parents=True, exist_ok=True)
    _enable_controllers(sbx)
    leaf = sbx / run_id
    leaf.mkdir()
    return leaf


def set_limits(leaf: Path, memory_bytes: int, pids_max: Optional[int]):
    _write_then_check(leaf / "memory.max", memory_bytes)
    try:
        _write_then_check(leaf / "memory.swap.max", 0)
    except FileNotFoundError:
        # no swap accounting on this host
        pass
    # OOM takes the whole group down, not one victim
    _write_then_check(leaf / "memory.oom.group", 1)
    if pids_max:
        _write_then_check(leaf / "pids.max", pids_max)


def read_events(leaf: Path) -> Dict[str, int]:
    out: Dict[str, int] = {}
    p = leaf / "memory.events"
    if not p.exists():
        return out
    for line in p.read_text().splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].isdigit():
            out[parts[0]] = int(parts[1])
    return out


def kill_all(leaf: Path):
    kill_file = leaf / "cgroup.kill"
    if kill_file.exists():
        kill_file.write_text("1")
        return
    # kernels < 5.14 have no cgroup.kill
    procs = leaf / "cgroup.procs"
    if not procs.exists():
        return
    for pid in procs.read_text().split():
        try:
            os.kill(int(pid), signal.SIGKILL)
        except ProcessLookupError:
            pass


def teardown(leaf: Path):
    # leaf must be empty; the last members may still be exiting
    for _ in range(10):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            time.sleep(0.05)
    raise OSError(f"[cgroup] could not remove {leaf}")
