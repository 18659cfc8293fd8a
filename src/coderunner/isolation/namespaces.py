from __future__ import annotations
from typing import List
import shutil, os


def wrap_with_namespaces(cmd: List[str], allow_network: bool) -> List[str]:
    """
    Best-effort: new user+mount+pid namespace (and net unless allowed), no chroot.
    Falls back to the bare command when unshare is missing.
    """
    unshare = shutil.which("unshare")
    if not unshare:
        return cmd

    flags = ["--user", "--map-root-user", "--mount", "--pid", "--fork", "--kill-child"]
    if not allow_network:
        # empty net namespace: only a down loopback, no route out
        flags.append("--net")
    return [unshare, *flags, "--", *cmd]


def probe_capabilities(strategy: str, allow_network: bool) -> dict:
    """Environment facts, logged once at startup to debug isolation setups."""
    return {
        "strategy": strategy,
        "allow_network": allow_network,
        "euid": os.geteuid() if hasattr(os, "geteuid") else None,
        "has_unshare": bool(shutil.which("unshare")),
        "has_cgroup_v2": os.path.exists("/sys/fs/cgroup/cgroup.controllers"),
    }
