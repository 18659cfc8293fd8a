from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List

import yaml


@dataclass(frozen=True)
class SeccompPolicy:
    """DENY-LIST: everything allowed except `syscalls`."""
    syscalls: List[str]
    action: str = "errno"  # "errno" (EPERM) | "kill"

    def launcher_args(self) -> List[str]:
        if not self.syscalls:
            return []
        return ["--deny", ",".join(self.syscalls), "--deny-action", self.action]


def load_policy(policy_path: Path) -> SeccompPolicy:
    """
    Accepts either a plain list or
        action: errno
        syscalls: [socket, connect, ...]
    """
    if not policy_path.exists():
        raise FileNotFoundError(f"seccomp policy not found: {policy_path}")
    data = yaml.safe_load(policy_path.read_text(encoding="utf-8")) or {}
    if isinstance(data, list):
        data = {"syscalls": data}
    if not isinstance(data, dict):
        raise ValueError(f"seccomp policy {policy_path} must be a list or a mapping")

    action = str(data.get("action", "errno")).lower()
    if action not in ("errno", "kill"):
        raise ValueError(f"seccomp action must be errno or kill, got {action!r}")
    names = [str(s).strip() for s in (data.get("syscalls") or []) if str(s).strip()]
    return SeccompPolicy(syscalls=list(dict.fromkeys(names)), action=action)
