from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.utils import parse_memory


class Settings(BaseSettings):
    # ---- paths ----
    work_root: Path = Path(tempfile.gettempdir()) / "coderunner"
    limits_file: Path = Path("conf/limits.yaml")

    # ---- request defaults ----
    default_timeout_ms: int = 10_000
    default_max_memory: str = "128m"

    # ---- concurrency / supervision ----
    max_concurrency: int = 4
    harness_workers: int = 4
    poll_interval_ms: int = 50
    kill_grace_ms: int = 500
    max_output_bytes: int = 1024 * 1024

    # ---- interpreters ----
    runtimes: Dict[str, str] = Field(default_factory=lambda: {"python": sys.executable, "javascript": "node"})

    # ---- rlimits (conf/limits.yaml) ----
    nofile: int = 64
    fsize_bytes: int = 10 * 1024 * 1024
    nproc: Optional[int] = None

    # ---- cgroup v2 ----
    cgroup_enabled: bool = False
    cgroup_base: Optional[Path] = None
    pids_max: int = 64

    # ---- seccomp ----
    seccomp_enabled: bool = False
    seccomp_policy: Path = Path("conf/seccomp.min.yaml")

    # ---- namespaces ----
    iso_strategy: str = "none"
    allow_network: bool = False

    # ---- syntax validator ----
    validator_timeout_ms: int = 5_000
    validator_max_memory: str = "256m"

    log_level: str = "INFO"

    # env prefix SBX_*
    model_config = SettingsConfigDict(env_prefix="SBX_", extra="ignore")

    @property
    def default_max_memory_bytes(self) -> int:
        return parse_memory(self.default_max_memory)

    @property
    def validator_max_memory_bytes(self) -> int:
        return parse_memory(self.validator_max_memory)


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    val = data.get(key) or {}
    return val if isinstance(val, dict) else {}


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def load_settings() -> Settings:
    # 0) SBX_* env
    s = Settings()

    # 1) conf/sandbox.yaml (or SANDBOX_CONF)
    data = _read_yaml(Path(os.environ.get("SANDBOX_CONF", "conf/sandbox.yaml")))
    defaults = _section(data, "defaults")
    cgroup = _section(data, "cgroup")
    sec = _section(data, "seccomp")
    iso = _section(data, "isolation")
    val = _section(data, "validator")

    update: Dict[str, Any] = {
        "work_root": data.get("work_root"),
        "default_timeout_ms": defaults.get("timeout_ms"),
        "default_max_memory": defaults.get("max_memory"),
        "max_concurrency": defaults.get("max_concurrency"),
        "harness_workers": defaults.get("harness_workers"),
        "poll_interval_ms": defaults.get("poll_interval_ms"),
        "max_output_bytes": defaults.get("max_output_bytes"),
        "log_level": data.get("log_level"),
        "cgroup_enabled": cgroup.get("enabled"),
        "cgroup_base": cgroup.get("base"),
        "pids_max": cgroup.get("pids_max"),
        "seccomp_enabled": sec.get("enabled"),
        "seccomp_policy": sec.get("policy"),
        "iso_strategy": iso.get("strategy"),
        "allow_network": iso.get("allow_network"),
        "validator_timeout_ms": val.get("timeout_ms"),
        "validator_max_memory": val.get("max_memory"),
    }
    runtimes = _section(data, "runtimes")
    if runtimes:
        update["runtimes"] = {**s.runtimes, **{k: str(v) for k, v in runtimes.items()}}

    # 2) conf/limits.yaml (optional)
    limits = _read_yaml(s.limits_file)
    update.update({
        "nofile": limits.get("nofile"),
        "fsize_bytes": parse_memory(limits["fsize"]) if limits.get("fsize") is not None else None,
        "nproc": limits.get("nproc"),
        "kill_grace_ms": limits.get("kill_grace_ms"),
    })

    # SBX_* env wins over YAML
    update = {k: v for k, v in update.items() if v is not None and k not in s.model_fields_set}
    if not update:
        return s
    return Settings.model_validate({**s.model_dump(), **update})
