from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple


@dataclass(frozen=True)
class Prepared:
    entry_file: Path
    command: List[str]
    env: Dict[str, str] = field(default_factory=dict)


class Runner:
    """
    Per-language knowledge: entry filename, how to invoke the interpreter,
    how to ask it for a parse-only check and how to read its diagnostics.
    """
    name: str = ""
    entry_name: str = ""
    # V8 and friends reserve huge virtual ranges at startup; those runners
    # get no RLIMIT_AS and rely on the cgroup / RSS watcher instead.
    supports_address_space_limit: bool = True
    oom_markers: Tuple[str, ...] = ()

    def __init__(self, binary: str):
        self.binary = binary

    def command(self, entry: Path, memory_bytes: int) -> List[str]:
        raise NotImplementedError

    def check_command(self, entry: Path) -> List[str]:
        raise NotImplementedError

    def env(self) -> Dict[str, str]:
        return {}

    def _write_entry(self, code: str, workdir: Path) -> Path:
        entry = workdir / self.entry_name
        entry.write_text(code, encoding="utf-8")
        return entry

    def prepare(self, code: str, workdir: Path, memory_bytes: int) -> Prepared:
        entry = self._write_entry(code, workdir)
        return Prepared(entry_file=entry, command=self.command(entry, memory_bytes), env=self.env())

    def prepare_check(self, code: str, workdir: Path) -> Prepared:
        entry = self._write_entry(code, workdir)
        return Prepared(entry_file=entry, command=self.check_command(entry), env=self.env())

    def reports_oom(self, stderr: str) -> bool:
        return any(m in stderr for m in self.oom_markers)

    def parse_diagnostics(self, stderr: str) -> List[str]:
        raise NotImplementedError

