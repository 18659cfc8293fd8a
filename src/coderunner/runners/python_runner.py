from __future__ import annotations
import re
from pathlib import Path
from typing import List

from .base import Runner

# Parse-only: compile() builds the code object and never runs it.
CHECK_SNIPPET = """\
import sys
path = sys.argv[1]
with open(path, encoding="utf-8") as f:
    src = f.read()
try:
    compile(src, path, "exec", dont_inherit=True)
except (SyntaxError, ValueError) as e:
    loc = f" (line {e.lineno}, column {e.offset})" if getattr(e, "lineno", None) else ""
    print(f"{type(e).__name__}: {getattr(e, 'msg', e)}{loc}", file=sys.stderr)
    sys.exit(1)
"""

_DIAG_RE = re.compile(r"^(\w+Error): .+$")


class PythonRunner(Runner):
    name = "python"
    entry_name = "main.py"
    oom_markers = ("MemoryError",)

    def command(self, entry: Path, memory_bytes: int) -> List[str]:
        # -I: no env vars / user site / cwd on sys.path, -B: no .pyc, -u: unbuffered
        return [self.binary, "-I", "-B", "-u", entry.name]

    def check_command(self, entry: Path) -> List[str]:
        return [self.binary, "-I", "-B", "-c", CHECK_SNIPPET, entry.name]

    def parse_diagnostics(self, stderr: str) -> List[str]:
        lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
        diags = [ln for ln in lines if _DIAG_RE.match(ln)]
        if diags:
            return diags
        return lines[-1:] or ["Syntax check failed"]
