from __future__ import annotations
import re
from pathlib import Path
from typing import List, Optional

from .base import Runner

MIB = 1024 * 1024

_LOCATION_RE = re.compile(r"^(?:.*[/\\])?main\.js:(\d+)$")
_ERROR_RE = re.compile(r"^(\w*Error): (.+)$")
_CARET_RE = re.compile(r"^(\s*)\^+\s*$")


class NodeRunner(Runner):
    name = "javascript"
    entry_name = "main.js"
    supports_address_space_limit = False
    oom_markers = (
        "JavaScript heap out of memory",
        "Fatal process out of memory",
        "Array buffer allocation failed",
    )

    def command(self, entry: Path, memory_bytes: int) -> List[str]:
        heap_mib = max(16, memory_bytes // MIB)
        return [self.binary, f"--max-old-space-size={heap_mib}", entry.name]

    def check_command(self, entry: Path) -> List[str]:
        return [self.binary, "--check", entry.name]

    def parse_diagnostics(self, stderr: str) -> List[str]:
        """
        `node --check` prints:

            main.js:1
            console.log('x'
                        ^^^

            SyntaxError: missing ) after argument list
        """
        line_no: Optional[int] = None
        column: Optional[int] = None
        diags: List[str] = []
        for ln in stderr.splitlines():
            m = _LOCATION_RE.match(ln.strip())
            if m and line_no is None:
                line_no = int(m.group(1))
                continue
            m = _CARET_RE.match(ln)
            if m and column is None and line_no is not None:
                column = len(m.group(1)) + 1
                continue
            m = _ERROR_RE.match(ln.strip())
            if m:
                loc = ""
                if line_no is not None:
                    loc = f" (line {line_no}" + (f", column {column})" if column else ")")
                diags.append(f"{m.group(1)}: {m.group(2)}{loc}")
                # only the first error line is meaningful, the rest is the stack
                break
        if diags:
            return diags
        lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
        return lines[-1:] or ["Syntax check failed"]
