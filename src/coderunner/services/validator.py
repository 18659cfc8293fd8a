from __future__ import annotations
from typing import Optional

from ..core.models import Language, ValidationResult
from ..executor.sandbox import ExecutionSandbox
from ..logging import get_logger
from ..runners.registry import get_runner
from .gate import AdmissionGate

log = get_logger(__name__)


class SyntaxValidator:
    """
    Asks the language's own front end whether the code parses. The user code
    is never executed; the check still runs sandboxed under a short fixed
    timeout so a pathological input cannot hang the parser.
    """

    def __init__(self, sandbox: ExecutionSandbox, gate: Optional[AdmissionGate] = None):
        self.sandbox = sandbox
        self.gate = gate

    def validate(self, code: str, language) -> ValidationResult:
        lang = Language.parse(language)
        runner = get_runner(lang, self.sandbox.settings.runtimes)

        if self.gate is not None:
            with self.gate.slot():
                res = self.sandbox.check(code, lang)
        else:
            res = self.sandbox.check(code, lang)

        if res.timed_out:
            out = ValidationResult(valid=False, errors=["Syntax check timed out"])
        elif res.exit_code == 0:
            out = ValidationResult(valid=True, errors=[])
        elif res.exit_code is None and res.error and not res.memory_exceeded:
            # engine fault: nothing ran, report why
            out = ValidationResult(valid=False, errors=[res.error])
        else:
            out = ValidationResult(valid=False, errors=runner.parse_diagnostics(res.stderr or res.error or ""))

        log.info("validator.finished", language=lang.value, valid=out.valid, errors=len(out.errors))
        return out
