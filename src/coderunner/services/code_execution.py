from __future__ import annotations
from typing import Any, Dict, Iterable, Optional

from ..core.errors import MissingCodeError
from ..core.models import ExecutionRequest, ExecutionResult, Language, TestBatchResult, ValidationResult
from ..executor.sandbox import ExecutionSandbox
from ..isolation.namespaces import probe_capabilities
from ..logging import get_logger, setup_logging
from ..settings import Settings, load_settings
from .gate import AdmissionGate
from .harness import HarnessOptions, TestHarness
from .validator import SyntaxValidator

log = get_logger(__name__)


class CodeExecutionService:
    """
    Entry point for callers: ad-hoc runs, syntax checks and test batches.
    Owns the admission gate shared by all three.

    Options follow the calling layer's shape: ``timeout`` (ms), ``maxMemory``
    (bytes or a token like ``"128m"``), ``input``.
    """

    def __init__(self, settings: Optional[Settings] = None, sandbox: Optional[ExecutionSandbox] = None,
                 gate: Optional[AdmissionGate] = None):
        self.settings = settings or load_settings()
        setup_logging(self.settings.log_level)
        self.gate = gate or AdmissionGate(self.settings.max_concurrency)
        self.sandbox = sandbox or ExecutionSandbox(self.settings)
        self.validator = SyntaxValidator(self.sandbox, self.gate)
        self.harness = TestHarness(self.sandbox, self.gate, workers=self.settings.harness_workers)
        log.info("service.ready", max_concurrency=self.gate.capacity,
                 **probe_capabilities(self.settings.iso_strategy, self.settings.allow_network))

    def _limits(self, options: Dict[str, Any]) -> Dict[str, Any]:
        timeout = options.get("timeout")
        memory = options.get("maxMemory", options.get("max_memory"))
        return {
            "timeout_ms": self.settings.default_timeout_ms if timeout is None else timeout,
            "max_memory": self.settings.default_max_memory if memory is None else memory,
        }

    def build_request(self, code: str, language, options: Optional[Dict[str, Any]] = None) -> ExecutionRequest:
        opts = options or {}
        return ExecutionRequest(code=code, language=language, stdin=opts.get("input") or "", **self._limits(opts))

    def execute_code(self, code: str, language, options: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        req = self.build_request(code, language, options)
        with self.gate.slot():
            return self.sandbox.execute(req)

    def validate_syntax(self, code: str, language) -> ValidationResult:
        if code is None or language is None:
            raise MissingCodeError()
        return self.validator.validate(code, Language.parse(language))

    def run_tests(self, code: str, language, test_cases: Iterable,
                  options: Optional[Dict[str, Any]] = None) -> TestBatchResult:
        opts = options or {}
        return self.harness.run_tests(
            code, language, test_cases,
            HarnessOptions(concurrency=opts.get("concurrency"), **self._limits(opts)),
        )
