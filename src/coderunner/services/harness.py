from __future__ import annotations
import dataclasses
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from ..core.errors import EmptyTestSuiteError
from ..core.models import (
    DEFAULT_MAX_MEMORY,
    DEFAULT_TIMEOUT_MS,
    ExecutionRequest,
    TestBatchResult,
    TestCase,
    TestCaseResult,
)
from ..core.utils import outputs_match
from ..executor.sandbox import ExecutionSandbox
from ..logging import get_logger
from .gate import AdmissionGate

log = get_logger(__name__)


@dataclass(frozen=True)
class HarnessOptions:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_memory: Union[int, str] = DEFAULT_MAX_MEMORY
    concurrency: Optional[int] = None


class TestHarness:
    """
    Runs one submission against an ordered list of test cases. Each case is
    its own sandboxed run; a case that blows up is recorded as failed and the
    batch carries on. Results come back in input order whatever order the
    pool finished them in.
    """

    __test__ = False

    def __init__(self, sandbox: ExecutionSandbox, gate: Optional[AdmissionGate] = None, workers: int = 4):
        self.sandbox = sandbox
        self.gate = gate
        self.workers = max(1, workers)

    def run_tests(self, code: str, language, test_cases: Iterable, options: Optional[HarnessOptions] = None) -> TestBatchResult:
        opts = options or HarnessOptions()
        cases = [c if isinstance(c, TestCase) else TestCase.from_dict(c) for c in (test_cases or [])]
        # caller input errors surface here, before anything is spawned
        template = ExecutionRequest(code=code, language=language,
                                    timeout_ms=opts.timeout_ms, max_memory=opts.max_memory)
        if not cases:
            raise EmptyTestSuiteError()

        results: List[Optional[TestCaseResult]] = [None] * len(cases)
        workers = min(len(cases), opts.concurrency or self.workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="harness") as pool:
            futures = {pool.submit(self._run_case, idx, template, case): idx for idx, case in enumerate(cases)}
            for fut in as_completed(futures):
                results[futures[fut]] = fut.result()

        batch = TestBatchResult.from_cases(results)
        log.info("harness.finished", language=template.language.value, passed=batch.passed_count,
                 total=batch.total_count, score=batch.score_percent)
        return batch

    def _execute(self, request: ExecutionRequest):
        if self.gate is None:
            return self.sandbox.execute(request)
        with self.gate.slot():
            return self.sandbox.execute(request)

    def _run_case(self, idx: int, template: ExecutionRequest, case: TestCase) -> TestCaseResult:
        try:
            res = self._execute(dataclasses.replace(template, stdin=case.input))
        except Exception as e:
            log.exception("harness.case_failed", index=idx)
            return TestCaseResult(
                input=case.input,
                expected_output=case.expected_output,
                actual_output="",
                passed=False,
                error=f"Internal execution error: {e}",
                execution_time_ms=0,
                description=case.description,
            )

        # a crashing program can't pass on matching partial output
        passed = res.exit_code == 0 and outputs_match(res.stdout, case.expected_output)
        return TestCaseResult(
            input=case.input,
            expected_output=case.expected_output,
            actual_output=res.output,
            passed=passed,
            error=res.error,
            execution_time_ms=res.execution_time_ms,
            description=case.description,
            exit_code=res.exit_code,
            timed_out=res.timed_out,
            memory_exceeded=res.memory_exceeded,
        )
