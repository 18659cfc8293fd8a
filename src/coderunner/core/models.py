from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .errors import InvalidLimitError, MissingCodeError, UnsupportedLanguageError
from .utils import parse_memory

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_MAX_MEMORY = 128 * 1024 * 1024


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"

    @classmethod
    def parse(cls, value) -> "Language":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedLanguageError(value) from None


@dataclass(frozen=True)
class Limits:
    """What the limiter enforces for one execution."""
    wall_timeout_ms: int
    memory_bytes: int
    cpu_seconds: int
    address_space_bytes: Optional[int]  # None: interpreter can't live under RLIMIT_AS
    nofile: int
    fsize_bytes: int
    nproc: Optional[int]
    kill_grace_ms: int


@dataclass(frozen=True)
class ExecutionRequest:
    code: str
    language: Language
    stdin: str = ""
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_memory: int = DEFAULT_MAX_MEMORY

    def __post_init__(self):
        if self.code is None or self.language is None:
            raise MissingCodeError()
        object.__setattr__(self, "language", Language.parse(self.language))
        object.__setattr__(self, "stdin", self.stdin or "")
        if isinstance(self.timeout_ms, bool) or not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            raise InvalidLimitError(f"timeout must be a positive number of milliseconds, got {self.timeout_ms!r}")
        object.__setattr__(self, "max_memory", parse_memory(self.max_memory))


@dataclass(frozen=True)
class ExecutionResult:
    stdout: str
    stderr: str
    error: Optional[str]
    exit_code: Optional[int]
    execution_time_ms: int
    timed_out: bool = False
    memory_exceeded: bool = False
    output_truncated: bool = False

    @classmethod
    def engine_fault(cls, message: str, execution_time_ms: int = 0) -> "ExecutionResult":
        return cls(
            stdout="",
            stderr="",
            error=f"Internal execution error: {message}",
            exit_code=None,
            execution_time_ms=execution_time_ms,
        )

    @property
    def output(self) -> str:
        return self.stdout.strip()

    def to_dict(self) -> dict:
        return {
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "executionTime": self.execution_time_ms,
            "timedOut": self.timed_out,
            "memoryExceeded": self.memory_exceeded,
        }


@dataclass(frozen=True)
class TestCase:
    input: str = ""
    expected_output: str = ""
    description: Optional[str] = None

    __test__ = False  # not a pytest class

    @classmethod
    def from_dict(cls, data: dict) -> "TestCase":
        return cls(
            input=data.get("input") or "",
            expected_output=data.get("expectedOutput", data.get("expected_output")) or "",
            description=data.get("description"),
        )


@dataclass(frozen=True)
class TestCaseResult:
    input: str
    expected_output: str
    actual_output: str
    passed: bool
    error: Optional[str]
    execution_time_ms: int
    description: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    memory_exceeded: bool = False

    __test__ = False

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "input": self.input,
            "expectedOutput": self.expected_output,
            "actualOutput": self.actual_output,
            "passed": self.passed,
            "error": self.error,
            "exitCode": self.exit_code,
            "executionTime": self.execution_time_ms,
            "timedOut": self.timed_out,
            "memoryExceeded": self.memory_exceeded,
        }


@dataclass(frozen=True)
class TestBatchResult:
    score_percent: float
    passed_count: int
    total_count: int
    per_case_results: Tuple[TestCaseResult, ...] = field(default_factory=tuple)

    __test__ = False

    @classmethod
    def from_cases(cls, results) -> "TestBatchResult":
        results = tuple(results)
        total = len(results)
        passed = sum(1 for r in results if r.passed)
        score = (passed / total) * 100 if total else 0.0
        return cls(score_percent=score, passed_count=passed, total_count=total, per_case_results=results)

    def to_dict(self) -> dict:
        return {
            "score": self.score_percent,
            "passedTests": self.passed_count,
            "totalTests": self.total_count,
            "testResults": [r.to_dict() for r in self.per_case_results],
        }


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors)}
