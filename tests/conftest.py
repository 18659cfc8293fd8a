import sys

import pytest

from coderunner.executor.sandbox import ExecutionSandbox
from coderunner.services.code_execution import CodeExecutionService
from coderunner.settings import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(
        work_root=tmp_path / "work",
        runtimes={"python": sys.executable, "javascript": "node"},
        poll_interval_ms=20,
        kill_grace_ms=300,
        max_concurrency=4,
        harness_workers=3,
    )


@pytest.fixture
def sandbox(settings):
    return ExecutionSandbox(settings)


@pytest.fixture
def service(settings):
    return CodeExecutionService(settings=settings)
