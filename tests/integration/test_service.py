import pytest

from coderunner.core.errors import EmptyTestSuiteError, UnsupportedLanguageError

pytestmark = pytest.mark.integration


def test_run_tests_scores_half(service):
    batch = service.run_tests("print(input())", "python", [
        {"input": "a", "expectedOutput": "a"},
        {"input": "b", "expectedOutput": "c"},
    ])
    d = batch.to_dict()
    assert d["score"] == 50.0
    assert d["passedTests"] == 1
    assert d["totalTests"] == 2
    assert [r["actualOutput"] for r in d["testResults"]] == ["a", "b"]


def test_many_cases_keep_order(service):
    cases = [{"input": str(i), "expectedOutput": str(i * 2)} for i in range(10)]
    batch = service.run_tests("print(int(input()) * 2)", "python", cases)
    assert batch.passed_count == 10
    assert [r.input for r in batch.per_case_results] == [str(i) for i in range(10)]
    assert service.gate.in_flight == 0


def test_timeout_option(service):
    batch = service.run_tests("import time\ntime.sleep(5)", "python",
                              [{"input": "", "expectedOutput": ""}], {"timeout": 300})
    res = batch.per_case_results[0]
    assert res.timed_out and not res.passed


def test_execute_code_options(service):
    res = service.execute_code("print(input())", "python", {"input": "hey", "timeout": 2000, "maxMemory": "64m"})
    assert res.output == "hey"


def test_caller_errors(service):
    with pytest.raises(UnsupportedLanguageError):
        service.execute_code("x", "ruby")
    with pytest.raises(EmptyTestSuiteError):
        service.run_tests("print(1)", "python", [])


def test_validate_syntax(service):
    assert service.validate_syntax("x = 1", "python").valid
    assert not service.validate_syntax("x = ", "python").valid
