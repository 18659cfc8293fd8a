from __future__ import annotations
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .core.errors import CallerInputError
from .services.code_execution import CodeExecutionService

app = FastAPI(title="coderunner")


@lru_cache(maxsize=1)
def get_service() -> CodeExecutionService:
    return CodeExecutionService()


@app.exception_handler(CallerInputError)
def caller_input_error(request: Request, exc: CallerInputError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# --------- Schemas ---------
class TestCaseIn(BaseModel):
    input: str = ""
    expectedOutput: str = ""
    description: Optional[str] = None


class RunReq(BaseModel):
    code: Optional[str] = None
    language: Optional[str] = None
    input: Optional[str] = None


class ValidateReq(BaseModel):
    code: Optional[str] = None
    language: Optional[str] = None


class ExecuteReq(BaseModel):
    code: Optional[str] = None
    language: Optional[str] = None
    testCases: Optional[List[TestCaseIn]] = None
    customInput: Optional[str] = None


class TestsReq(BaseModel):
    code: Optional[str] = None
    language: Optional[str] = None
    testCases: List[TestCaseIn] = []
    timeout: Optional[int] = None


class ValidateRes(BaseModel):
    valid: bool
    errors: List[str]


# --------- Endpoints ---------

@app.get("/")
def root():
    return {"message": "coderunner sandbox"}


@app.get("/health")
def health(svc: CodeExecutionService = Depends(get_service)):
    return {"ok": True, "in_flight": svc.gate.in_flight, "capacity": svc.gate.capacity}


def _run_payload(svc: CodeExecutionService, code, language, stdin: str) -> dict:
    res = svc.execute_code(code, language, {"input": stdin})
    return {"success": res.error is None, **res.to_dict()}


@app.post("/run")
def run(req: RunReq, svc: CodeExecutionService = Depends(get_service)):
    return _run_payload(svc, req.code, req.language, req.input or "")


@app.post("/validate", response_model=ValidateRes)
def validate(req: ValidateReq, svc: CodeExecutionService = Depends(get_service)):
    return svc.validate_syntax(req.code, req.language).to_dict()


@app.post("/execute")
def execute(req: ExecuteReq, svc: CodeExecutionService = Depends(get_service)):
    """Custom input wins over test cases; with neither, a plain run with empty stdin."""
    if req.customInput is not None:
        return _run_payload(svc, req.code, req.language, req.customInput)
    if req.testCases:
        batch = svc.run_tests(req.code, req.language, [t.model_dump() for t in req.testCases])
        return {"success": True, **batch.to_dict()}
    return _run_payload(svc, req.code, req.language, "")


@app.post("/tests")
def tests(req: TestsReq, svc: CodeExecutionService = Depends(get_service)):
    opts = {"timeout": req.timeout} if req.timeout is not None else {}
    batch = svc.run_tests(req.code, req.language, [t.model_dump() for t in req.testCases], opts)
    return {"success": True, **batch.to_dict()}
