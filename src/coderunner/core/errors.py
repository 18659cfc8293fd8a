from __future__ import annotations


class SandboxError(Exception):
    """Base class for everything the engine raises on purpose."""


class CallerInputError(SandboxError, ValueError):
    """Bad request from the caller. Raised before any process is spawned."""


class UnsupportedLanguageError(CallerInputError):
    def __init__(self, language):
        self.language = language
        super().__init__(f'Unsupported language: {language!r}. Use "python" or "javascript"')


class MissingCodeError(CallerInputError):
    def __init__(self):
        super().__init__("Code and language are required")


class InvalidLimitError(CallerInputError):
    pass


class EmptyTestSuiteError(CallerInputError):
    def __init__(self):
        super().__init__("At least one test case is required")


class EngineFault(SandboxError, RuntimeError):
    """Sandbox setup, filesystem or spawn failure. Never leaves ExecutionSandbox.execute."""
