from __future__ import annotations
from typing import Dict, Mapping, Optional, Type

from ..core.models import Language
from .base import Runner
from .node_runner import NodeRunner
from .python_runner import PythonRunner

RUNNERS: Dict[Language, Type[Runner]] = {
    Language.PYTHON: PythonRunner,
    Language.JAVASCRIPT: NodeRunner,
}

DEFAULT_BINARIES = {
    Language.PYTHON: "python3",
    Language.JAVASCRIPT: "node",
}


def get_runner(language, runtimes: Optional[Mapping[str, str]] = None) -> Runner:
    lang = Language.parse(language)
    binary = (runtimes or {}).get(lang.value) or DEFAULT_BINARIES[lang]
    return RUNNERS[lang](binary)
