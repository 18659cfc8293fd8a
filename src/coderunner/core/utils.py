from __future__ import annotations
import random, re, string, time

from .errors import InvalidLimitError

_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}
_MEM_RE = re.compile(r"^\s*(\d+)\s*([kmg]?)(?:i?b)?\s*$", re.IGNORECASE)


def new_run_id() -> str:
    suf = "".join(random.choice(string.hexdigits.lower()) for _ in range(6))
    return f"{int(time.time())}-{suf}"


def parse_memory(value) -> int:
    """
    Byte budget from an int or a docker-style token: "128m", "512k", "1g",
    "64MiB", "1048576". Suffixes are binary multiples.
    """
    if isinstance(value, bool):
        raise InvalidLimitError(f"invalid memory limit: {value!r}")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        m = _MEM_RE.match(value)
        if not m:
            raise InvalidLimitError(f"invalid memory limit: {value!r}")
        n = int(m.group(1)) * _UNITS[m.group(2).lower()]
    else:
        raise InvalidLimitError(f"invalid memory limit: {value!r}")
    if n <= 0:
        raise InvalidLimitError(f"memory limit must be positive, got {value!r}")
    return n


def outputs_match(actual: str | None, expected: str | None) -> bool:
    # surrounding whitespace only, internal whitespace is significant
    return (actual or "").strip() == (expected or "").strip()
