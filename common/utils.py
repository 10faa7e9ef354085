from __future__ import annotations

from typing import Any, Dict, Mapping
from datetime import datetime, timezone
from urllib.parse import quote, unquote
import copy
import time


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def clamp(v: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, v)))


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` into a copy of `base` (dicts only; other values replace)."""
    out: Dict[str, Any] = copy.deepcopy(dict(base))
    for k, v in (override or {}).items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def key_to_filename(key: str) -> str:
    """Flatten a logical path ("/tiles/2/3_1.png") into a single safe file name."""
    return quote(key, safe="")


def filename_to_key(name: str) -> str:
    return unquote(name)


class Stopwatch:
    """
    Elapsed-time helper for log lines.

        sw = Stopwatch()
        ...
        log.info("level done", extra={"extra": {"ms": sw.ms()}})
    """

    __slots__ = ("_t0",)

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def ms(self) -> float:
        return round((time.perf_counter() - self._t0) * 1e3, 1)
