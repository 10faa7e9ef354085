"""
JSON-lines logging shared by the builder, the gateway and the CLI.

    log = get_logger("gateway.router")
    log.info("route", extra={"extra": {"url": url, "category": "tile"}})

emits

    {"t": 1700000000000, "lvl": "INFO", "name": "gateway.router", "msg": "route",
     "extra": {"url": "...", "category": "tile"}}

The level comes from setup_logging(level), else $LOG_LEVEL, else INFO.
Chatty third-party loggers (PIL plugin probing, urllib3 connection pool)
are held at WARNING so tile builds and upstream fetches stay readable.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, Optional


_CONFIGURED_ATTR = "_pyramid_configured"
_QUIET_LOGGERS = ("PIL", "urllib3")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "t": int(record.created * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        ctx = getattr(record, "extra", None)
        if isinstance(ctx, dict) and ctx:
            payload["extra"] = ctx
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # numpy scalars, Paths and exceptions end up in `extra`
        return json.dumps(payload, ensure_ascii=False, default=str)


def resolve_level(level: Optional[str] = None) -> int:
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = logging.getLevelName(name)
    return lvl if isinstance(lvl, int) else logging.INFO


def setup_logging(level: Optional[str] = None, *, force: bool = False) -> None:
    """
    Install one stdout handler with JSON output on the root logger.

    Repeated calls are no-ops unless `force=True`, which the CLI and the
    server entrypoint use once the YAML config has supplied a level.
    """
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_ATTR, False) and not force:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(resolve_level(level))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    setattr(root, _CONFIGURED_ATTR, True)


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
