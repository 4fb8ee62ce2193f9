from __future__ import annotations

import logging
import os
import sys
import json
import time
from typing import Optional


TEXT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 1700000000000, "lvl": "INFO", "name": "uploader", "msg": "text", "extra": {...} }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(record.created * 1000) if record.created else int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        # structured fields go through extra={"extra": {...}}
        if hasattr(record, "extra") and isinstance(record.extra, dict):  # type: ignore[attr-defined]
            payload["extra"] = record.extra  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure the root logger once.

    Level precedence: explicit `level`, env LOG_LEVEL, INFO.
    Format precedence: explicit `fmt`, env LOG_FORMAT ("json" | "text"), json.
    """
    root = logging.getLogger()
    if getattr(root, "_webar_configured", False):
        if level:
            root.setLevel(_resolve_level(level))
        return

    lvl = _resolve_level(level or os.environ.get("LOG_LEVEL") or "INFO")
    style = (fmt or os.environ.get("LOG_FORMAT") or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if style == "text" else JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    root._webar_configured = True  # type: ignore[attr-defined]


def _resolve_level(name: str) -> int:
    lvl = getattr(logging, str(name).upper(), None)
    return lvl if isinstance(lvl, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Module logger for entry points; makes sure the root is configured."""
    setup_logging()
    return logging.getLogger(name)
