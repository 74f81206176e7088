"""JSON-lines logging for the daemon and CLI."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from .time import utc_now_iso

_STANDARD_ATTRS = set(
    logging.LogRecord("x", logging.INFO, "x", 0, "x", None, None).__dict__.keys()
) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    def __init__(self, *, component: str) -> None:
        super().__init__()
        self.component = component

    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": utc_now_iso(),
            "level": record.levelname,
            "component": self.component,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k in _STANDARD_ATTRS or k.startswith("_"):
                continue
            try:
                json.dumps(v)
                out[k] = v
            except Exception:
                out[k] = repr(v)
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False)


def setup_root_json_logging(
    *,
    component: str,
    level: str = "INFO",
    log_path: Optional[Path] = None,
    force: bool = False,
) -> None:
    root = logging.getLogger()
    if root.handlers and not force:
        return
    for h in list(root.handlers):
        root.removeHandler(h)
        try:
            h.close()
        except Exception:
            pass

    handler: logging.Handler
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_path), encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonLineFormatter(component=component))
    root.addHandler(handler)
    root.setLevel(str(level or "INFO").strip().upper() or "INFO")
