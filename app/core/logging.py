from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from app.core.context import get_transfer_id
from app.config import get_settings

# structured fields callers may pass via `extra=`
EXTRA_FIELDS = ("action", "hop", "signature", "call", "duration_ms")


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {k: getattr(record, k) for k in EXTRA_FIELDS if getattr(record, k, None) is not None}


class TransferIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.transfer_id = get_transfer_id() or "-"
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": utc_iso(),
            "level": record.levelname,
            "logger": record.name,
            "transfer_id": getattr(record, "transfer_id", "-"),
            "msg": record.getMessage(),
        }
        payload.update(_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        transfer_id = getattr(record, "transfer_id", "-")
        line = f"{utc_iso()} {record.levelname:<7} [{transfer_id}] {record.name}: {record.getMessage()}"
        extras = _extras(record)
        if extras:
            line += " " + " ".join(f"{k}={v}" for k, v in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging() -> None:
    settings = get_settings()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TransferIdFilter())
    handler.setFormatter(JsonFormatter() if settings.log_json else TextFormatter())
    root.addHandler(handler)

    # RPC and HTTP client libraries are chatty at INFO
    for name in ("uvicorn.access", "web3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
