from __future__ import annotations

import logging
import time
from typing import Any, Callable, TypeVar

from app.domain.errors import TransferError, UpstreamError

T = TypeVar("T")

logger = logging.getLogger(__name__)


def run_call(
    *,
    call_name: str,
    request: Any,
    fn: Callable[[], T],
    error_cls: type[UpstreamError],
) -> T:
    """
    Generic remote call wrapper.

    - Logs start / finish with duration
    - Executes fn()
    - Re-raises failures as error_cls (engine errors pass through untouched)
    """
    started = time.monotonic()
    logger.debug("call %s started request=%s", call_name, request)

    try:
        result = fn()
    except TransferError:
        logger.warning("call %s failed after %.0fms", call_name, (time.monotonic() - started) * 1000)
        raise
    except Exception as e:
        logger.warning(
            "call %s failed after %.0fms: %s: %s",
            call_name,
            (time.monotonic() - started) * 1000,
            type(e).__name__,
            e,
        )
        raise error_cls(f"{call_name} failed: {e}") from e

    logger.info(
        "call %s ok",
        call_name,
        extra={"call": call_name, "duration_ms": round((time.monotonic() - started) * 1000)},
    )
    return result
