from __future__ import annotations

from contextvars import ContextVar
from typing import Optional

transfer_id_ctx: ContextVar[Optional[str]] = ContextVar("transfer_id", default=None)


def set_transfer_id(transfer_id: Optional[str]) -> None:
    transfer_id_ctx.set(transfer_id)


def get_transfer_id() -> Optional[str]:
    return transfer_id_ctx.get()
