from __future__ import annotations

from enum import Enum


class TransferStatus(str, Enum):
    AWAITING_FUNDING = "awaiting_funding"
    ROUTING = "routing"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL = {
    TransferStatus.COMPLETE,
    TransferStatus.FAILED,
}

ALLOWED = {
    TransferStatus.AWAITING_FUNDING: {
        TransferStatus.AWAITING_FUNDING,
        TransferStatus.ROUTING,
        TransferStatus.FAILED,
    },
    TransferStatus.ROUTING: {
        TransferStatus.ROUTING,
        TransferStatus.COMPLETE,
        TransferStatus.FAILED,
    },
    TransferStatus.COMPLETE: set(),
    TransferStatus.FAILED: set(),
}


def is_terminal(status: TransferStatus) -> bool:
    return status in TERMINAL


def assert_valid_transition(frm: TransferStatus, to: TransferStatus) -> None:
    # same-status writes; what a terminal record may change is checked by the store
    if frm == to:
        return

    if frm in TERMINAL:
        raise ValueError(f"Cannot transition from terminal status: {frm.value}")

    if to not in ALLOWED.get(frm, set()):
        raise ValueError(f"Invalid status transition: {frm.value} -> {to.value}")
