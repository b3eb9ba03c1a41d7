from __future__ import annotations


class TransferError(Exception):
    """Base class for every error raised by the transfer engine."""


class ValidationError(TransferError):
    """Bad plan input. Raised before any side effect."""


class ConfigurationError(TransferError):
    """Required configuration is missing (e.g. fee destination)."""


class NotFoundError(TransferError):
    pass


class ConcurrencyConflict(TransferError):
    """Compare-and-swap retries exhausted. Callers should retry the whole operation."""


class UpstreamError(TransferError):
    pass


class UpstreamSigningError(UpstreamError):
    def __init__(self, message: str, *, orphan_wallet_ids: list[str] | None = None):
        super().__init__(message)
        self.orphan_wallet_ids = list(orphan_wallet_ids or [])


class UpstreamLedgerError(UpstreamError):
    pass


class ReconciliationInconclusive(TransferError):
    """
    A stale in-flight lease was cleared without finding a matching transfer.

    Never raised out of the executor; it is logged so operators can spot
    possible duplicate sends.
    """
