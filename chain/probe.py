from __future__ import annotations

import logging

from app.domain.errors import UpstreamLedgerError
from app.domain.models import FungibleAsset, NativeAsset
from chain.chains import same_address
from chain.ledger import Ledger
from tools.call_runner import run_call

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = 20


def _asset_request(asset: NativeAsset | FungibleAsset) -> dict:
    return asset.model_dump()


class ChainProbe:
    """
    Read-only ledger queries used by the executor:
    - balance checks (funding detection, holder status)
    - bounded lookback search for one exact transfer (crash reconciliation only)
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def get_balance(self, address: str, asset: NativeAsset | FungibleAsset) -> int:
        return run_call(
            call_name="ledger.get_balance",
            request={"address": address, "asset": _asset_request(asset)},
            fn=lambda: int(self.ledger.get_balance(address, asset)),
            error_cls=UpstreamLedgerError,
        )

    def get_signature_status(self, signature: str) -> str | None:
        return run_call(
            call_name="ledger.get_signature_status",
            request={"signature": signature},
            fn=lambda: self.ledger.get_signature_status(signature),
            error_cls=UpstreamLedgerError,
        )

    def is_holder(self, address: str, mint: str) -> bool:
        """
        Any positive balance of `mint` counts. Lookup failures count as
        non-holder so fee policy never blocks plan creation.
        """
        try:
            return self.get_balance(address, FungibleAsset(mint=mint)) > 0
        except UpstreamLedgerError as e:
            logger.warning("holder check failed for %s: %s", address, e)
            return False

    def find_recent_transfer(
        self,
        source: str,
        destination: str,
        amount: int,
        asset: NativeAsset | FungibleAsset,
        lookback: int = DEFAULT_LOOKBACK,
    ) -> str | None:
        """
        Search the `lookback` most recent transfers sent by `source` for one
        moving exactly `amount` of `asset` to `destination`.
        """
        transfers = run_call(
            call_name="ledger.get_recent_transfers",
            request={"address": source, "limit": lookback, "asset": _asset_request(asset)},
            fn=lambda: self.ledger.get_recent_transfers(source, lookback, asset=asset),
            error_cls=UpstreamLedgerError,
        )

        want_mint = asset.mint if isinstance(asset, FungibleAsset) else None
        for t in transfers[:lookback]:
            if not same_address(t.source, source):
                continue
            if not same_address(t.destination, destination):
                continue
            if int(t.amount) != int(amount):
                continue
            if want_mint is None:
                if t.mint is not None:
                    continue
            elif not same_address(t.mint, want_mint):
                continue
            return t.signature
        return None
