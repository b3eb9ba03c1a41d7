from __future__ import annotations

import logging

from app.domain.errors import ConfigurationError
from chain.probe import ChainProbe

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


def calculate_fee(amount: int, *, apply_fee: bool, fee_bps: int) -> int:
    if not apply_fee or fee_bps <= 0:
        return 0
    return (int(amount) * int(fee_bps)) // BPS_DENOMINATOR


class FeePolicy:
    """
    Holders of the configured holder token route for free; everyone else
    pays fee_bps basis points, collected from hop-0 before the first hop.
    """

    def __init__(
        self,
        *,
        probe: ChainProbe | None,
        fee_bps: int,
        holder_token_mint: str | None = None,
        treasury_wallet: str | None = None,
    ):
        self.probe = probe
        self.fee_bps = fee_bps
        self.holder_token_mint = holder_token_mint
        self.treasury_wallet = treasury_wallet

    def is_holder(self, wallet: str) -> bool:
        if not self.holder_token_mint or self.probe is None:
            return False
        return self.probe.is_holder(wallet, self.holder_token_mint)

    def quote(self, from_wallet: str, amount: int) -> tuple[int, bool]:
        """
        Returns (fee, fee_applied). Raises ConfigurationError when a fee is
        due but no fee destination is configured.
        """
        fee_applied = not self.is_holder(from_wallet)
        fee = calculate_fee(amount, apply_fee=fee_applied, fee_bps=self.fee_bps)

        if fee > 0 and not self.treasury_wallet:
            raise ConfigurationError("TREASURY_WALLET is required when fees are enabled (non-holders)")

        return fee, fee_applied
