from __future__ import annotations

import logging
import random
import uuid
from typing import Callable

from pydantic import BaseModel, Field, model_validator

from app.config import Settings
from app.core.clock import now_ms
from app.domain.errors import UpstreamSigningError, ValidationError
from app.domain.models import (
    FungibleAsset,
    HopWallet,
    NativeAsset,
    RoutingPlan,
    TransferRecord,
    TransferState,
)
from app.domain.transfer_status import TransferStatus
from app.services.fees import FeePolicy
from chain.chains import is_valid_address, normalize_address
from db.repos.transfer_store import TransferStore
from signer.signer import Signer

logger = logging.getLogger(__name__)


class RoutingParams(BaseModel):
    min_hops: int = Field(default=7, ge=1)
    max_hops: int = Field(default=12, ge=1)
    min_hop_delay_ms: int = Field(default=500, ge=0)
    max_hop_delay_ms: int = Field(default=3000, ge=0)
    hop_overhead_ms: int = Field(default=2000, ge=0)
    min_total_ms: int = Field(default=120_000, ge=0)
    max_total_ms: int = Field(default=300_000, ge=0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "RoutingParams":
        if self.min_hops > self.max_hops:
            raise ValueError("min_hops must be <= max_hops")
        if self.min_hop_delay_ms > self.max_hop_delay_ms:
            raise ValueError("min_hop_delay_ms must be <= max_hop_delay_ms")
        if self.min_total_ms > self.max_total_ms:
            raise ValueError("min_total_ms must be <= max_total_ms")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "RoutingParams":
        return cls(
            min_hops=settings.min_hops,
            max_hops=settings.max_hops,
            min_hop_delay_ms=settings.min_hop_delay_ms,
            max_hop_delay_ms=settings.max_hop_delay_ms,
            hop_overhead_ms=settings.hop_overhead_ms,
            min_total_ms=settings.min_total_ms,
            max_total_ms=settings.max_total_ms,
        )


def estimate_completion_ms(hop_delays_ms: list[int], params: RoutingParams, rng: random.Random) -> int:
    """
    Reported ETA never drops below a random floor so it cannot leak the
    real (possibly much faster) execution time.
    """
    raw = sum(hop_delays_ms) + len(hop_delays_ms) * params.hop_overhead_ms
    floor = rng.randint(params.min_total_ms, params.max_total_ms)
    return max(raw, floor)


class PlanBuilder:
    """
    Builds an immutable RoutingPlan plus its initial TransferState and
    persists the record at awaiting_funding.

    All randomness comes from the injected `rng` so tests can fix the seed.
    """

    def __init__(
        self,
        *,
        signer: Signer,
        store: TransferStore,
        fee_policy: FeePolicy,
        params: RoutingParams | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.signer = signer
        self.store = store
        self.fee_policy = fee_policy
        self.params = params or RoutingParams()
        self.rng = rng or random.SystemRandom()
        self.clock = clock
        self.id_factory = id_factory

    def _validate(
        self,
        from_wallet: str,
        to_wallet: str,
        asset: NativeAsset | FungibleAsset,
        amount: int,
    ) -> tuple[str, str]:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("amount must be an integer number of smallest units")
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if not is_valid_address(from_wallet):
            raise ValidationError("Invalid fromWallet address")
        if to_wallet and not is_valid_address(to_wallet):
            raise ValidationError("Invalid toWallet address")
        if isinstance(asset, FungibleAsset) and not is_valid_address(asset.mint):
            raise ValidationError("Invalid asset mint address")

        return normalize_address(from_wallet), (normalize_address(to_wallet) if to_wallet else "")

    def _create_hops(self, plan_id: str, hop_count: int) -> list[HopWallet]:
        # accumulate-then-commit: nothing is persisted until every hop exists
        hops: list[HopWallet] = []
        for i in range(hop_count):
            try:
                hops.append(self.signer.create_wallet(idempotency_key=f"transfer:{plan_id}:wallet:{i}"))
            except UpstreamSigningError as e:
                orphans = [h.wallet_id for h in hops]
                if orphans:
                    logger.warning(
                        "hop wallet creation failed at %d/%d; orphaned wallet ids: %s",
                        i + 1,
                        hop_count,
                        ",".join(orphans),
                    )
                raise UpstreamSigningError(str(e), orphan_wallet_ids=orphans) from e
        return hops

    def create_plan(
        self,
        from_wallet: str,
        to_wallet: str,
        asset: NativeAsset | FungibleAsset,
        amount: int,
    ) -> TransferRecord:
        from_wallet, to_wallet = self._validate(from_wallet, to_wallet, asset, amount)

        fee, fee_applied = self.fee_policy.quote(from_wallet, amount)
        net_amount = amount - fee

        p = self.params
        hop_count = self.rng.randint(p.min_hops, p.max_hops)
        plan_id = self.id_factory()

        hops = self._create_hops(plan_id, hop_count)

        hop_delays_ms = [self.rng.randint(p.min_hop_delay_ms, p.max_hop_delay_ms) for _ in range(hop_count)]
        now = self.clock()

        plan = RoutingPlan(
            id=plan_id,
            from_wallet=from_wallet,
            to_wallet=to_wallet,
            asset=asset,
            amount=amount,
            net_amount=net_amount,
            hop_count=hop_count,
            hops=hops,
            hop_delays_ms=hop_delays_ms,
            fee_applied=fee_applied,
            fee=fee,
            estimated_completion_ms=estimate_completion_ms(hop_delays_ms, p, self.rng),
            created_at_unix=now // 1000,
        )
        state = TransferState(
            funded=False,
            fee_collected=(fee == 0),
            current_hop=0,
            hop_results=[],
            next_action_at_unix_ms=now,
        )

        record = self.store.create(
            TransferRecord(
                id=plan_id,
                status=TransferStatus.AWAITING_FUNDING,
                version=1,
                plan=plan,
                state=state,
            )
        )
        logger.info(
            "plan %s created: hops=%d fee=%d fee_applied=%s",
            plan_id,
            hop_count,
            fee,
            fee_applied,
        )
        return record
