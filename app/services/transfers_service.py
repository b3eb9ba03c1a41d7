from __future__ import annotations

import logging
from functools import lru_cache

from app.config import Settings, get_settings
from app.services.fees import FeePolicy
from app.services.plan_builder import PlanBuilder, RoutingParams
from app.services.step_executor import StepExecutor
from chain.ledger import Web3Ledger
from chain.probe import ChainProbe
from db.repos.transfer_store import InMemoryTransferStore, SqlTransferStore, TransferStore
from db.session import get_sessionmaker
from signer.client import SigningServiceClient
from signer.signer import RemoteSigner, Signer

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> TransferStore:
    if settings.transfer_store.lower() == "memory":
        return InMemoryTransferStore(attempts=settings.store_attempts)
    return SqlTransferStore(get_sessionmaker(), attempts=settings.store_attempts)


def build_probe(settings: Settings) -> ChainProbe:
    return ChainProbe(Web3Ledger(scan_blocks=settings.native_scan_blocks))


def build_signer(settings: Settings) -> Signer:
    client = SigningServiceClient(
        base_url=settings.signer_base_url,
        app_id=settings.signer_app_id,
        app_secret=settings.signer_app_secret,
        timeout_s=settings.signer_timeout_s,
    )
    if not settings.signer_sponsor_gas:
        logger.warning("Gas sponsorship disabled; hop wallets must be pre-funded with native gas")
    return RemoteSigner(client, chain_id=settings.chain_id, sponsor_gas=settings.signer_sponsor_gas)


@lru_cache
def get_store() -> TransferStore:
    return build_store(get_settings())


@lru_cache
def get_probe() -> ChainProbe:
    return build_probe(get_settings())


@lru_cache
def get_signer() -> Signer:
    return build_signer(get_settings())


def get_plan_builder() -> PlanBuilder:
    settings = get_settings()
    probe = get_probe()
    return PlanBuilder(
        signer=get_signer(),
        store=get_store(),
        fee_policy=FeePolicy(
            probe=probe,
            fee_bps=settings.fee_bps,
            holder_token_mint=settings.HOLDER_TOKEN_MINT,
            treasury_wallet=settings.TREASURY_WALLET,
        ),
        params=RoutingParams.from_settings(settings),
    )


def get_step_executor() -> StepExecutor:
    settings = get_settings()
    return StepExecutor(
        store=get_store(),
        probe=get_probe(),
        signer=get_signer(),
        treasury_wallet=settings.TREASURY_WALLET,
        stale_ms=settings.in_flight_stale_ms,
        funding_signature_timeout_ms=settings.funding_signature_timeout_ms,
        lookback=settings.reconcile_lookback,
        hold_final_hop=settings.hold_final_hop,
        min_total_ms=settings.min_total_ms,
        max_total_ms=settings.max_total_ms,
    )
