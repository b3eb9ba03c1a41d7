import itertools
import os
import random

import pytest
from fastapi.testclient import TestClient

# Set test database before any imports
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("TRANSFER_STORE", "memory")

from app.config import get_settings
from app.domain.errors import UpstreamSigningError
from app.domain.models import FungibleAsset, HopWallet, NativeAsset
from app.services.fees import FeePolicy
from app.services.plan_builder import PlanBuilder, RoutingParams
from app.services.step_executor import StepExecutor
from chain.ledger import Ledger, LedgerTransfer
from chain.probe import ChainProbe
from db.base import Base
from db.repos.transfer_store import InMemoryTransferStore
from db.session import get_engine
from signer.signer import Signer

FROM_WALLET = "0x1111111111111111111111111111111111111111"
TO_WALLET = "0x2222222222222222222222222222222222222222"
TREASURY = "0x9999999999999999999999999999999999999999"
TOKEN = "0x5555555555555555555555555555555555555555"

START_MS = 1_760_000_000_000


class FakeClock:
    def __init__(self, start_ms: int = START_MS):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeLedger(Ledger):
    def __init__(self):
        self.balances: dict[tuple[str, str | None], int] = {}
        self.transfers: list[LedgerTransfer] = []
        self.signature_status: dict[str, str | None] = {}
        self.fail_with: Exception | None = None

    def _key(self, address: str, asset) -> tuple[str, str | None]:
        mint = asset.mint.lower() if isinstance(asset, FungibleAsset) else None
        return address.lower(), mint

    def set_balance(self, address: str, amount: int, asset=None) -> None:
        self.balances[self._key(address, asset or NativeAsset())] = amount

    def get_balance(self, address, asset):
        if self.fail_with:
            raise self.fail_with
        return self.balances.get(self._key(address, asset), 0)

    def get_recent_transfers(self, address, limit, *, asset=None):
        if self.fail_with:
            raise self.fail_with
        sent = [t for t in reversed(self.transfers) if t.source.lower() == address.lower()]
        return sent[:limit]

    def get_signature_status(self, signature):
        if self.fail_with:
            raise self.fail_with
        return self.signature_status.get(signature)

    def add_transfer(self, signature, source, destination, amount, asset=None) -> None:
        mint = asset.mint if isinstance(asset, FungibleAsset) else None
        self.transfers.append(
            LedgerTransfer(signature=signature, source=source, destination=destination, amount=amount, mint=mint)
        )


class FakeSigner(Signer):
    """
    Creates deterministic hop wallets and records every transfer. When
    `ledger` is set, sends also land in the fake ledger history.
    """

    def __init__(self, ledger: FakeLedger | None = None):
        self.ledger = ledger
        self._ids = itertools.count(1)
        self._sigs = itertools.count(1)
        self.created: list[HopWallet] = []
        self.sent: list[dict] = []
        self.fail_create_after: int | None = None
        self.fail_transfer: Exception | None = None

    def create_wallet(self, *, idempotency_key=None):
        if self.fail_create_after is not None and len(self.created) >= self.fail_create_after:
            raise UpstreamSigningError("signer.create_wallet failed: boom")
        n = next(self._ids)
        wallet = HopWallet(wallet_id=f"wallet-{n}", address="0x" + f"{0xA000 + n:040x}")
        self.created.append(wallet)
        return wallet

    def transfer(self, *, wallet_id, from_address, to_address, asset, amount, idempotency_key):
        if self.fail_transfer is not None:
            raise self.fail_transfer
        sig = f"sig-{next(self._sigs)}"
        self.sent.append(
            {
                "wallet_id": wallet_id,
                "from": from_address,
                "to": to_address,
                "asset": asset,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "signature": sig,
            }
        )
        if self.ledger is not None:
            self.ledger.add_transfer(sig, from_address, to_address, amount, asset)
        return sig


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create all tables before tests run, drop after all tests complete."""
    from db.models import Transfer  # noqa: F401

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    """Clean tables between tests to ensure isolation."""
    yield
    from db.session import get_sessionmaker
    from db.models import Transfer

    with get_sessionmaker()() as db:
        db.query(Transfer).delete()
        db.commit()


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def probe(ledger):
    return ChainProbe(ledger)


@pytest.fixture
def signer(ledger):
    return FakeSigner(ledger)


@pytest.fixture
def store():
    return InMemoryTransferStore()


@pytest.fixture
def make_builder(signer, store, probe, clock):
    def _make(*, hops=(3, 3), fee_bps=0, treasury=TREASURY, seed=7, holder_mint=None, **params):
        return PlanBuilder(
            signer=signer,
            store=store,
            fee_policy=FeePolicy(
                probe=probe,
                fee_bps=fee_bps,
                holder_token_mint=holder_mint,
                treasury_wallet=treasury,
            ),
            params=RoutingParams(min_hops=hops[0], max_hops=hops[1], **params),
            rng=random.Random(seed),
            clock=clock,
        )

    return _make


@pytest.fixture
def make_executor(signer, store, probe, clock):
    def _make(*, treasury=TREASURY, hold_final_hop=False, seed=11, **kwargs):
        return StepExecutor(
            store=store,
            probe=probe,
            signer=signer,
            treasury_wallet=treasury,
            hold_final_hop=hold_final_hop,
            rng=random.Random(seed),
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def client():
    from app.main import create_app

    app = create_app()
    with TestClient(app) as client:
        yield client
