import pytest

from app.domain.errors import ConcurrencyConflict, NotFoundError
from app.domain.models import (
    FungibleAsset,
    HopWallet,
    InFlight,
    RoutingPlan,
    TransferRecord,
    TransferState,
    TransferUpdate,
)
from app.domain.transfer_status import TransferStatus
from db.repos.transfer_store import InMemoryTransferStore, SqlTransferStore
from db.session import get_sessionmaker


def _record(transfer_id: str = "t-1") -> TransferRecord:
    hops = [HopWallet(wallet_id=f"w{i}", address=f"0x{i:040x}") for i in range(1, 4)]
    plan = RoutingPlan(
        id=transfer_id,
        from_wallet="0x1111111111111111111111111111111111111111",
        to_wallet="0x2222222222222222222222222222222222222222",
        asset=FungibleAsset(mint="0x5555555555555555555555555555555555555555"),
        amount=10**24,
        net_amount=10**24,
        hop_count=3,
        hops=hops,
        hop_delays_ms=[500, 600, 700],
        estimated_completion_ms=180_000,
        created_at_unix=1_760_000_000,
    )
    return TransferRecord(
        id=transfer_id,
        status=TransferStatus.AWAITING_FUNDING,
        plan=plan,
        state=TransferState(fee_collected=True, next_action_at_unix_ms=1),
    )


def _mark_routing(r: TransferRecord) -> TransferUpdate:
    s = r.state
    s.funded = True
    return TransferUpdate(status=TransferStatus.ROUTING, state=s)


@pytest.fixture(params=["memory", "sql"])
def any_store(request):
    if request.param == "memory":
        return InMemoryTransferStore()
    return SqlTransferStore(get_sessionmaker())


def test_create_and_get(any_store):
    created = any_store.create(_record())
    assert created.version == 1
    assert created.created_at is not None

    fetched = any_store.get("t-1")
    assert fetched.plan == created.plan
    assert fetched.plan.amount == 10**24
    assert fetched.status == TransferStatus.AWAITING_FUNDING


def test_get_missing_returns_none(any_store):
    assert any_store.get("nope") is None


def test_duplicate_create_rejected(any_store):
    any_store.create(_record())
    with pytest.raises(ValueError):
        any_store.create(_record())


def test_mutate_bumps_version(any_store):
    any_store.create(_record())
    updated = any_store.mutate("t-1", _mark_routing)
    assert updated.version == 2
    assert updated.status == TransferStatus.ROUTING
    assert updated.state.funded is True
    assert any_store.get("t-1").version == 2


def test_conditional_update_rejects_stale_version(any_store):
    rec = any_store.create(_record())
    any_store.mutate("t-1", _mark_routing)

    result = any_store.conditional_update(
        "t-1",
        expected_version=rec.version,
        status=TransferStatus.FAILED,
        state=rec.state,
    )
    assert result is None
    assert any_store.get("t-1").status == TransferStatus.ROUTING


def test_mutate_missing_raises_not_found(any_store):
    with pytest.raises(NotFoundError):
        any_store.mutate("missing", _mark_routing)


def test_mutate_rejects_invalid_transition(any_store):
    any_store.create(_record())

    def complete(r):
        return TransferUpdate(status=TransferStatus.COMPLETE, state=r.state)

    with pytest.raises(ValueError):
        any_store.mutate("t-1", complete)
    assert any_store.get("t-1").version == 1


def test_mutate_retries_after_losing_race():
    store = InMemoryTransferStore()
    store.create(_record())
    calls = []

    def fn(r):
        calls.append(r.version)
        if len(calls) == 1:
            # another writer lands between our read and our write
            store.mutate("t-1", lambda x: TransferUpdate(status=x.status, state=x.state))
        return _mark_routing(r)

    updated = store.mutate("t-1", fn)
    assert calls == [1, 2]
    assert updated.version == 3
    assert updated.status == TransferStatus.ROUTING


def test_mutate_exhausts_attempts():
    store = InMemoryTransferStore(attempts=3)
    store.create(_record())
    calls = []

    def always_lose(r):
        calls.append(r.version)
        store.mutate("t-1", lambda x: TransferUpdate(status=x.status, state=x.state), attempts=1)
        return _mark_routing(r)

    with pytest.raises(ConcurrencyConflict):
        store.mutate("t-1", always_lose)
    assert len(calls) == 3


def test_mutate_fn_gets_private_copy():
    store = InMemoryTransferStore()
    store.create(_record())

    def scribble(r):
        r.state.last_error = "scratch"
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError):
        store.mutate("t-1", scribble)
    assert store.get("t-1").state.last_error is None


def test_sql_store_persists_last_error_column():
    from db.models import Transfer

    store = SqlTransferStore(get_sessionmaker())
    store.create(_record())

    def fail(r):
        s = r.state
        s.last_error = "boom"
        return TransferUpdate(status=TransferStatus.FAILED, state=s)

    store.mutate("t-1", fail)
    with get_sessionmaker()() as db:
        row = db.get(Transfer, "t-1")
        assert row.status == "failed"
        assert row.last_error == "boom"
        assert row.version == 2


def test_terminal_record_only_accepts_lease_clear(any_store):
    any_store.create(_record())
    any_store.mutate("t-1", _mark_routing)

    def lease_then_fail(r):
        s = r.state
        s.last_error = "boom"
        s.in_flight = InFlight(action="hop:0", started_at_unix_ms=1)
        return TransferUpdate(status=TransferStatus.FAILED, state=s)

    any_store.mutate("t-1", lease_then_fail)

    def clear_lease(r):
        s = r.state
        s.in_flight = None
        return TransferUpdate(status=r.status, state=s)

    cleared = any_store.mutate("t-1", clear_lease)
    assert cleared.state.in_flight is None
    assert cleared.state.last_error == "boom"

    def rewrite_error(r):
        s = r.state
        s.last_error = "overwritten"
        return TransferUpdate(status=r.status, state=s)

    def advance_hop(r):
        s = r.state
        s.current_hop = 1
        return TransferUpdate(status=r.status, state=s)

    for fn in (rewrite_error, advance_hop):
        with pytest.raises(ValueError):
            any_store.mutate("t-1", fn)

    stored = any_store.get("t-1")
    assert stored.version == cleared.version
    assert stored.state.last_error == "boom"
    assert stored.state.current_hop == 0
