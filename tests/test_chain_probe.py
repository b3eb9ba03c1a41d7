from types import SimpleNamespace

import pytest
from web3.exceptions import TransactionNotFound

from app.domain.errors import UpstreamLedgerError
from app.domain.models import FungibleAsset, NativeAsset
from chain import rpc

from tests.conftest import FROM_WALLET, TO_WALLET, TOKEN

HOP = "0x000000000000000000000000000000000000a001"


def test_find_recent_transfer_exact_match(probe, ledger):
    ledger.add_transfer("0xold", HOP, TO_WALLET, 1000)
    ledger.add_transfer("0xwrong-amount", HOP, TO_WALLET, 999)
    ledger.add_transfer("0xwrong-dest", HOP, FROM_WALLET, 1000)

    assert probe.find_recent_transfer(HOP.upper().replace("0X", "0x"), TO_WALLET, 1000, NativeAsset()) == "0xold"
    assert probe.find_recent_transfer(HOP, TO_WALLET, 1001, NativeAsset()) is None


def test_find_recent_transfer_respects_asset(probe, ledger):
    ledger.add_transfer("0xtoken", HOP, TO_WALLET, 1000, FungibleAsset(mint=TOKEN))

    assert probe.find_recent_transfer(HOP, TO_WALLET, 1000, NativeAsset()) is None
    assert probe.find_recent_transfer(HOP, TO_WALLET, 1000, FungibleAsset(mint=TOKEN)) == "0xtoken"


def test_find_recent_transfer_respects_lookback(probe, ledger):
    ledger.add_transfer("0xtarget", HOP, TO_WALLET, 1000)
    for i in range(3):
        ledger.add_transfer(f"0xnoise{i}", HOP, FROM_WALLET, 1)

    assert probe.find_recent_transfer(HOP, TO_WALLET, 1000, NativeAsset(), lookback=3) is None
    assert probe.find_recent_transfer(HOP, TO_WALLET, 1000, NativeAsset(), lookback=4) == "0xtarget"


def test_ledger_failures_become_upstream_errors(probe, ledger):
    ledger.fail_with = ConnectionError("rpc down")

    with pytest.raises(UpstreamLedgerError):
        probe.get_balance(HOP, NativeAsset())
    with pytest.raises(UpstreamLedgerError):
        probe.find_recent_transfer(HOP, TO_WALLET, 1, NativeAsset())
    assert probe.is_holder(FROM_WALLET, TOKEN) is False


def test_is_holder(probe, ledger):
    assert probe.is_holder(FROM_WALLET, TOKEN) is False
    ledger.set_balance(FROM_WALLET, 5, FungibleAsset(mint=TOKEN))
    assert probe.is_holder(FROM_WALLET, TOKEN) is True


# ---------------------------
# web3 JSON-RPC helpers
# ---------------------------


def _fake_w3(**eth):
    return SimpleNamespace(eth=SimpleNamespace(**eth))


@pytest.fixture
def rpc_pool(monkeypatch):
    providers: dict[str, object] = {}
    monkeypatch.setattr(rpc, "get_rpc_urls", lambda: list(providers))
    monkeypatch.setattr(rpc, "_get_web3", lambda url: providers[url])
    return providers


def test_with_any_provider_falls_back(rpc_pool):
    def broken(_):
        raise ConnectionError("down")

    rpc_pool["https://a"] = _fake_w3(get_balance=broken)
    rpc_pool["https://b"] = _fake_w3(get_balance=lambda _: 42)

    assert rpc.get_native_balance(FROM_WALLET) == 42


def test_with_any_provider_all_fail(rpc_pool):
    def broken(_):
        raise ConnectionError("down")

    rpc_pool["https://a"] = _fake_w3(get_balance=broken)
    with pytest.raises(rpc.Web3RPCError):
        rpc.get_native_balance(FROM_WALLET)


def test_transaction_status(rpc_pool):
    receipts = {"0x1": {"status": 1}, "0x2": {"status": 0}}

    def get_receipt(h):
        if h not in receipts:
            raise TransactionNotFound(h)
        return receipts[h]

    rpc_pool["https://a"] = _fake_w3(get_transaction_receipt=get_receipt)

    assert rpc.get_transaction_status("0x1") == "success"
    assert rpc.get_transaction_status("0x2") == "failed"
    assert rpc.get_transaction_status("0x3") is None


def test_recent_native_transfers_newest_first(rpc_pool):
    sender = "0x000000000000000000000000000000000000A001"
    blocks = {
        10: {"transactions": [{"from": sender, "to": TO_WALLET, "value": 5, "hash": b"\x01" * 32}]},
        11: {
            "transactions": [
                {"from": FROM_WALLET, "to": sender, "value": 9, "hash": b"\x02" * 32},
                {"from": sender.lower(), "to": FROM_WALLET, "value": 7, "hash": b"\x03" * 32},
            ]
        },
    }
    rpc_pool["https://a"] = _fake_w3(
        get_transaction_count=lambda _: 2,
        block_number=11,
        get_block=lambda n, full_transactions: blocks.get(n, {"transactions": []}),
    )

    rows = rpc.recent_native_transfers(sender, limit=5, scan_blocks=4)
    assert [r["amount"] for r in rows] == [7, 5]
    assert rows[0]["signature"] == "0x" + "03" * 32
    assert rows[1]["destination"] == TO_WALLET


def test_recent_native_transfers_skips_scan_for_fresh_address(rpc_pool):
    def no_blocks(*_a, **_k):
        raise AssertionError("should not scan")

    rpc_pool["https://a"] = _fake_w3(get_transaction_count=lambda _: 0, block_number=100, get_block=no_blocks)
    assert rpc.recent_native_transfers(FROM_WALLET, limit=5, scan_blocks=10) == []
