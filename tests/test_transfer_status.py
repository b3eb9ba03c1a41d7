import pytest

from app.domain.models import FungibleAsset, NativeAsset, hop_action, parse_asset, parse_hop_action
from app.domain.transfer_status import TransferStatus, assert_valid_transition, is_terminal


@pytest.mark.parametrize(
    "frm,to",
    [
        (TransferStatus.AWAITING_FUNDING, TransferStatus.ROUTING),
        (TransferStatus.AWAITING_FUNDING, TransferStatus.FAILED),
        (TransferStatus.ROUTING, TransferStatus.COMPLETE),
        (TransferStatus.ROUTING, TransferStatus.FAILED),
        (TransferStatus.ROUTING, TransferStatus.ROUTING),
        (TransferStatus.FAILED, TransferStatus.FAILED),
    ],
)
def test_allowed_transitions(frm, to):
    assert_valid_transition(frm, to)


@pytest.mark.parametrize(
    "frm,to",
    [
        (TransferStatus.AWAITING_FUNDING, TransferStatus.COMPLETE),
        (TransferStatus.ROUTING, TransferStatus.AWAITING_FUNDING),
        (TransferStatus.COMPLETE, TransferStatus.ROUTING),
        (TransferStatus.FAILED, TransferStatus.ROUTING),
        (TransferStatus.COMPLETE, TransferStatus.FAILED),
    ],
)
def test_rejected_transitions(frm, to):
    with pytest.raises(ValueError):
        assert_valid_transition(frm, to)


def test_terminal_statuses():
    assert is_terminal(TransferStatus.COMPLETE)
    assert is_terminal(TransferStatus.FAILED)
    assert not is_terminal(TransferStatus.ROUTING)
    assert not is_terminal(TransferStatus.AWAITING_FUNDING)


def test_parse_asset_variants():
    assert parse_asset(None) == NativeAsset()
    assert parse_asset("native") == NativeAsset()
    assert parse_asset({"kind": "native"}) == NativeAsset()
    assert parse_asset({"mint": "0xabc"}) == FungibleAsset(mint="0xabc")
    assert parse_asset({"kind": "fungible", "mint": "0xabc"}) == FungibleAsset(mint="0xabc")


def test_parse_asset_rejects_unknown_kind():
    with pytest.raises(Exception):
        parse_asset({"kind": "nft"})


def test_hop_action_round_trip():
    assert hop_action(4) == "hop:4"
    assert parse_hop_action("hop:4") == 4
    assert parse_hop_action("fee") is None
    assert parse_hop_action("hop:x") is None
    assert parse_hop_action("hop:-1") is None
