from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, TypeAdapter

from app.domain.transfer_status import TransferStatus

# Smallest-unit quantities; stored as strings for JSON safety
Amount = Annotated[int, Field(ge=0), PlainSerializer(lambda v: str(v), return_type=str, when_used="json")]

FEE_ACTION = "fee"
_HOP_PREFIX = "hop:"


class NativeAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["native"] = "native"


class FungibleAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["fungible"] = "fungible"
    mint: str = Field(..., min_length=1)


Asset = Annotated[Union[NativeAsset, FungibleAsset], Field(discriminator="kind")]

_asset_adapter: TypeAdapter = TypeAdapter(Asset)


def parse_asset(raw: Any) -> NativeAsset | FungibleAsset:
    """
    Accepts None / "native" / {"kind": ...} / {"mint": "0x..."}.
    """
    if raw is None:
        return NativeAsset()
    if isinstance(raw, (NativeAsset, FungibleAsset)):
        return raw
    if isinstance(raw, str):
        if raw.strip().lower() in {"native", "eth", ""}:
            return NativeAsset()
        return FungibleAsset(mint=raw.strip())
    if isinstance(raw, dict) and "kind" not in raw and raw.get("mint"):
        return FungibleAsset(mint=str(raw["mint"]).strip())
    return _asset_adapter.validate_python(raw)


def hop_action(index: int) -> str:
    return f"{_HOP_PREFIX}{index}"


def parse_hop_action(action: str) -> int | None:
    if not action.startswith(_HOP_PREFIX):
        return None
    try:
        idx = int(action[len(_HOP_PREFIX):])
    except ValueError:
        return None
    return idx if idx >= 0 else None


class HopWallet(BaseModel):
    model_config = ConfigDict(frozen=True)

    wallet_id: str
    address: str


class RoutingPlan(BaseModel):
    """
    Immutable description of one routing attempt.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    from_wallet: str
    to_wallet: str = ""
    asset: Asset = Field(default_factory=NativeAsset)
    amount: Amount
    net_amount: Amount
    hop_count: int = Field(..., ge=1)
    hops: List[HopWallet]
    hop_delays_ms: List[int]
    fee_applied: bool = False
    fee: Amount = 0
    estimated_completion_ms: int
    created_at_unix: int

    def destination_for_hop(self, index: int) -> str:
        if index < self.hop_count - 1:
            return self.hops[index + 1].address
        return self.to_wallet

    def delay_for_hop(self, index: int) -> int:
        if 0 <= index < len(self.hop_delays_ms):
            return int(self.hop_delays_ms[index])
        return 0


class HopResult(BaseModel):
    index: int = Field(..., ge=0)
    signature: str
    success: bool = True
    error: Optional[str] = None


class InFlight(BaseModel):
    action: str
    started_at_unix_ms: int


class TransferState(BaseModel):
    funded: bool = False
    funding_signature: Optional[str] = None
    funding_signature_set_at_unix_ms: Optional[int] = None
    fee_collected: bool = False
    fee_signature: Optional[str] = None
    current_hop: int = Field(default=0, ge=0)
    hop_results: List[HopResult] = Field(default_factory=list)
    final_signature: Optional[str] = None
    next_action_at_unix_ms: int = 0
    last_error: Optional[str] = None
    in_flight: Optional[InFlight] = None


class TransferRecord(BaseModel):
    id: str
    status: TransferStatus
    version: int = 1
    plan: RoutingPlan
    state: TransferState
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransferUpdate(BaseModel):
    """
    What a store mutation function returns: the next status and state.
    The plan is immutable and is never part of an update.
    """

    status: TransferStatus
    state: TransferState
