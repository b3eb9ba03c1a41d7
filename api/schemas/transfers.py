from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TransferCreateRequest(BaseModel):
    fromWallet: str = Field(..., min_length=3, max_length=64)
    # empty string is allowed for custody modes
    toWallet: str = Field("", max_length=64)
    # None / "native" / {"mint": "0x..."} / {"kind": "fungible", "mint": "0x..."}
    asset: Optional[Any] = None
    amount: int = Field(..., gt=0, description="Smallest-unit quantity")


class TransferCreateResponse(BaseModel):
    id: str
    hopCount: int
    estimatedCompletionMs: int
    feeApplied: bool
    fee: str
    firstHopAddress: str


class StepRequest(BaseModel):
    # 0x-prefixed 32-byte tx hash
    fundingSignature: Optional[str] = Field(None, pattern=r"^\s*0x[0-9a-fA-F]{64}\s*$")


class InFlightView(BaseModel):
    action: str
    startedAtUnixMs: int


class StepResponse(BaseModel):
    ok: bool = True
    id: str
    status: str
    hopIndex: Optional[int] = None
    signature: Optional[str] = None
    action: Optional[str] = None
    waiting: Optional[bool] = None
    funded: Optional[bool] = None
    busy: Optional[bool] = None
    inFlight: Optional[InFlightView] = None
    nextActionAtUnixMs: Optional[int] = None
    balance: Optional[str] = None
    required: Optional[str] = None
    message: Optional[str] = None


class HopResultView(BaseModel):
    index: int
    signature: str
    success: bool
    error: Optional[str] = None


class PlanView(BaseModel):
    id: str
    fromWallet: str
    toWallet: str
    asset: dict[str, Any]
    amount: str
    netAmount: str
    hopCount: int
    estimatedCompletionMs: int
    feeApplied: bool
    fee: str
    firstHopAddress: Optional[str] = None
    createdAtUnix: int


class StateView(BaseModel):
    funded: bool
    fundingSignature: Optional[str] = None
    fundingSignatureSetAtUnixMs: Optional[int] = None
    feeCollected: bool
    feeSignature: Optional[str] = None
    currentHop: int
    hopResults: list[HopResultView]
    finalSignature: Optional[str] = None
    nextActionAtUnixMs: int
    lastError: Optional[str] = None
    inFlight: Optional[InFlightView] = None


class TransferStatusResponse(BaseModel):
    id: str
    status: str
    version: int
    plan: PlanView
    state: StateView
