from __future__ import annotations

import json
import logging
from queue import Empty
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from api.schemas.transfers import (
    HopResultView,
    InFlightView,
    PlanView,
    StateView,
    StepRequest,
    StepResponse,
    TransferCreateRequest,
    TransferCreateResponse,
    TransferStatusResponse,
)
from app.config import Settings, get_settings
from app.domain.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    NotFoundError,
    TransferError,
    UpstreamError,
    ValidationError,
)
from app.domain.models import InFlight, TransferRecord, parse_asset
from app.domain.transfer_status import is_terminal
from app.services.plan_builder import PlanBuilder
from app.services.step_executor import StepExecutor, StepResult
from app.services.transfer_events import DEFAULT_QUEUE_SIZE, is_final, status_event, subscribe, unsubscribe
from app.services.transfers_service import get_plan_builder, get_step_executor, get_store
from db.repos.transfer_store import TransferStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transfers", tags=["transfers"])


def _http_error(e: TransferError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail="Transfer not found")
    if isinstance(e, ConcurrencyConflict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, UpstreamError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=500, detail=f"{type(e).__name__}: {e}")


def _in_flight_view(in_flight: InFlight | None) -> InFlightView | None:
    if in_flight is None:
        return None
    return InFlightView(action=in_flight.action, startedAtUnixMs=in_flight.started_at_unix_ms)


def _build_step_response(result: StepResult) -> StepResponse:
    return StepResponse(
        ok=result.ok,
        id=result.id,
        status=result.status.value,
        hopIndex=result.hop_index,
        signature=result.signature,
        action=result.action,
        waiting=result.waiting,
        funded=result.funded,
        busy=result.busy,
        inFlight=_in_flight_view(result.in_flight),
        nextActionAtUnixMs=result.next_action_at_unix_ms,
        balance=str(result.balance) if result.balance is not None else None,
        required=str(result.required) if result.required is not None else None,
        message=result.message,
    )


def _build_status_response(rec: TransferRecord) -> TransferStatusResponse:
    plan = rec.plan
    state = rec.state
    return TransferStatusResponse(
        id=rec.id,
        status=rec.status.value,
        version=rec.version,
        plan=PlanView(
            id=plan.id,
            fromWallet=plan.from_wallet,
            toWallet=plan.to_wallet,
            asset=plan.asset.model_dump(),
            amount=str(plan.amount),
            netAmount=str(plan.net_amount),
            hopCount=plan.hop_count,
            estimatedCompletionMs=plan.estimated_completion_ms,
            feeApplied=plan.fee_applied,
            fee=str(plan.fee),
            firstHopAddress=plan.hops[0].address if plan.hops else None,
            createdAtUnix=plan.created_at_unix,
        ),
        state=StateView(
            funded=state.funded,
            fundingSignature=state.funding_signature,
            fundingSignatureSetAtUnixMs=state.funding_signature_set_at_unix_ms,
            feeCollected=state.fee_collected,
            feeSignature=state.fee_signature,
            currentHop=state.current_hop,
            hopResults=[HopResultView(**h.model_dump()) for h in state.hop_results],
            finalSignature=state.final_signature,
            nextActionAtUnixMs=state.next_action_at_unix_ms,
            lastError=state.last_error,
            inFlight=_in_flight_view(state.in_flight),
        ),
    )


def _sse_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=True)}\n\n"


@router.post("", response_model=TransferCreateResponse)
def create_transfer_endpoint(
    payload: TransferCreateRequest,
    builder: PlanBuilder = Depends(get_plan_builder),
) -> TransferCreateResponse:
    try:
        asset = parse_asset(payload.asset)
    except Exception as e:
        raise HTTPException(status_code=422, detail=f"Invalid asset: {e}")

    try:
        rec = builder.create_plan(payload.fromWallet, payload.toWallet, asset, payload.amount)
    except TransferError as e:
        raise _http_error(e)

    plan = rec.plan
    return TransferCreateResponse(
        id=rec.id,
        hopCount=plan.hop_count,
        estimatedCompletionMs=plan.estimated_completion_ms,
        feeApplied=plan.fee_applied,
        fee=str(plan.fee),
        firstHopAddress=plan.hops[0].address,
    )


@router.post("/{transfer_id}/step", response_model=StepResponse, response_model_exclude_none=True)
def step_transfer_endpoint(
    transfer_id: str,
    payload: StepRequest | None = None,
    executor: StepExecutor = Depends(get_step_executor),
) -> StepResponse:
    hint = payload.fundingSignature if payload else None
    try:
        result = executor.step(transfer_id, funding_signature_hint=hint)
    except TransferError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("step failed")
        raise HTTPException(status_code=500, detail=f"Step failed: {type(e).__name__}: {e}")

    return _build_step_response(result)


@router.get("/{transfer_id}", response_model=TransferStatusResponse)
def get_transfer_status_endpoint(
    transfer_id: str,
    store: TransferStore = Depends(get_store),
) -> TransferStatusResponse:
    rec = store.get(transfer_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="Transfer not found")
    return _build_status_response(rec)


def stream_events(
    transfer_id: str,
    store: TransferStore,
    *,
    keepalive_s: float = 15.0,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> Iterator[str]:
    """
    Replays the current status, then relays status events until a terminal one.

    The subscription is taken before the status is read, so a change landing
    between the two is delivered either by the replay or by the queue.
    """
    queue = subscribe(transfer_id, maxsize=queue_size)
    try:
        rec = store.get(transfer_id)
        if rec is None:
            return
        yield _sse_event(status_event(transfer_id, rec.status, rec.version, replay=True))
        if is_terminal(rec.status):
            return

        while True:
            try:
                event = queue.get(timeout=keepalive_s)
            except Empty:
                yield ": keepalive\n\n"
                continue
            # already covered by the replay
            if int(event.get("version") or 0) <= rec.version:
                continue
            yield _sse_event(event)
            if is_final(event):
                return
    finally:
        unsubscribe(transfer_id, queue)


@router.get("/{transfer_id}/events")
def stream_transfer_events(
    transfer_id: str,
    store: TransferStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> StreamingResponse:
    if store.get(transfer_id) is None:
        raise HTTPException(status_code=404, detail="Transfer not found")

    return StreamingResponse(
        stream_events(
            transfer_id,
            store,
            keepalive_s=settings.sse_keepalive_s,
            queue_size=settings.sse_queue_size,
        ),
        media_type="text/event-stream",
    )
