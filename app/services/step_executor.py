from __future__ import annotations

import logging
import random
import re
from typing import Callable, Optional

from pydantic import BaseModel

from app.core.clock import now_ms
from app.core.context import get_transfer_id, set_transfer_id
from app.domain.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    NotFoundError,
    ReconciliationInconclusive,
    ValidationError,
)
from app.domain.models import (
    FEE_ACTION,
    HopResult,
    InFlight,
    TransferRecord,
    TransferUpdate,
    hop_action,
    parse_hop_action,
)
from app.domain.transfer_status import TransferStatus, is_terminal
from chain.probe import DEFAULT_LOOKBACK, ChainProbe
from db.repos.transfer_store import TransferStore
from signer.signer import Signer

logger = logging.getLogger(__name__)

IN_FLIGHT_STALE_MS = 120_000
FUNDING_SIGNATURE_TIMEOUT_MS = 90_000
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def normalize_funding_signature(hint: str | None) -> str | None:
    """
    Client-supplied funding tx hash, checked before the record is read.
    """
    hint = (hint or "").strip()
    if not hint:
        return None
    if not TX_HASH_RE.match(hint):
        raise ValidationError("fundingSignature must be a 0x-prefixed 32-byte transaction hash")
    return hint.lower()


class _LeaseHeld(Exception):
    """Another caller holds the in-flight lease or already did the work."""


class _Unchanged(Exception):
    """Mutation found nothing to write."""


class StepResult(BaseModel):
    ok: bool = True
    id: str
    status: TransferStatus
    hop_index: Optional[int] = None
    signature: Optional[str] = None
    action: Optional[str] = None
    waiting: Optional[bool] = None
    funded: Optional[bool] = None
    busy: Optional[bool] = None
    in_flight: Optional[InFlight] = None
    next_action_at_unix_ms: Optional[int] = None
    balance: Optional[int] = None
    required: Optional[int] = None
    message: Optional[str] = None


class StepExecutor:
    """
    Advances one transfer by at most one unit of work per call.

    There is no timer; an external driver polls step() until the record
    reaches complete or failed.
    """

    def __init__(
        self,
        *,
        store: TransferStore,
        probe: ChainProbe,
        signer: Signer,
        treasury_wallet: str | None = None,
        stale_ms: int = IN_FLIGHT_STALE_MS,
        funding_signature_timeout_ms: int = FUNDING_SIGNATURE_TIMEOUT_MS,
        lookback: int = DEFAULT_LOOKBACK,
        hold_final_hop: bool = True,
        min_total_ms: int = 120_000,
        max_total_ms: int = 300_000,
        rng: random.Random | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.probe = probe
        self.signer = signer
        self.treasury_wallet = treasury_wallet
        self.stale_ms = stale_ms
        self.funding_signature_timeout_ms = funding_signature_timeout_ms
        self.lookback = lookback
        self.hold_final_hop = hold_final_hop
        self.min_total_ms = min_total_ms
        self.max_total_ms = max_total_ms
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    # ---------------------------
    # Entry point
    # ---------------------------

    def step(self, transfer_id: str, *, funding_signature_hint: str | None = None) -> StepResult:
        previous = get_transfer_id()
        set_transfer_id(transfer_id)
        try:
            return self._step(transfer_id, funding_signature_hint)
        finally:
            set_transfer_id(previous)

    def _step(self, transfer_id: str, funding_signature_hint: str | None) -> StepResult:
        hint = normalize_funding_signature(funding_signature_hint)

        rec = self.store.get(transfer_id)
        if rec is None:
            raise NotFoundError(f"Transfer not found: {transfer_id}")

        rec = self._reconcile_stale(rec)

        in_flight = rec.state.in_flight
        if in_flight is not None and not self._is_stale(in_flight):
            return StepResult(id=rec.id, status=rec.status, busy=True, in_flight=in_flight)

        if is_terminal(rec.status):
            return StepResult(id=rec.id, status=rec.status)

        try:
            if rec.status == TransferStatus.AWAITING_FUNDING:
                return self._detect_funding(rec, hint)

            now = self.clock()
            if now < rec.state.next_action_at_unix_ms:
                return StepResult(
                    id=rec.id,
                    status=TransferStatus.ROUTING,
                    waiting=True,
                    next_action_at_unix_ms=rec.state.next_action_at_unix_ms,
                )

            if rec.plan.fee > 0 and not rec.state.fee_collected:
                return self._collect_fee(rec)

            return self._execute_hop(rec)
        except _LeaseHeld:
            current = self.store.get(transfer_id) or rec
            return StepResult(id=current.id, status=current.status, busy=True, in_flight=current.state.in_flight)
        except (ConcurrencyConflict, NotFoundError):
            # contention is retried by the caller; a leftover lease is reconciled once stale
            raise
        except Exception as e:
            self._fail(transfer_id, f"{type(e).__name__}: {e}")
            raise

    # ---------------------------
    # Helpers
    # ---------------------------

    def _is_stale(self, in_flight: InFlight) -> bool:
        return self.clock() - int(in_flight.started_at_unix_ms or 0) >= self.stale_ms

    def _fail(self, transfer_id: str, message: str) -> None:
        logger.error("transfer failed: %s", message)

        def fn(r: TransferRecord) -> TransferUpdate:
            s = r.state
            s.in_flight = None
            if is_terminal(r.status):
                # another caller already settled it; keep its outcome
                return TransferUpdate(status=r.status, state=s)
            s.last_error = message
            return TransferUpdate(status=TransferStatus.FAILED, state=s)

        try:
            self.store.mutate(transfer_id, fn)
        except Exception:
            logger.exception("could not persist failure for transfer %s", transfer_id)

    def _acquire_lease(self, rec: TransferRecord, action: str, precondition: Callable[[TransferRecord], bool]) -> TransferRecord:
        """
        Write the in-flight marker. The CAS on version makes acquisition atomic
        within the store: a loser re-reads, sees the lease, and backs off.
        """
        now = self.clock()

        def fn(r: TransferRecord) -> TransferUpdate:
            if r.status != TransferStatus.ROUTING or not precondition(r):
                raise _LeaseHeld()
            if r.state.in_flight is not None and now - r.state.in_flight.started_at_unix_ms < self.stale_ms:
                raise _LeaseHeld()
            s = r.state
            s.in_flight = InFlight(action=action, started_at_unix_ms=now)
            return TransferUpdate(status=r.status, state=s)

        return self.store.mutate(rec.id, fn)

    # ---------------------------
    # 1. Stale lease reconciliation
    # ---------------------------

    def _reconcile_stale(self, rec: TransferRecord) -> TransferRecord:
        lease = rec.state.in_flight
        if lease is None or not self._is_stale(lease):
            return rec

        plan = rec.plan
        action = str(lease.action or "")
        found: str | None = None
        searched = False
        hop_idx = parse_hop_action(action)

        if action == FEE_ACTION:
            if self.treasury_wallet and plan.fee > 0 and plan.hops:
                searched = True
                found = self.probe.find_recent_transfer(
                    plan.hops[0].address,
                    self.treasury_wallet,
                    plan.fee,
                    plan.asset,
                    self.lookback,
                )
        elif hop_idx is not None and hop_idx < plan.hop_count and hop_idx < len(plan.hops):
            destination = plan.destination_for_hop(hop_idx)
            if destination:
                searched = True
                found = self.probe.find_recent_transfer(
                    plan.hops[hop_idx].address,
                    destination,
                    plan.net_amount,
                    plan.asset,
                    self.lookback,
                )

        if found:
            logger.info("reconciled stale lease: adopting on-chain transfer", extra={"action": action, "signature": found})
        elif searched:
            err = ReconciliationInconclusive(f"no matching transfer for stale {action}; clearing lease")
            logger.warning("%s: %s", type(err).__name__, err)

        now = self.clock()

        def fn(r: TransferRecord) -> TransferUpdate:
            current = r.state.in_flight
            if (
                current is None
                or current.action != lease.action
                or current.started_at_unix_ms != lease.started_at_unix_ms
            ):
                # someone else already reconciled or took a new lease
                raise _Unchanged()

            s = r.state
            s.in_flight = None
            status = r.status
            if is_terminal(status):
                return TransferUpdate(status=status, state=s)

            if action == FEE_ACTION:
                if found:
                    s.fee_collected = True
                    s.fee_signature = found
                elif plan.fee <= 0:
                    s.fee_collected = True
            elif found and hop_idx is not None and s.current_hop == hop_idx:
                if not any(h.index == hop_idx for h in s.hop_results):
                    s.hop_results.append(HopResult(index=hop_idx, signature=found, success=True))
                s.current_hop = hop_idx + 1
                if s.current_hop >= plan.hop_count:
                    s.final_signature = found
                    s.next_action_at_unix_ms = now
                    if status == TransferStatus.ROUTING:
                        status = TransferStatus.COMPLETE
                else:
                    s.next_action_at_unix_ms = now + plan.delay_for_hop(s.current_hop)

            return TransferUpdate(status=status, state=s)

        try:
            return self.store.mutate(rec.id, fn)
        except _Unchanged:
            return self.store.get(rec.id) or rec

    # ---------------------------
    # 4. Funding detection
    # ---------------------------

    def _detect_funding(self, rec: TransferRecord, hint: str | None) -> StepResult:
        plan = rec.plan
        state = rec.state
        if not plan.hops:
            raise ValidationError("Missing routing account")

        now = self.clock()
        sig = hint or state.funding_signature

        if sig and (state.funding_signature != sig or not state.funding_signature_set_at_unix_ms):

            def persist_sig(r: TransferRecord) -> TransferUpdate:
                if r.status != TransferStatus.AWAITING_FUNDING:
                    return TransferUpdate(status=r.status, state=r.state)
                s = r.state
                s.funding_signature = sig
                s.funding_signature_set_at_unix_ms = s.funding_signature_set_at_unix_ms or now
                return TransferUpdate(status=r.status, state=s)

            rec = self.store.mutate(rec.id, persist_sig)
            state = rec.state

        if sig:
            sig_status = self.probe.get_signature_status(sig)
            if sig_status == "failed":
                return self._funding_failed(rec, "Funding transaction failed on-chain")

            set_at = int(state.funding_signature_set_at_unix_ms or 0)
            if sig_status is None and set_at and now - set_at > self.funding_signature_timeout_ms:
                return self._funding_failed(rec, "Funding transaction was not found on-chain. Please retry.")

        balance = self.probe.get_balance(plan.hops[0].address, plan.asset)
        if balance < plan.amount:
            return StepResult(
                id=rec.id,
                status=TransferStatus.AWAITING_FUNDING,
                funded=False,
                balance=balance,
                required=plan.amount,
            )

        next_at = now + plan.delay_for_hop(0)

        def mark_funded(r: TransferRecord) -> TransferUpdate:
            if r.status != TransferStatus.AWAITING_FUNDING:
                raise _Unchanged()
            s = r.state
            s.funded = True
            s.next_action_at_unix_ms = next_at
            return TransferUpdate(status=TransferStatus.ROUTING, state=s)

        try:
            rec = self.store.mutate(rec.id, mark_funded)
        except _Unchanged:
            rec = self.store.get(rec.id) or rec

        logger.info("funding detected: balance=%d required=%d", balance, plan.amount)
        return StepResult(id=rec.id, status=rec.status, funded=True, next_action_at_unix_ms=rec.state.next_action_at_unix_ms)

    def _funding_failed(self, rec: TransferRecord, message: str) -> StepResult:
        logger.warning("funding check failed: %s", message)

        def fn(r: TransferRecord) -> TransferUpdate:
            if is_terminal(r.status):
                return TransferUpdate(status=r.status, state=r.state)
            s = r.state
            s.last_error = message
            return TransferUpdate(status=TransferStatus.FAILED, state=s)

        rec = self.store.mutate(rec.id, fn)
        return StepResult(id=rec.id, status=rec.status, funded=False, message=message)

    # ---------------------------
    # 6. Fee collection
    # ---------------------------

    def _collect_fee(self, rec: TransferRecord) -> StepResult:
        if not self.treasury_wallet:
            raise ConfigurationError("TREASURY_WALLET is required when fee > 0")

        plan = rec.plan
        rec = self._acquire_lease(rec, FEE_ACTION, lambda r: not r.state.fee_collected)

        hop0 = plan.hops[0]
        signature = self.signer.transfer(
            wallet_id=hop0.wallet_id,
            from_address=hop0.address,
            to_address=self.treasury_wallet,
            asset=plan.asset,
            amount=plan.fee,
            idempotency_key=f"transfer:{plan.id}:{FEE_ACTION}",
        )

        def fn(r: TransferRecord) -> TransferUpdate:
            s = r.state
            s.in_flight = None
            if is_terminal(r.status):
                return TransferUpdate(status=r.status, state=s)
            s.fee_collected = True
            s.fee_signature = signature
            return TransferUpdate(status=r.status, state=s)

        rec = self.store.mutate(rec.id, fn)
        logger.info("fee %d collected", plan.fee, extra={"action": FEE_ACTION, "signature": signature})
        return StepResult(id=rec.id, status=rec.status, action=FEE_ACTION, signature=signature)

    # ---------------------------
    # 7. Hop execution
    # ---------------------------

    def _execute_hop(self, rec: TransferRecord) -> StepResult:
        plan = rec.plan
        i = rec.state.current_hop

        if i >= plan.hop_count:

            def finalize(r: TransferRecord) -> TransferUpdate:
                s = r.state
                s.in_flight = None
                return TransferUpdate(status=TransferStatus.COMPLETE, state=s)

            rec = self.store.mutate(rec.id, finalize)
            return StepResult(id=rec.id, status=rec.status, signature=rec.state.final_signature)

        destination = plan.destination_for_hop(i)
        if not destination:
            raise ValidationError("Missing destination wallet for final hop")

        is_final = i == plan.hop_count - 1
        if is_final and self.hold_final_hop:
            held = self._hold_final_hop(rec)
            if held is not None:
                return held

        action = hop_action(i)
        rec = self._acquire_lease(
            rec,
            action,
            lambda r: r.state.current_hop == i and (r.plan.fee <= 0 or r.state.fee_collected),
        )

        source = plan.hops[i]
        signature = self.signer.transfer(
            wallet_id=source.wallet_id,
            from_address=source.address,
            to_address=destination,
            asset=plan.asset,
            amount=plan.net_amount,
            idempotency_key=f"transfer:{plan.id}:{action}",
        )

        now = self.clock()

        def record_hop(r: TransferRecord) -> TransferUpdate:
            s = r.state
            s.in_flight = None
            status = r.status
            if is_terminal(status):
                return TransferUpdate(status=status, state=s)
            if s.current_hop == i and not any(h.index == i for h in s.hop_results):
                s.hop_results.append(HopResult(index=i, signature=signature, success=True))
                s.current_hop = i + 1
                if s.current_hop >= plan.hop_count:
                    s.final_signature = signature
                    s.next_action_at_unix_ms = now
                    status = TransferStatus.COMPLETE
                else:
                    s.next_action_at_unix_ms = now + plan.delay_for_hop(s.current_hop)
            return TransferUpdate(status=status, state=s)

        rec = self.store.mutate(rec.id, record_hop)
        logger.info("hop %d/%d sent", i + 1, plan.hop_count, extra={"action": action, "hop": i, "signature": signature})
        return StepResult(
            id=rec.id,
            status=rec.status,
            hop_index=i,
            signature=signature,
            next_action_at_unix_ms=None if rec.status == TransferStatus.COMPLETE else rec.state.next_action_at_unix_ms,
        )

    def _hold_final_hop(self, rec: TransferRecord) -> StepResult | None:
        """
        Final delivery waits until a random 2-5 minute target since plan
        creation has passed, so arrival time does not mirror the hop delays.
        """
        created_ms = int(rec.plan.created_at_unix) * 1000
        now = self.clock()
        target_ms = self.rng.randint(self.min_total_ms, self.max_total_ms)
        elapsed = now - created_ms
        if elapsed >= target_ms:
            return None

        delay_until = now + (target_ms - elapsed)

        def fn(r: TransferRecord) -> TransferUpdate:
            s = r.state
            s.next_action_at_unix_ms = delay_until
            return TransferUpdate(status=r.status, state=s)

        rec = self.store.mutate(rec.id, fn)
        return StepResult(
            id=rec.id,
            status=rec.status,
            waiting=True,
            next_action_at_unix_ms=delay_until,
            message="Waiting for timing obfuscation before final delivery",
        )
