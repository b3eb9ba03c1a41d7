from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from app.domain.errors import ConcurrencyConflict, NotFoundError
from app.domain.models import RoutingPlan, TransferRecord, TransferState, TransferUpdate
from app.domain.transfer_status import TransferStatus, assert_valid_transition, is_terminal
from app.services.transfer_events import publish_event, status_event
from db.models.transfer import Transfer
from db.repos.transfers_repo import create_transfer, get_transfer, try_update_transfer
from db.utils.time import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 4
MAX_ATTEMPTS = 6

MutateFn = Callable[[TransferRecord], TransferUpdate]


def _to_data(plan: RoutingPlan, state: TransferState) -> dict[str, Any]:
    return {
        "plan": plan.model_dump(mode="json"),
        "state": state.model_dump(mode="json"),
    }


def assert_terminal_write(current: TransferRecord, nxt: TransferUpdate) -> None:
    """
    A terminal record only accepts writes that clear a leftover in-flight lease.
    """
    if not is_terminal(current.status):
        return
    cleared = current.state.model_copy(update={"in_flight": None})
    if nxt.state != current.state and nxt.state != cleared:
        raise ValueError(f"Cannot modify state of terminal transfer: {current.status.value}")


def _from_row(row: Transfer) -> TransferRecord:
    data = row.data or {}
    return TransferRecord(
        id=row.id,
        status=TransferStatus(row.status),
        version=row.version,
        plan=RoutingPlan.model_validate(data.get("plan") or {}),
        state=TransferState.model_validate(data.get("state") or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class TransferStore(ABC):
    """
    Persists TransferRecords keyed by plan id, with an integer version used
    for compare-and-swap updates.
    """

    def __init__(self, *, attempts: int = DEFAULT_ATTEMPTS):
        self.attempts = attempts

    @abstractmethod
    def create(self, record: TransferRecord) -> TransferRecord: ...

    @abstractmethod
    def get(self, transfer_id: str) -> TransferRecord | None: ...

    @abstractmethod
    def conditional_update(
        self,
        transfer_id: str,
        *,
        expected_version: int,
        status: TransferStatus,
        state: TransferState,
    ) -> TransferRecord | None: ...

    def mutate(
        self,
        transfer_id: str,
        fn: MutateFn,
        *,
        attempts: int | None = None,
    ) -> TransferRecord:
        """
        Read -> fn(current) -> conditional update, retried from a fresh read
        when another writer wins. fn may run several times and must not have
        side effects; it gets a private copy of the record.
        """
        n = attempts if attempts is not None else self.attempts
        n = max(1, min(MAX_ATTEMPTS, int(n or DEFAULT_ATTEMPTS)))

        for attempt in range(1, n + 1):
            current = self.get(transfer_id)
            if current is None:
                raise NotFoundError(f"Transfer not found: {transfer_id}")

            nxt = fn(current.model_copy(deep=True))
            assert_valid_transition(current.status, nxt.status)
            assert_terminal_write(current, nxt)

            updated = self.conditional_update(
                transfer_id,
                expected_version=current.version,
                status=nxt.status,
                state=nxt.state,
            )
            if updated is not None:
                if updated.status != current.status:
                    publish_event(transfer_id, status_event(transfer_id, updated.status, updated.version))
                return updated

            logger.debug("version conflict on transfer %s (attempt %d/%d)", transfer_id, attempt, n)

        raise ConcurrencyConflict(f"Concurrent update conflict: {transfer_id}")


class SqlTransferStore(TransferStore):
    """
    SQLAlchemy-backed store. Each operation uses its own short session so a
    retry in mutate() always sees a fresh read.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, attempts: int = DEFAULT_ATTEMPTS):
        super().__init__(attempts=attempts)
        self._session_factory = session_factory

    def create(self, record: TransferRecord) -> TransferRecord:
        with self._session_factory() as db:
            row = create_transfer(
                db,
                transfer_id=record.id,
                status=record.status.value,
                data=_to_data(record.plan, record.state),
            )
            return _from_row(row)

    def get(self, transfer_id: str) -> TransferRecord | None:
        with self._session_factory() as db:
            row = get_transfer(db, transfer_id)
            return _from_row(row) if row is not None else None

    def conditional_update(
        self,
        transfer_id: str,
        *,
        expected_version: int,
        status: TransferStatus,
        state: TransferState,
    ) -> TransferRecord | None:
        with self._session_factory() as db:
            current = get_transfer(db, transfer_id)
            if current is None:
                return None
            plan = RoutingPlan.model_validate((current.data or {}).get("plan") or {})
            row = try_update_transfer(
                db,
                transfer_id=transfer_id,
                expected_version=expected_version,
                status=status.value,
                data=_to_data(plan, state),
                last_error=state.last_error,
            )
            return _from_row(row) if row is not None else None


class InMemoryTransferStore(TransferStore):
    """
    Process-lifetime store for tests and local development.
    Never use it as the production backing store.
    """

    def __init__(self, *, attempts: int = DEFAULT_ATTEMPTS):
        super().__init__(attempts=attempts)
        self._rows: dict[str, TransferRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: TransferRecord) -> TransferRecord:
        now = utcnow()
        stored = record.model_copy(deep=True, update={"version": 1, "created_at": now, "updated_at": now})
        with self._lock:
            if record.id in self._rows:
                raise ValueError(f"Transfer already exists: {record.id}")
            self._rows[record.id] = stored
        return stored.model_copy(deep=True)

    def get(self, transfer_id: str) -> TransferRecord | None:
        with self._lock:
            row = self._rows.get(transfer_id)
            return row.model_copy(deep=True) if row is not None else None

    def conditional_update(
        self,
        transfer_id: str,
        *,
        expected_version: int,
        status: TransferStatus,
        state: TransferState,
    ) -> TransferRecord | None:
        with self._lock:
            current = self._rows.get(transfer_id)
            if current is None or current.version != expected_version:
                return None
            updated = current.model_copy(
                update={
                    "status": status,
                    "version": expected_version + 1,
                    "state": state.model_copy(deep=True),
                    "updated_at": utcnow(),
                }
            )
            self._rows[transfer_id] = updated
            return updated.model_copy(deep=True)
