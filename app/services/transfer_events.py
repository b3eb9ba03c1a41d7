from __future__ import annotations

import logging
from datetime import datetime, timezone
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any

from app.domain.transfer_status import TERMINAL, TransferStatus

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 64

TransferEvent = dict[str, Any]

_subscribers: dict[str, list[Queue[TransferEvent]]] = {}
_lock = Lock()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def status_event(transfer_id: str, status: TransferStatus, version: int, *, replay: bool = False) -> TransferEvent:
    event: TransferEvent = {
        "type": "transfer_status",
        "eventId": f"status:{transfer_id}:{status.value}",
        "transferId": transfer_id,
        "status": status.value,
        "version": version,
        "timestamp": _utcnow_iso(),
    }
    if replay:
        event["replay"] = True
    return event


def is_final(event: TransferEvent) -> bool:
    return event.get("status") in {s.value for s in TERMINAL}


def _offer(transfer_id: str, queue: Queue[TransferEvent], event: TransferEvent) -> None:
    # newest wins: a lagging subscriber loses its oldest events, never the terminal one
    while True:
        try:
            queue.put_nowait(event)
            return
        except Full:
            try:
                dropped = queue.get_nowait()
            except Empty:
                continue
            logger.warning(
                "Event subscriber lagging on transfer %s, dropped %s",
                transfer_id,
                dropped.get("eventId"),
            )


def publish_event(transfer_id: str, event: TransferEvent) -> None:
    event.setdefault("transferId", transfer_id)
    event.setdefault("timestamp", _utcnow_iso())
    with _lock:
        queues = list(_subscribers.get(transfer_id, []))
    for queue in queues:
        # each subscriber gets its own copy
        _offer(transfer_id, queue, dict(event))


def subscribe(transfer_id: str, *, maxsize: int = DEFAULT_QUEUE_SIZE) -> Queue[TransferEvent]:
    queue: Queue[TransferEvent] = Queue(maxsize=max(1, int(maxsize)))
    with _lock:
        _subscribers.setdefault(transfer_id, []).append(queue)
    return queue


def unsubscribe(transfer_id: str, queue: Queue[TransferEvent]) -> None:
    with _lock:
        queues = _subscribers.get(transfer_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            _subscribers.pop(transfer_id, None)


def subscriber_count(transfer_id: str) -> int:
    with _lock:
        return len(_subscribers.get(transfer_id, []))
