from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from db.models.transfer import Transfer
from db.utils.time import utcnow


class TransferExistsError(ValueError):
    pass


def create_transfer(
    db: Session,
    *,
    transfer_id: str,
    status: str,
    data: dict[str, Any],
) -> Transfer:
    if db.get(Transfer, transfer_id) is not None:
        raise TransferExistsError(f"Transfer already exists: {transfer_id}")

    transfer = Transfer(
        id=transfer_id,
        status=status,
        version=1,
        data=data,
        last_error=None,
    )
    db.add(transfer)
    db.commit()
    db.refresh(transfer)
    return transfer


def get_transfer(db: Session, transfer_id: str) -> Transfer | None:
    return db.execute(select(Transfer).where(Transfer.id == transfer_id)).scalar_one_or_none()


def try_update_transfer(
    db: Session,
    *,
    transfer_id: str,
    expected_version: int,
    status: str,
    data: dict[str, Any],
    last_error: str | None = None,
) -> Transfer | None:
    """
    Conditional update: only applies when the stored version still equals
    expected_version. Returns the updated row, or None if another writer won.
    """
    result = db.execute(
        update(Transfer)
        .where(Transfer.id == transfer_id, Transfer.version == expected_version)
        .values(
            status=status,
            version=expected_version + 1,
            data=data,
            last_error=last_error,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return None

    db.commit()
    db.expire_all()
    return get_transfer(db, transfer_id)
