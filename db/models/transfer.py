from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base
from db.utils.json_type import JSONType
from db.utils.time import utcnow


class Transfer(Base):
    __tablename__ = "transfers"
    __table_args__ = (Index("idx_transfers_status_updated", "status", "updated_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    # sole concurrency-control token; bumped by exactly 1 on every update
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # {"plan": {...}, "state": {...}}
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
