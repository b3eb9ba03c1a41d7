"""JSON document column: JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)."""
from typing import Any

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator, TypeEngine


class JSONType(TypeDecorator):
    """
    Stores one JSON object per row. Only dicts are accepted so a
    half-serialized model never lands in the transfers table.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect) -> TypeEngine:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB(none_as_null=True))
        return dialect.type_descriptor(JSON(none_as_null=True))

    def process_bind_param(self, value: Any, dialect) -> Any:
        if value is not None and not isinstance(value, dict):
            raise TypeError(f"JSONType expects a dict, got {type(value).__name__}")
        return value
