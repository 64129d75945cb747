from __future__ import annotations

from typing import Any

from sqlalchemy import JSON as SAJSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


class JSONType(TypeDecorator):
    """JSON column for record snapshots: JSONB on PostgreSQL, native JSON elsewhere.

    Values are bound as given; callers pass JSON-safe data (see ``SyncEvent.to_json_dict``).
    """

    impl = SAJSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(SAJSON())

    def process_bind_param(self, value: Any, dialect) -> Any:
        return value

    def process_result_value(self, value: Any, dialect) -> Any:
        if value is None:
            return {}
        return value
