"""
Database compatibility layer.

Column types that behave the same on SQLite (dev/tests) and PostgreSQL (prod):
- JSONType: JSONB on PostgreSQL, JSON elsewhere
- UTCDateTime: naive UTC on every backend; aware values are converted on write
"""

from sqlalchemy import JSON, DateTime, TypeDecorator
from sqlalchemy.dialects import postgresql

from levelrisk.clock import to_naive_utc


class JSONType(TypeDecorator):
    """JSON document column, JSONB where the backend has it."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.JSONB)
        return dialect.type_descriptor(JSON)


class UTCDateTime(TypeDecorator):
    """Timestamp stored without zone; always naive UTC in Python."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return to_naive_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return to_naive_utc(value)
