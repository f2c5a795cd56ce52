"""Declarative base and shared column types for the integration tables."""

from datetime import datetime, timezone

from sqlalchemy import JSON, MetaData, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# Check constraints and indexes carry explicit names on the models; foreign
# keys are named here so migrations can drop them by name.
NAMING_CONVENTION = {
    "fk": "fk_%(table_name)s_%(column_0_name)s",
}


class PortableJSONB(TypeDecorator):
    """JSONB on PostgreSQL, plain JSON elsewhere (the SQLite test database).

    Connection settings and per-entity sync results are stored with it.
    """
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Base = declarative_base(metadata=MetaData(naming_convention=NAMING_CONVENTION))
