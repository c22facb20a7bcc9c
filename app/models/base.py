"""SQLAlchemy declarative base shared by the ingestion tables."""

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

# Stable constraint names keep migrations reproducible across databases.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base with named constraints and a primary-key repr."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    def __repr__(self) -> str:
        primary_keys = [column.key for column in self.__mapper__.primary_key]  # type: ignore[attr-defined]
        attrs = [f"{key}={getattr(self, key)!r}" for key in primary_keys]
        return f"<{self.__class__.__name__} {' '.join(attrs)}>"
