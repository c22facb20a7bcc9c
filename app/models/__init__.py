"""SQLAlchemy models and session utilities."""

from .base import Base
from .session import SessionLocal, build_engine, engine, get_session
from .tables import EMBEDDING_DIMENSIONS, ConnectorRun, Document, Source

__all__ = [
    "Base",
    "SessionLocal",
    "build_engine",
    "engine",
    "get_session",
    "EMBEDDING_DIMENSIONS",
    "ConnectorRun",
    "Document",
    "Source",
]
