"""Incident store backends: in-memory (default) and SQLAlchemy."""

from storage.base import IncidentStore
from storage.memory_store import MemoryIncidentStore
from storage.sql_store import SqlIncidentStore


def build_store(url: str | None = None) -> IncidentStore:
    """In-memory store when no URL is given, else a SQL store for that SQLAlchemy URL."""
    if not url:
        return MemoryIncidentStore()
    return SqlIncidentStore(url)


__all__ = ["IncidentStore", "MemoryIncidentStore", "SqlIncidentStore", "build_store"]
