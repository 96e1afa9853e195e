"""
Database Layer for the verification cache

Provides:
- VerificationStore abstraction (InMemory for dev, Postgres for prod)
- Event-to-cache projections
- Connection configuration and driver selection

PostgresVerificationStore lives in .postgres and is imported on demand
so the in-memory path does not need psycopg2.
"""

from .store import (
    VerificationStore,
    InMemoryVerificationStore,
    StoreError,
    DuplicateVerificationError,
    iter_unprocessed,
)
from .projections import ProjectionService
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "VerificationStore",
    "InMemoryVerificationStore",
    "StoreError",
    "DuplicateVerificationError",
    "iter_unprocessed",
    "ProjectionService",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
