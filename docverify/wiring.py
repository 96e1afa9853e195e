"""
Service Wiring

Builds every capability object once, at startup, and hands them out by
reference. Nothing else in the package constructs ledger clients or
stores.

Mode is determined by environment variables:
- STORE_DRIVER: memory | psycopg2 (auto: psycopg2 when DATABASE_URL or
  DATABASE_HOST is set, memory otherwise)
- LEDGER_DRIVER: memory | gateway (default: memory)
- LEDGER_A_URL, LEDGER_B_URL, BLOB_STORE_URL: gateway endpoints
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .core.consistency import ConsistencyValidator
from .core.orchestrator import OrchestratorConfig, VerificationOrchestrator
from .core.rendering import ArtifactRenderer
from .core.sync import EventSyncEngine, SyncConfig
from .core.verify import PublicVerifyService
from .db.config import DatabaseConfig, StoreDriver, get_store_driver
from .db.projections import ProjectionService
from .db.store import InMemoryVerificationStore, VerificationStore
from .ledgers.base import BlobStore, LedgerAClient, LedgerBClient
from .ledgers.gateway import GatewayConfig, HttpLedgerAClient, HttpLedgerBClient, IpfsBlobStore
from .ledgers.memory import InMemoryBlobStore, InMemoryLedgerA, InMemoryLedgerB

logger = logging.getLogger(__name__)


class LedgerDriver(str, Enum):
    """Supported ledger/blob store drivers."""
    MEMORY = "memory"
    GATEWAY = "gateway"


def get_ledger_driver() -> LedgerDriver:
    explicit = os.getenv("LEDGER_DRIVER", "memory").lower()
    try:
        return LedgerDriver(explicit)
    except ValueError:
        raise ValueError(
            f"Unknown LEDGER_DRIVER: {explicit}. "
            f"Valid values: {', '.join(d.value for d in LedgerDriver)}"
        )


def create_store(driver: Optional[StoreDriver] = None) -> VerificationStore:
    """
    Create the VerificationStore for the configured driver.

    Returns:
        InMemoryVerificationStore for development/testing
        PostgresVerificationStore when a database is configured
    """
    driver = driver or get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory verification store (no persistence)")
        return InMemoryVerificationStore()

    from .db.postgres import PostgresVerificationStore

    config = DatabaseConfig.from_env()
    logger.info(f"Using PostgreSQL verification store at {config.to_url(include_password=False)}")
    return PostgresVerificationStore.from_config(config)


def create_ledgers(
    driver: Optional[LedgerDriver] = None,
) -> tuple[LedgerAClient, LedgerBClient, BlobStore]:
    """Create LedgerA, LedgerB and blob store clients for the configured driver."""
    driver = driver or get_ledger_driver()

    if driver == LedgerDriver.MEMORY:
        logger.info("Using in-memory ledgers (development only)")
        return InMemoryLedgerA(), InMemoryLedgerB(), InMemoryBlobStore()

    config = GatewayConfig.from_env()
    logger.info(f"Using ledger gateways A={config.ledger_a_url} B={config.ledger_b_url}")
    return (
        HttpLedgerAClient(config.ledger_a_url, config.request_timeout_seconds, config.poll_seconds),
        HttpLedgerBClient(config.ledger_b_url, config.request_timeout_seconds, config.poll_seconds),
        IpfsBlobStore(config.blob_store_url, config.request_timeout_seconds),
    )


@dataclass
class Services:
    """Everything the API and CLI need, built once."""
    store: VerificationStore
    ledger_a: LedgerAClient
    ledger_b: LedgerBClient
    blob_store: BlobStore
    orchestrator: VerificationOrchestrator
    verifier: PublicVerifyService
    sync_engine: EventSyncEngine

    def close(self) -> None:
        """Stop background work and release HTTP clients."""
        self.sync_engine.stop()
        for client in (self.ledger_a, self.ledger_b, self.blob_store):
            close = getattr(client, "close", None)
            if close is not None:
                close()


def build_services(
    store: Optional[VerificationStore] = None,
    ledger_a: Optional[LedgerAClient] = None,
    ledger_b: Optional[LedgerBClient] = None,
    blob_store: Optional[BlobStore] = None,
    orchestrator_config: Optional[OrchestratorConfig] = None,
    sync_config: Optional[SyncConfig] = None,
    renderer: Optional[ArtifactRenderer] = None,
    validator: Optional[ConsistencyValidator] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """
    Wire the verification core.

    Anything not passed in is created from the environment.
    """
    if store is None:
        store = create_store()
    if ledger_a is None or ledger_b is None or blob_store is None:
        default_a, default_b, default_blobs = create_ledgers()
        ledger_a = default_a if ledger_a is None else ledger_a
        ledger_b = default_b if ledger_b is None else ledger_b
        blob_store = default_blobs if blob_store is None else blob_store

    orchestrator = VerificationOrchestrator(
        store,
        ledger_a,
        ledger_b,
        blob_store,
        renderer=renderer,
        config=orchestrator_config,
        clock=clock,
    )
    verifier = PublicVerifyService(store, ledger_a, ledger_b, blob_store, validator=validator)
    sync_engine = EventSyncEngine(
        store,
        ledger_a,
        ledger_b,
        projections=ProjectionService(store),
        config=sync_config,
    )

    return Services(
        store=store,
        ledger_a=ledger_a,
        ledger_b=ledger_b,
        blob_store=blob_store,
        orchestrator=orchestrator,
        verifier=verifier,
        sync_engine=sync_engine,
    )
