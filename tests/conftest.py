"""
Shared fixtures: in-memory ledgers, blob store and cache wired together.
"""

import pytest

from docverify.core.consistency import ConsistencyValidator
from docverify.core.hasher import Hasher
from docverify.core.orchestrator import OrchestratorConfig
from docverify.core.sync import SyncConfig
from docverify.db.store import InMemoryVerificationStore
from docverify.ledgers.memory import InMemoryBlobStore, InMemoryLedgerA, InMemoryLedgerB
from docverify.observability import get_metrics
from docverify.wiring import build_services

ORG = "org-university-1"
OTHER_ORG = "org-college-2"


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield


@pytest.fixture
def store():
    return InMemoryVerificationStore()


@pytest.fixture
def ledger_a():
    return InMemoryLedgerA()


@pytest.fixture
def ledger_b():
    return InMemoryLedgerB()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def sync_config():
    return SyncConfig(
        enabled=True,
        queue_size=8,
        poll_seconds=0.02,
        backoff_seconds=0.01,
        max_backoff_seconds=0.05,
        error_threshold=2,
    )


@pytest.fixture
def services(store, ledger_a, ledger_b, blob_store, sync_config):
    services = build_services(
        store=store,
        ledger_a=ledger_a,
        ledger_b=ledger_b,
        blob_store=blob_store,
        orchestrator_config=OrchestratorConfig(
            anchor_timeout_seconds=0.2,
            verify_base_url="https://verify.example.org/check",
        ),
        sync_config=sync_config,
        validator=ConsistencyValidator(strict_proof=False),
    )
    yield services
    services.sync_engine.stop(timeout=2.0)


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
def verifier(services):
    return services.verifier


@pytest.fixture
def engine(services):
    return services.sync_engine


def register_certificate(ledger_a, document: bytes, organization_id: str = ORG,
                         certificate_id: str = "CERT-20260101-ABC123", holder_name: str = "Ada Lovelace"):
    """Put a certificate for these bytes on LedgerA, as an organization would."""
    return ledger_a.submit(
        certificate_id=certificate_id,
        organization_id=organization_id,
        document_hash=Hasher.hash_document(document),
        holder_name=holder_name,
        issue_date="2026-01-01",
        metadata={},
    )


@pytest.fixture
def certify(ledger_a):
    """certify(document, organization_id=ORG, certificate_id=..., holder_name=...)"""
    def _certify(document: bytes, **kwargs):
        return register_certificate(ledger_a, document, **kwargs)
    return _certify
