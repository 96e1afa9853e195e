"""
Ledger Capability Interfaces

The orchestrator, validator, verifier and sync engine only ever see these.
Ledger-native response shapes never leak past an adapter.

Every call is blocking I/O with an explicit bound. Implementations raise:
- LedgerUnavailableError when the ledger cannot be reached
- LedgerTimeoutError when a WRITE outcome is unknown
- StorageError for blob store failures
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from ..schemas import (
    AnchorReceipt,
    CertificateStatus,
    EventName,
    LedgerARecord,
    LedgerBAnchor,
    RawLedgerEvent,
)


class EventSubscription(ABC):
    """
    A pull-based cursor over one ledger's event stream.

    Events are delivered in block order, at least once.
    """

    @abstractmethod
    def next_event(self, timeout: float) -> Optional[RawLedgerEvent]:
        """
        Block until the next event arrives.

        Returns:
            The event, or None if nothing arrived within timeout
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self) -> "EventSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LedgerAClient(ABC):
    """Organization-scoped permissioned ledger. Source of truth for certificates."""

    @abstractmethod
    def submit(
        self,
        certificate_id: str,
        organization_id: str,
        document_hash: str,
        holder_name: str,
        issue_date: str,
        metadata: dict[str, Any],
    ) -> LedgerARecord:
        """Record a new certificate. Fails if the id already exists."""
        pass

    @abstractmethod
    def query_by_hash(
        self,
        document_hash: str,
        organization_id: Optional[str] = None,
    ) -> list[LedgerARecord]:
        """All current certificate versions for a hash, optionally scoped to an org."""
        pass

    @abstractmethod
    def query_by_id(self, certificate_id: str) -> Optional[LedgerARecord]:
        pass

    @abstractmethod
    def get_history(self, certificate_id: str) -> list[LedgerARecord]:
        """Every version of a certificate, oldest first."""
        pass

    @abstractmethod
    def update_status(
        self,
        certificate_id: str,
        status: CertificateStatus,
        reason: Optional[str] = None,
    ) -> LedgerARecord:
        pass

    @abstractmethod
    def subscribe(self, from_block: int) -> EventSubscription:
        """Stream events starting at from_block (inclusive)."""
        pass


class LedgerBClient(ABC):
    """Public ledger holding tamper-evident anchors."""

    @abstractmethod
    def anchor(
        self,
        document_hash: str,
        blob_ref: str,
        organization_id: str,
        proof_hash: str,
    ) -> str:
        """
        Submit an anchor transaction.

        Returns:
            Transaction reference. Submission is not confirmation.
        """
        pass

    @abstractmethod
    def wait_for_confirmation(self, tx_ref: str, timeout: float) -> AnchorReceipt:
        """
        Block until a transaction is mined or refused.

        Raises:
            LedgerTimeoutError: Neither happened within timeout
        """
        pass

    @abstractmethod
    def get_receipt(self, tx_ref: str) -> Optional[AnchorReceipt]:
        """Non-blocking receipt lookup. None while still pending or unknown."""
        pass

    @abstractmethod
    def reject(self, document_hash: str, organization_id: str, reason: str) -> str:
        """Anchor a rejection. Returns the transaction reference."""
        pass

    @abstractmethod
    def get_anchor(self, document_hash: str) -> Optional[LedgerBAnchor]:
        pass

    @abstractmethod
    def subscribe(
        self,
        from_block: int,
        event_names: Optional[Iterable[EventName]] = None,
    ) -> EventSubscription:
        """Stream events starting at from_block (inclusive), filtered by name."""
        pass


class BlobStore(ABC):
    """Content-addressed storage for original documents."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store bytes. Returns a reference (e.g. a CID)."""
        pass

    @abstractmethod
    def get(self, ref: str) -> bytes:
        """
        Raises:
            NotFoundError: Unknown reference
            StorageError: Store unreachable
        """
        pass
