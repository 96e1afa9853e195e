"""
Verification Store Abstraction

This module defines the VerificationStore interface and the in-memory
implementation. The PostgreSQL implementation lives in postgres.py.

The store is the shared cache written by the orchestrator and the sync
engine and read by the public verifier. It holds:
- Verification records (append-only, never deleted)
- Organizations (keyed by org_id)
- Certificates (keyed by certificate_id, from LedgerA events)
- The event log (unique on source + tx_ref + event_name)
- Sync checkpoints (one row per source)

CONCURRENCY CONTRACT:
- At most one ACTIVE (pending_confirmation or verified) record per
  document hash. Enforced HERE, never in application code.
- A LedgerB transaction reference belongs to at most one record.
- Record state changes are compare-and-set (transition_record) so two
  writers resolving the same record cannot overwrite each other.
- Everything else is an upsert.
- Checkpoints only move forward.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from threading import RLock
from typing import Any, Iterable, Optional
from uuid import UUID

from ..core.hasher import Hasher
from ..schemas import (
    CertificateRecord,
    CheckpointStatus,
    EventLogEntry,
    EventName,
    LedgerSource,
    Organization,
    SyncCheckpoint,
    VerificationRecord,
    VerificationStatus,
    utcnow,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


class DuplicateVerificationError(StoreError):
    """
    Raised when a write would break a uniqueness constraint.

    constraint is one of:
    - "active_hash": another pending/verified record exists for the hash
    - "tx_ref": another record already owns the LedgerB transaction
    - "record_id": the record already exists
    """

    def __init__(self, message: str, constraint: str, document_hash: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint
        self.document_hash = document_hash


# Fields transition_record() may change besides status.
TRANSITION_FIELDS = frozenset({
    "blob_ref",
    "certificate_id",
    "proof_hash",
    "anchored_at",
    "ledger_b_tx_ref",
    "ledger_b_block",
    "reason",
    "verified_at",
    "updated_at",
    "metadata",
})


def _check_transition_fields(changes: dict[str, Any]) -> None:
    unknown = set(changes) - TRANSITION_FIELDS
    if unknown:
        raise StoreError(f"Cannot change record fields: {', '.join(sorted(unknown))}")


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class VerificationStore(ABC):
    """
    Abstract base class for the verification cache.

    Implementations must enforce the uniqueness constraints at the
    storage layer so concurrent writers cannot race past them.
    """

    # ----------------------------------------------------------------
    # Verification records
    # ----------------------------------------------------------------

    @abstractmethod
    def insert_record(self, record: VerificationRecord) -> VerificationRecord:
        """
        Insert a new record.

        Raises:
            DuplicateVerificationError: A uniqueness constraint fired
        """
        pass

    @abstractmethod
    def transition_record(
        self,
        record_id: UUID,
        expected: VerificationStatus,
        status: Optional[VerificationStatus] = None,
        **changes: Any,
    ) -> Optional[VerificationRecord]:
        """
        Compare-and-set update of a record.

        Applies status and changes only if the record is currently in
        the expected status.

        Returns:
            The updated record, or None if the record is missing or
            has already moved out of the expected status
        """
        pass

    @abstractmethod
    def get_record(self, record_id: UUID) -> Optional[VerificationRecord]:
        pass

    @abstractmethod
    def get_active_record(self, document_hash: str) -> Optional[VerificationRecord]:
        """The pending or verified record for a hash, if any."""
        pass

    def get_verified_record(self, document_hash: str) -> Optional[VerificationRecord]:
        record = self.get_active_record(document_hash)
        if record is not None and record.status == VerificationStatus.VERIFIED:
            return record
        return None

    @abstractmethod
    def list_records(self, document_hash: str) -> list[VerificationRecord]:
        """Every record for a hash, oldest first."""
        pass

    @abstractmethod
    def find_by_certificate_id(self, certificate_id: str) -> Optional[VerificationRecord]:
        """Best record for a certificate: verified, then pending, then newest."""
        pass

    @abstractmethod
    def find_by_ledger_b_tx(self, tx_ref: str) -> Optional[VerificationRecord]:
        pass

    @abstractmethod
    def list_pending(self) -> list[VerificationRecord]:
        pass

    # ----------------------------------------------------------------
    # Organizations and certificates
    # ----------------------------------------------------------------

    @abstractmethod
    def upsert_organization(self, organization: Organization) -> Organization:
        pass

    @abstractmethod
    def get_organization(self, org_id: str) -> Optional[Organization]:
        pass

    @abstractmethod
    def upsert_certificate(self, certificate: CertificateRecord) -> CertificateRecord:
        pass

    @abstractmethod
    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        pass

    @abstractmethod
    def find_certificates_by_hash(self, document_hash: str) -> list[CertificateRecord]:
        pass

    # ----------------------------------------------------------------
    # Event log
    # ----------------------------------------------------------------

    @abstractmethod
    def append_event(
        self,
        source: LedgerSource,
        event_name: EventName,
        tx_ref: str,
        block: int,
        payload: dict[str, Any],
    ) -> tuple[EventLogEntry, bool]:
        """
        Insert an event log entry if its idempotency key is new.

        Returns:
            (entry, created). created is False when the key already existed;
            the existing entry is returned unchanged.
        """
        pass

    @abstractmethod
    def mark_event_processed(self, entry_id: int, processed_at: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    def list_events(
        self,
        source: Optional[LedgerSource] = None,
        processed: Optional[bool] = None,
        document_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[EventLogEntry]:
        """Event log entries in arrival order."""
        pass

    # ----------------------------------------------------------------
    # Checkpoints
    # ----------------------------------------------------------------

    @abstractmethod
    def get_checkpoint(self, source: LedgerSource) -> Optional[SyncCheckpoint]:
        pass

    @abstractmethod
    def advance_checkpoint(self, source: LedgerSource, block: int) -> SyncCheckpoint:
        """Move last_synced_block to block if block is greater. Never backwards."""
        pass

    @abstractmethod
    def set_checkpoint_status(
        self,
        source: LedgerSource,
        status: CheckpointStatus,
        error_message: Optional[str] = None,
    ) -> SyncCheckpoint:
        pass

    def list_checkpoints(self) -> list[SyncCheckpoint]:
        return [cp for cp in (self.get_checkpoint(s) for s in LedgerSource) if cp is not None]

    @abstractmethod
    def ping(self) -> dict[str, Any]:
        """Liveness check used by the health endpoint."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryVerificationStore(VerificationStore):
    """
    In-memory implementation of VerificationStore.

    Suitable for:
    - Development
    - Testing
    - Single-process deployments without persistence requirements

    A single lock serializes writes, which makes the uniqueness
    checks atomic with the inserts they guard.
    """

    def __init__(self):
        self._lock = RLock()
        self._records: dict[UUID, VerificationRecord] = {}
        self._record_order: list[UUID] = []
        self._organizations: dict[str, Organization] = {}
        self._certificates: dict[str, CertificateRecord] = {}
        self._events: list[EventLogEntry] = []
        self._event_keys: dict[tuple[str, str, str], int] = {}
        self._checkpoints: dict[LedgerSource, SyncCheckpoint] = {}

    # ----------------------------------------------------------------
    # Verification records
    # ----------------------------------------------------------------

    def _conflicts(self, record: VerificationRecord, ignore: Optional[UUID] = None) -> None:
        for other in self._records.values():
            if other.record_id == ignore:
                continue
            if (
                record.is_active
                and other.is_active
                and other.document_hash == record.document_hash
            ):
                raise DuplicateVerificationError(
                    f"Active record already exists for {record.document_hash}",
                    constraint="active_hash",
                    document_hash=record.document_hash,
                )
            if record.ledger_b_tx_ref and other.ledger_b_tx_ref == record.ledger_b_tx_ref:
                raise DuplicateVerificationError(
                    f"Transaction {record.ledger_b_tx_ref} already recorded",
                    constraint="tx_ref",
                    document_hash=record.document_hash,
                )

    def insert_record(self, record: VerificationRecord) -> VerificationRecord:
        with self._lock:
            if record.record_id in self._records:
                raise DuplicateVerificationError(
                    f"Record {record.record_id} already exists",
                    constraint="record_id",
                    document_hash=record.document_hash,
                )
            self._conflicts(record)
            stored = record.model_copy(deep=True)
            self._records[stored.record_id] = stored
            self._record_order.append(stored.record_id)
            return stored.model_copy(deep=True)

    def transition_record(
        self,
        record_id: UUID,
        expected: VerificationStatus,
        status: Optional[VerificationStatus] = None,
        **changes: Any,
    ) -> Optional[VerificationRecord]:
        _check_transition_fields(changes)
        with self._lock:
            current = self._records.get(record_id)
            if current is None or current.status != expected:
                return None
            update = dict(changes)
            if status is not None:
                update["status"] = status
            update.setdefault("updated_at", utcnow())
            candidate = current.model_copy(update=update, deep=True)
            self._conflicts(candidate, ignore=record_id)
            self._records[record_id] = candidate
            return candidate.model_copy(deep=True)

    def get_record(self, record_id: UUID) -> Optional[VerificationRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def _ordered(self) -> list[VerificationRecord]:
        return [self._records[rid] for rid in self._record_order]

    def get_active_record(self, document_hash: str) -> Optional[VerificationRecord]:
        normalized = Hasher.normalize_hash(document_hash)
        with self._lock:
            for record in self._ordered():
                if record.document_hash == normalized and record.is_active:
                    return record.model_copy(deep=True)
        return None

    def list_records(self, document_hash: str) -> list[VerificationRecord]:
        normalized = Hasher.normalize_hash(document_hash)
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._ordered()
                if r.document_hash == normalized
            ]

    def find_by_certificate_id(self, certificate_id: str) -> Optional[VerificationRecord]:
        with self._lock:
            matches = [r for r in self._ordered() if r.certificate_id == certificate_id]
        if not matches:
            return None
        rank = {VerificationStatus.VERIFIED: 0, VerificationStatus.PENDING_CONFIRMATION: 1}
        best = min(
            enumerate(matches),
            key=lambda item: (rank.get(item[1].status, 2), -item[0]),
        )[1]
        return best.model_copy(deep=True)

    def find_by_ledger_b_tx(self, tx_ref: str) -> Optional[VerificationRecord]:
        with self._lock:
            for record in self._records.values():
                if record.ledger_b_tx_ref == tx_ref:
                    return record.model_copy(deep=True)
        return None

    def list_pending(self) -> list[VerificationRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._ordered()
                if r.status == VerificationStatus.PENDING_CONFIRMATION
            ]

    # ----------------------------------------------------------------
    # Organizations and certificates
    # ----------------------------------------------------------------

    def upsert_organization(self, organization: Organization) -> Organization:
        with self._lock:
            self._organizations[organization.org_id] = organization.model_copy(deep=True)
            return organization.model_copy(deep=True)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._lock:
            org = self._organizations.get(org_id)
            return org.model_copy(deep=True) if org else None

    def upsert_certificate(self, certificate: CertificateRecord) -> CertificateRecord:
        with self._lock:
            self._certificates[certificate.certificate_id] = certificate.model_copy(deep=True)
            return certificate.model_copy(deep=True)

    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        with self._lock:
            cert = self._certificates.get(certificate_id)
            return cert.model_copy(deep=True) if cert else None

    def find_certificates_by_hash(self, document_hash: str) -> list[CertificateRecord]:
        normalized = Hasher.normalize_hash(document_hash)
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._certificates.values()
                if c.document_hash == normalized
            ]

    # ----------------------------------------------------------------
    # Event log
    # ----------------------------------------------------------------

    def append_event(
        self,
        source: LedgerSource,
        event_name: EventName,
        tx_ref: str,
        block: int,
        payload: dict[str, Any],
    ) -> tuple[EventLogEntry, bool]:
        key = (LedgerSource(source).value, tx_ref, EventName(event_name).value)
        with self._lock:
            existing = self._event_keys.get(key)
            if existing is not None:
                return self._events[existing].model_copy(deep=True), False

            entry = EventLogEntry(
                entry_id=len(self._events) + 1,
                source=source,
                event_name=event_name,
                tx_ref=tx_ref,
                block=block,
                payload=copy.deepcopy(payload),
            )
            self._events.append(entry)
            self._event_keys[key] = len(self._events) - 1
            return entry.model_copy(deep=True), True

    def mark_event_processed(self, entry_id: int, processed_at: Optional[datetime] = None) -> None:
        with self._lock:
            index = entry_id - 1
            if index < 0 or index >= len(self._events):
                raise StoreError(f"Event log entry {entry_id} does not exist")
            entry = self._events[index]
            if entry.processed:
                return
            self._events[index] = entry.model_copy(update={
                "processed": True,
                "processed_at": processed_at or utcnow(),
            })

    def list_events(
        self,
        source: Optional[LedgerSource] = None,
        processed: Optional[bool] = None,
        document_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[EventLogEntry]:
        normalized = Hasher.normalize_hash(document_hash) if document_hash else None
        with self._lock:
            result = []
            for entry in self._events:
                if source is not None and entry.source != source:
                    continue
                if processed is not None and entry.processed != processed:
                    continue
                if normalized is not None and entry.payload.get("document_hash") != normalized:
                    continue
                result.append(entry.model_copy(deep=True))
                if limit is not None and len(result) >= limit:
                    break
            return result

    # ----------------------------------------------------------------
    # Checkpoints
    # ----------------------------------------------------------------

    def get_checkpoint(self, source: LedgerSource) -> Optional[SyncCheckpoint]:
        with self._lock:
            cp = self._checkpoints.get(LedgerSource(source))
            return cp.model_copy() if cp else None

    def advance_checkpoint(self, source: LedgerSource, block: int) -> SyncCheckpoint:
        source = LedgerSource(source)
        with self._lock:
            cp = self._checkpoints.get(source) or SyncCheckpoint(source=source)
            cp = cp.model_copy(update={
                "last_synced_block": max(cp.last_synced_block, block),
                "last_synced_at": utcnow(),
            })
            self._checkpoints[source] = cp
            return cp.model_copy()

    def set_checkpoint_status(
        self,
        source: LedgerSource,
        status: CheckpointStatus,
        error_message: Optional[str] = None,
    ) -> SyncCheckpoint:
        source = LedgerSource(source)
        with self._lock:
            cp = self._checkpoints.get(source) or SyncCheckpoint(source=source)
            cp = cp.model_copy(update={"status": status, "error_message": error_message})
            self._checkpoints[source] = cp
            return cp.model_copy()

    def ping(self) -> dict[str, Any]:
        with self._lock:
            return {
                "records": len(self._records),
                "events": len(self._events),
            }

    # ----------------------------------------------------------------
    # Testing helpers
    # ----------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """
        Comparable view of the cache.

        Record ids and wall-clock bookkeeping are excluded; everything
        derived from ledger events is included.
        """
        with self._lock:
            records = sorted(
                (
                    r.model_dump(mode="json", exclude={"record_id"})
                    for r in self._records.values()
                ),
                key=lambda d: (d["document_hash"], d["status"], d.get("ledger_b_tx_ref") or ""),
            )
            return {
                "records": records,
                "organizations": {
                    k: v.model_dump(mode="json") for k, v in sorted(self._organizations.items())
                },
                "certificates": {
                    k: v.model_dump(mode="json") for k, v in sorted(self._certificates.items())
                },
                "events": sorted(
                    (e.idempotency_key, e.block, e.processed) for e in self._events
                ),
                "checkpoints": {
                    s.value: cp.last_synced_block for s, cp in self._checkpoints.items()
                },
            }

    def count_verified(self, document_hash: str) -> int:
        return sum(1 for r in self.list_records(document_hash) if r.verified)


def iter_unprocessed(store: VerificationStore, sources: Iterable[LedgerSource]) -> list[EventLogEntry]:
    """Unprocessed log entries across sources, in arrival order per source."""
    entries: list[EventLogEntry] = []
    for source in sources:
        entries.extend(store.list_events(source=source, processed=False))
    return entries
