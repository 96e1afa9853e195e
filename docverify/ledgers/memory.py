"""
In-Memory Ledgers

Process-local LedgerA, LedgerB and BlobStore for development and testing.

They keep the conventions the real ledgers have:
- LedgerA stores bare hex hashes, LedgerB stores 0x-prefixed hashes
- LedgerB confirms asynchronously; hold_confirmations=True leaves
  transactions pending until confirm_pending() is called
- Both emit events into a block-ordered feed that subscriptions read

Failure knobs for tests:
- available = False     -> LedgerUnavailableError / StorageError
- fail_next_with = "x"  -> next LedgerB anchor is refused with reason "x"
- redeliver(n)          -> last n events delivered again (at-least-once)

NOT suitable for production (no durability, no shared state).
"""

import hashlib
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from ..core.errors import (
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from ..core.hasher import Hasher
from ..schemas import (
    AnchorReceipt,
    CertificateStatus,
    EventName,
    LedgerARecord,
    LedgerBAnchor,
    LedgerSource,
    RawLedgerEvent,
    to_epoch_ms,
    utcnow,
)
from .base import BlobStore, EventSubscription, LedgerAClient, LedgerBClient

logger = logging.getLogger(__name__)


def _new_tx_ref() -> str:
    return "0x" + secrets.token_hex(32)


# ============================================================
# EVENT FEED
# ============================================================

class EventFeed:
    """
    Append-only event list with blocking readers.

    Each published event gets the next block number.
    """

    def __init__(self, source: LedgerSource):
        self.source = source
        self._events: list[RawLedgerEvent] = []
        self._cond = threading.Condition()
        self._block = 0

    @property
    def head_block(self) -> int:
        with self._cond:
            return self._block

    def publish(self, event_name: EventName, payload: dict[str, Any], tx_ref: str) -> RawLedgerEvent:
        with self._cond:
            self._block += 1
            event = RawLedgerEvent(
                source=self.source,
                event_name=event_name.value,
                tx_ref=tx_ref,
                block=self._block,
                payload=payload,
            )
            self._events.append(event)
            self._cond.notify_all()
            return event

    def publish_raw(self, event: RawLedgerEvent) -> None:
        """Deliver an event verbatim (redelivery or malformed input)."""
        with self._cond:
            self._events.append(event)
            self._cond.notify_all()

    def redeliver(self, count: int) -> list[RawLedgerEvent]:
        with self._cond:
            tail = list(self._events[-count:]) if count > 0 else []
        for event in tail:
            self.publish_raw(event)
        return tail

    def events(self) -> list[RawLedgerEvent]:
        with self._cond:
            return list(self._events)

    def position_for_block(self, from_block: int) -> int:
        with self._cond:
            for i, event in enumerate(self._events):
                if event.block >= from_block:
                    return i
            return len(self._events)

    def read(self, position: int, timeout: float) -> Optional[RawLedgerEvent]:
        with self._cond:
            if position >= len(self._events):
                self._cond.wait(timeout)
            if position >= len(self._events):
                return None
            return self._events[position]


class FeedSubscription(EventSubscription):
    """Cursor over an EventFeed."""

    def __init__(
        self,
        feed: EventFeed,
        from_block: int,
        event_names: Optional[Iterable[EventName]] = None,
        health_check: Optional[Callable[[], None]] = None,
    ):
        self._feed = feed
        self._position = feed.position_for_block(from_block)
        self._names = {n.value for n in event_names} if event_names else None
        self._health_check = health_check
        self._closed = False

    def next_event(self, timeout: float) -> Optional[RawLedgerEvent]:
        deadline = time.monotonic() + timeout
        while not self._closed:
            if self._health_check:
                self._health_check()
            remaining = max(0.0, deadline - time.monotonic())
            event = self._feed.read(self._position, remaining)
            if event is None:
                return None
            self._position += 1
            if self._names is None or event.event_name in self._names:
                return event
        return None

    def close(self) -> None:
        self._closed = True


# ============================================================
# LEDGER A
# ============================================================

class InMemoryLedgerA(LedgerAClient):
    """Permissioned certificate ledger. Keeps every version of every certificate."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._versions: dict[str, list[LedgerARecord]] = {}
        self._lock = threading.Lock()
        self._clock = clock or utcnow
        self.feed = EventFeed(LedgerSource.LEDGER_A)
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise LedgerUnavailableError("LedgerA is unreachable")

    def submit(
        self,
        certificate_id: str,
        organization_id: str,
        document_hash: str,
        holder_name: str,
        issue_date: str,
        metadata: dict[str, Any],
    ) -> LedgerARecord:
        self._check_available()
        bare = Hasher.strip_prefix(document_hash)
        now = self._clock()

        with self._lock:
            if certificate_id in self._versions:
                raise ValidationError(f"Certificate {certificate_id} already exists")
            record = LedgerARecord(
                certificate_id=certificate_id,
                organization_id=organization_id,
                document_hash=bare,
                holder_name=holder_name,
                issue_date=issue_date,
                metadata=dict(metadata or {}),
                timestamp=now,
            )
            self._versions[certificate_id] = [record]

        self.feed.publish(
            EventName.CERTIFICATE_ISSUED,
            {
                "certificate_id": certificate_id,
                "organization_id": organization_id,
                "document_hash": bare,
                "timestamp": to_epoch_ms(now),
            },
            _new_tx_ref(),
        )
        return record.model_copy()

    def query_by_hash(
        self,
        document_hash: str,
        organization_id: Optional[str] = None,
    ) -> list[LedgerARecord]:
        self._check_available()
        with self._lock:
            current = [versions[-1] for versions in self._versions.values()]
        return [
            r.model_copy()
            for r in current
            if Hasher.hashes_equal(r.document_hash, document_hash)
            and (organization_id is None or r.organization_id == organization_id)
        ]

    def query_by_id(self, certificate_id: str) -> Optional[LedgerARecord]:
        self._check_available()
        with self._lock:
            versions = self._versions.get(certificate_id)
            return versions[-1].model_copy() if versions else None

    def get_history(self, certificate_id: str) -> list[LedgerARecord]:
        self._check_available()
        with self._lock:
            return [v.model_copy() for v in self._versions.get(certificate_id, [])]

    def update_status(
        self,
        certificate_id: str,
        status: CertificateStatus,
        reason: Optional[str] = None,
    ) -> LedgerARecord:
        self._check_available()
        now = self._clock()

        with self._lock:
            versions = self._versions.get(certificate_id)
            if not versions:
                raise NotFoundError(f"Certificate {certificate_id} does not exist")
            latest = versions[-1]
            record = latest.model_copy(update={
                "status": CertificateStatus(status),
                "status_reason": reason,
                "timestamp": now,
                "version": latest.version + 1,
            })
            versions.append(record)

        self.feed.publish(
            EventName.CERTIFICATE_STATUS_UPDATED,
            {
                "certificate_id": certificate_id,
                "status": record.status.value,
                "reason": reason,
                "timestamp": to_epoch_ms(now),
            },
            _new_tx_ref(),
        )
        return record.model_copy()

    def subscribe(self, from_block: int) -> EventSubscription:
        self._check_available()
        return FeedSubscription(self.feed, from_block, health_check=self._check_available)


# ============================================================
# LEDGER B
# ============================================================

@dataclass
class _Transaction:
    tx_ref: str
    document_hash: str
    blob_ref: str
    organization_id: str
    proof_hash: str
    receipt: Optional[AnchorReceipt] = None


class InMemoryLedgerB(LedgerBClient):
    """Public anchoring ledger. One anchor per document hash, ever."""

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        hold_confirmations: bool = False,
    ):
        self._anchors: dict[str, LedgerBAnchor] = {}
        self._transactions: dict[str, _Transaction] = {}
        self._rejections: list[dict[str, Any]] = []
        self._cond = threading.Condition()
        self._clock = clock or utcnow
        self.feed = EventFeed(LedgerSource.LEDGER_B)
        self.hold_confirmations = hold_confirmations
        self.fail_next_with: Optional[str] = None
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise LedgerUnavailableError("LedgerB is unreachable")

    def anchor(
        self,
        document_hash: str,
        blob_ref: str,
        organization_id: str,
        proof_hash: str,
    ) -> str:
        self._check_available()
        normalized = Hasher.normalize_hash(document_hash)

        with self._cond:
            tx = _Transaction(
                tx_ref=_new_tx_ref(),
                document_hash=normalized,
                blob_ref=blob_ref,
                organization_id=organization_id,
                proof_hash=proof_hash,
            )
            self._transactions[tx.tx_ref] = tx
            if not self.hold_confirmations:
                self._mine(tx)
            return tx.tx_ref

    def _mine(self, tx: _Transaction) -> None:
        """Confirm or refuse a transaction. Caller holds self._cond."""
        if self.fail_next_with is not None:
            reason, self.fail_next_with = self.fail_next_with, None
            tx.receipt = AnchorReceipt(tx_ref=tx.tx_ref, success=False, reason=reason)
        elif tx.document_hash in self._anchors:
            tx.receipt = AnchorReceipt(
                tx_ref=tx.tx_ref,
                success=False,
                reason="document already anchored",
            )
        else:
            now = self._clock()
            event = self.feed.publish(
                EventName.DOCUMENT_VERIFIED,
                {
                    "document_hash": tx.document_hash,
                    "organization_id": tx.organization_id,
                    "blob_ref": tx.blob_ref,
                    "proof_hash": tx.proof_hash,
                    "timestamp": to_epoch_ms(now),
                },
                tx.tx_ref,
            )
            self._anchors[tx.document_hash] = LedgerBAnchor(
                document_hash=tx.document_hash,
                organization_id=tx.organization_id,
                blob_ref=tx.blob_ref,
                proof_hash=tx.proof_hash,
                anchored_at=now,
                tx_ref=tx.tx_ref,
                block=event.block,
            )
            tx.receipt = AnchorReceipt(tx_ref=tx.tx_ref, success=True, block=event.block)
        self._cond.notify_all()

    def confirm_pending(self) -> int:
        """Mine every held transaction. Returns how many were mined."""
        with self._cond:
            pending = [tx for tx in self._transactions.values() if tx.receipt is None]
            for tx in pending:
                self._mine(tx)
            return len(pending)

    def wait_for_confirmation(self, tx_ref: str, timeout: float) -> AnchorReceipt:
        with self._cond:
            tx = self._transactions.get(tx_ref)
            if tx is None:
                raise LedgerError(f"Unknown transaction {tx_ref}", tx_ref=tx_ref)
            if not self._cond.wait_for(lambda: tx.receipt is not None, timeout=timeout):
                raise LedgerTimeoutError(
                    f"No confirmation for {tx_ref} within {timeout}s",
                    document_hash=tx.document_hash,
                    tx_ref=tx_ref,
                )
            return tx.receipt

    def get_receipt(self, tx_ref: str) -> Optional[AnchorReceipt]:
        self._check_available()
        with self._cond:
            tx = self._transactions.get(tx_ref)
            return tx.receipt if tx else None

    def reject(self, document_hash: str, organization_id: str, reason: str) -> str:
        self._check_available()
        normalized = Hasher.normalize_hash(document_hash)
        now = self._clock()
        tx_ref = _new_tx_ref()

        event = self.feed.publish(
            EventName.DOCUMENT_REJECTED,
            {
                "document_hash": normalized,
                "organization_id": organization_id,
                "reason": reason,
                "timestamp": to_epoch_ms(now),
            },
            tx_ref,
        )
        with self._cond:
            self._rejections.append({
                "document_hash": normalized,
                "organization_id": organization_id,
                "reason": reason,
                "tx_ref": tx_ref,
                "block": event.block,
            })
        return tx_ref

    def get_anchor(self, document_hash: str) -> Optional[LedgerBAnchor]:
        self._check_available()
        normalized = Hasher.normalize_hash(document_hash)
        with self._cond:
            anchor = self._anchors.get(normalized)
            return anchor.model_copy() if anchor else None

    def rejections_for(self, document_hash: str) -> list[dict[str, Any]]:
        normalized = Hasher.normalize_hash(document_hash)
        with self._cond:
            return [dict(r) for r in self._rejections if r["document_hash"] == normalized]

    def register_organization(
        self,
        org_id: str,
        wallet_address: str,
        org_type: str = "1",
        name: Optional[str] = None,
    ) -> str:
        self._check_available()
        tx_ref = _new_tx_ref()
        payload = {
            "org_id": org_id,
            "wallet_address": wallet_address,
            "org_type": org_type,
            "timestamp": to_epoch_ms(self._clock()),
        }
        if name:
            payload["name"] = name
        self.feed.publish(EventName.ORGANIZATION_REGISTERED, payload, tx_ref)
        return tx_ref

    def deactivate_organization(self, org_id: str, wallet_address: str) -> str:
        self._check_available()
        tx_ref = _new_tx_ref()
        self.feed.publish(
            EventName.ORGANIZATION_DEACTIVATED,
            {
                "org_id": org_id,
                "wallet_address": wallet_address,
                "timestamp": to_epoch_ms(self._clock()),
            },
            tx_ref,
        )
        return tx_ref

    def subscribe(
        self,
        from_block: int,
        event_names: Optional[Iterable[EventName]] = None,
    ) -> EventSubscription:
        self._check_available()
        return FeedSubscription(
            self.feed,
            from_block,
            event_names=event_names,
            health_check=self._check_available,
        )


# ============================================================
# BLOB STORE
# ============================================================

class InMemoryBlobStore(BlobStore):
    """Content-addressed dict. Same bytes -> same reference."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.available = True

    def put(self, data: bytes) -> str:
        if not self.available:
            raise StorageError("Blob store is unreachable")
        ref = "mem-" + hashlib.sha256(data).hexdigest()
        with self._lock:
            self._blobs[ref] = bytes(data)
        logger.debug(f"Stored blob {ref[:16]}... ({len(data)} bytes)")
        return ref

    def get(self, ref: str) -> bytes:
        if not self.available:
            raise StorageError("Blob store is unreachable")
        with self._lock:
            data = self._blobs.get(ref)
        if data is None:
            raise NotFoundError(f"Blob {ref} not found")
        return data

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
