"""
Record Schemas

The entities the verification core reads and writes.

- VerificationRecord: one attempt to verify a document hash (append-only)
- Organization: cached organization state from LedgerB events
- LedgerARecord: a certificate version as LedgerA returns it
- LedgerBAnchor: an anchor as LedgerB returns it
- CertificateRecord: cached certificate state from LedgerA events
- ProofBundle: the answer to "is this verified"
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, field_validator

from ..core.errors import InvalidHashError
from ..core.hasher import Hasher


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(moment: datetime) -> int:
    """Milliseconds since epoch for a timezone-aware datetime."""
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


# ============================================================
# Verification records
# ============================================================

class VerificationStatus(str, Enum):
    """
    Lifecycle of a verification record.

    pending_confirmation -> verified | failed   (anchor path)
    rejected                                     (terminal at creation)
    """
    PENDING_CONFIRMATION = "pending_confirmation"
    VERIFIED = "verified"
    REJECTED = "rejected"
    FAILED = "failed"


# At most one record per document hash may be in one of these states.
ACTIVE_STATUSES = frozenset({
    VerificationStatus.PENDING_CONFIRMATION,
    VerificationStatus.VERIFIED,
})


class VerificationRecord(BaseModel):
    """
    A single verification attempt for a document hash.

    Records are never deleted. A rejection is a record, not an absence.
    The storage layer guarantees at most one ACTIVE record per document hash,
    which in turn guarantees at most one verified record.
    """
    record_id: UUID = Field(default_factory=uuid4)
    document_hash: str = Field(..., description="Canonical 0x-prefixed SHA-256")
    organization_id: str
    status: VerificationStatus

    blob_ref: Optional[str] = None
    certificate_id: Optional[str] = None
    proof_hash: Optional[str] = None
    anchored_at: Optional[datetime] = Field(
        default=None,
        description="Timestamp used to derive proof_hash"
    )
    ledger_b_tx_ref: Optional[str] = None
    ledger_b_block: Optional[int] = None
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ledger_a_snapshot: Optional[dict[str, Any]] = Field(
        default=None,
        description="Copy of the LedgerA record at anchoring time, for audit"
    )

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    verified_at: Optional[datetime] = None

    @field_validator("document_hash")
    @classmethod
    def _normalize_hash(cls, v: str) -> str:
        try:
            return Hasher.normalize_hash(v)
        except InvalidHashError as e:
            raise ValueError(str(e)) from e

    @computed_field
    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


# ============================================================
# Organizations
# ============================================================

class OrganizationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    BANNED = "banned"


class Organization(BaseModel):
    """Cached organization state. Keyed by org_id."""
    org_id: str
    wallet_address: Optional[str] = None
    org_type: Optional[str] = None
    name: Optional[str] = None
    status: OrganizationStatus = OrganizationStatus.VERIFIED
    is_active: bool = True
    ban_expires_at: Optional[datetime] = None
    registered_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def is_banned(self, now: datetime) -> bool:
        """
        Banned means status=banned AND a ban expiry in the future.

        A banned status without an expiry does not block submissions.
        """
        return (
            self.status == OrganizationStatus.BANNED
            and self.ban_expires_at is not None
            and self.ban_expires_at > now
        )


# ============================================================
# Ledger-native shapes (already unified behind the client interfaces)
# ============================================================

class CertificateStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class LedgerARecord(BaseModel):
    """
    One version of a certificate on LedgerA.

    document_hash is stored as LedgerA keeps it (bare hex).
    Compare through Hasher.hashes_equal().
    """
    certificate_id: str
    organization_id: str
    document_hash: str
    holder_name: str = ""
    issue_date: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: CertificateStatus = CertificateStatus.ACTIVE
    status_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    version: int = 1


class LedgerBAnchor(BaseModel):
    """An anchor as LedgerB reports it. document_hash is 0x-prefixed."""
    document_hash: str
    organization_id: str
    blob_ref: str
    proof_hash: str
    anchored_at: datetime
    tx_ref: str
    block: int

    @property
    def anchored_at_ms(self) -> int:
        return to_epoch_ms(self.anchored_at)


class AnchorReceipt(BaseModel):
    """Confirmation outcome of a LedgerB transaction."""
    tx_ref: str
    success: bool
    block: Optional[int] = None
    reason: Optional[str] = None


class CertificateRecord(BaseModel):
    """Cached certificate state, maintained from LedgerA events."""
    certificate_id: str
    organization_id: Optional[str] = None
    document_hash: Optional[str] = None
    status: CertificateStatus = CertificateStatus.ACTIVE
    status_reason: Optional[str] = None
    issued_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================
# Results
# ============================================================

class SubmissionResult(BaseModel):
    """What the write path returns to its caller."""
    verified: bool
    status: VerificationStatus
    record_id: UUID
    document_hash: str
    organization_id: str
    certificate_id: Optional[str] = None
    blob_ref: Optional[str] = None
    ledger_b_tx_ref: Optional[str] = None
    ledger_b_block: Optional[int] = None
    reason: Optional[str] = None
    duplicate: bool = Field(
        default=False,
        description="True when an existing record for the same hash was returned"
    )

    @classmethod
    def from_record(cls, record: VerificationRecord, duplicate: bool = False) -> "SubmissionResult":
        return cls(
            verified=record.verified,
            status=record.status,
            record_id=record.record_id,
            document_hash=record.document_hash,
            organization_id=record.organization_id,
            certificate_id=record.certificate_id,
            blob_ref=record.blob_ref,
            ledger_b_tx_ref=record.ledger_b_tx_ref,
            ledger_b_block=record.ledger_b_block,
            reason=record.reason,
            duplicate=duplicate,
        )


class ProofDetails(BaseModel):
    """Evidence backing a positive verification."""
    proof_hash: str
    proof_hash_recomputed: Optional[bool] = Field(
        default=None,
        description="Advisory: whether proof_hash could be recomputed from ledger data"
    )
    ledger_b_tx_ref: str
    ledger_b_block: int
    anchored_at: datetime
    blob_ref: str
    ledger_a_version: int
    ledger_a_timestamp: datetime


class ProofBundle(BaseModel):
    """
    Answer to "is this document verified".

    verified=True only ever comes from a live dual-ledger check.
    """
    verified: bool
    document_hash: Optional[str] = None
    reason: Optional[str] = None
    organization: Optional[Organization] = None
    organization_id: Optional[str] = None
    certificate_id: Optional[str] = None
    holder_name: Optional[str] = None
    issue_date: Optional[str] = None
    proof: Optional[ProofDetails] = None

    @classmethod
    def not_verified(
        cls,
        reason: str,
        document_hash: Optional[str] = None,
        certificate_id: Optional[str] = None,
    ) -> "ProofBundle":
        return cls(
            verified=False,
            reason=reason,
            document_hash=document_hash,
            certificate_id=certificate_id,
        )


class HistoryEntry(BaseModel):
    """One ledger event touching a document."""
    source: str
    event_name: str
    tx_ref: str
    block: int
    recorded_at: datetime
    payload: dict[str, Any]


class VerificationHistory(BaseModel):
    document_hash: str
    certificate_id: Optional[str] = None
    events: list[HistoryEntry] = Field(default_factory=list)
    certificate_versions: list[LedgerARecord] = Field(default_factory=list)
    records: list[VerificationRecord] = Field(default_factory=list)
