# Schemas for the dual-ledger verification core.

from .records import (
    ACTIVE_STATUSES,
    AnchorReceipt,
    CertificateRecord,
    CertificateStatus,
    HistoryEntry,
    LedgerARecord,
    LedgerBAnchor,
    Organization,
    OrganizationStatus,
    ProofBundle,
    ProofDetails,
    SubmissionResult,
    VerificationHistory,
    VerificationRecord,
    VerificationStatus,
    from_epoch_ms,
    to_epoch_ms,
    utcnow,
)
from .events import (
    SOURCE_EVENTS,
    CertificateIssuedPayload,
    CertificateStatusUpdatedPayload,
    CheckpointStatus,
    DocumentRejectedPayload,
    DocumentVerifiedPayload,
    EventLogEntry,
    EventName,
    EventPayload,
    LedgerSource,
    OrganizationDeactivatedPayload,
    OrganizationRegisteredPayload,
    RawLedgerEvent,
    SyncCheckpoint,
)

__all__ = [
    # Records
    "ACTIVE_STATUSES",
    "AnchorReceipt",
    "CertificateRecord",
    "CertificateStatus",
    "HistoryEntry",
    "LedgerARecord",
    "LedgerBAnchor",
    "Organization",
    "OrganizationStatus",
    "ProofBundle",
    "ProofDetails",
    "SubmissionResult",
    "VerificationHistory",
    "VerificationRecord",
    "VerificationStatus",
    "from_epoch_ms",
    "to_epoch_ms",
    "utcnow",
    # Events
    "SOURCE_EVENTS",
    "CertificateIssuedPayload",
    "CertificateStatusUpdatedPayload",
    "CheckpointStatus",
    "DocumentRejectedPayload",
    "DocumentVerifiedPayload",
    "EventLogEntry",
    "EventName",
    "EventPayload",
    "LedgerSource",
    "OrganizationDeactivatedPayload",
    "OrganizationRegisteredPayload",
    "RawLedgerEvent",
    "SyncCheckpoint",
]
