"""
Ledger Event Schema

Events arrive from two ledgers with at-least-once delivery.
Each event name maps to exactly one payload model.

Validation happens HERE, at the ingestion boundary:
- Unknown event names are rejected
- Events from the wrong source are rejected
- Missing or mistyped fields are rejected

Nothing downstream ever sees an untyped payload.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError as PydanticValidationError, field_validator

from ..core.errors import InvalidHashError, MalformedEventError
from ..core.hasher import Hasher
from .records import CertificateStatus, utcnow


class LedgerSource(str, Enum):
    """Where an event came from. One checkpoint row per source."""
    LEDGER_A = "ledger_a"
    LEDGER_B = "ledger_b"


class EventName(str, Enum):
    """
    All ledger event names.
    You can add more later, never remove.
    """
    # LedgerB (public ledger)
    ORGANIZATION_REGISTERED = "OrganizationRegistered"
    DOCUMENT_VERIFIED = "DocumentVerified"
    DOCUMENT_REJECTED = "DocumentRejected"
    ORGANIZATION_DEACTIVATED = "OrganizationDeactivated"

    # LedgerA (organization ledger)
    CERTIFICATE_ISSUED = "CertificateIssued"
    CERTIFICATE_STATUS_UPDATED = "CertificateStatusUpdated"


SOURCE_EVENTS: dict[LedgerSource, frozenset[EventName]] = {
    LedgerSource.LEDGER_A: frozenset({
        EventName.CERTIFICATE_ISSUED,
        EventName.CERTIFICATE_STATUS_UPDATED,
    }),
    LedgerSource.LEDGER_B: frozenset({
        EventName.ORGANIZATION_REGISTERED,
        EventName.DOCUMENT_VERIFIED,
        EventName.DOCUMENT_REJECTED,
        EventName.ORGANIZATION_DEACTIVATED,
    }),
}


# ============================================================
# Event Payloads
# Timestamps are milliseconds since epoch, as the ledgers emit them.
# ============================================================

class _HashedPayload(BaseModel):
    document_hash: str = Field(..., description="Normalized to 0x-prefixed lowercase")

    @field_validator("document_hash")
    @classmethod
    def _normalize(cls, v: str) -> str:
        try:
            return Hasher.normalize_hash(v)
        except InvalidHashError as e:
            raise ValueError(str(e)) from e


class OrganizationRegisteredPayload(BaseModel):
    event_name: Literal["OrganizationRegistered"] = "OrganizationRegistered"
    org_id: str = Field(..., min_length=1)
    wallet_address: str = Field(..., min_length=1)
    org_type: str
    timestamp: int
    name: Optional[str] = None
    schema_version: int = 1


class OrganizationDeactivatedPayload(BaseModel):
    event_name: Literal["OrganizationDeactivated"] = "OrganizationDeactivated"
    org_id: str = Field(..., min_length=1)
    wallet_address: str
    timestamp: int
    schema_version: int = 1


class DocumentVerifiedPayload(_HashedPayload):
    """
    LedgerB confirmed an anchor.

    Reconciled by document_hash: resolves a pending record if one exists,
    otherwise creates the verified record.
    """
    event_name: Literal["DocumentVerified"] = "DocumentVerified"
    organization_id: str = Field(..., min_length=1)
    blob_ref: str
    proof_hash: str
    timestamp: int
    schema_version: int = 1


class DocumentRejectedPayload(_HashedPayload):
    event_name: Literal["DocumentRejected"] = "DocumentRejected"
    organization_id: str = Field(..., min_length=1)
    reason: str
    timestamp: int
    schema_version: int = 1


class CertificateIssuedPayload(_HashedPayload):
    event_name: Literal["CertificateIssued"] = "CertificateIssued"
    certificate_id: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)
    timestamp: int
    schema_version: int = 1


class CertificateStatusUpdatedPayload(BaseModel):
    event_name: Literal["CertificateStatusUpdated"] = "CertificateStatusUpdated"
    certificate_id: str = Field(..., min_length=1)
    status: CertificateStatus
    reason: Optional[str] = None
    timestamp: int
    schema_version: int = 1


EventPayload = Annotated[
    Union[
        OrganizationRegisteredPayload,
        OrganizationDeactivatedPayload,
        DocumentVerifiedPayload,
        DocumentRejectedPayload,
        CertificateIssuedPayload,
        CertificateStatusUpdatedPayload,
    ],
    Field(discriminator="event_name"),
]

_payload_adapter: TypeAdapter = TypeAdapter(EventPayload)


# ============================================================
# Delivered events and the persisted log
# ============================================================

class RawLedgerEvent(BaseModel):
    """
    An event exactly as a subscription delivered it.

    The payload is untrusted until parse_payload() succeeds.
    """
    source: LedgerSource
    event_name: str
    tx_ref: str
    block: int
    payload: dict[str, Any] = Field(default_factory=dict)

    def parse_payload(self) -> EventPayload:
        """
        Validate the payload against the schema for its event name.

        Raises:
            MalformedEventError: Unknown name, wrong source, or invalid payload
        """
        try:
            name = EventName(self.event_name)
        except ValueError:
            raise MalformedEventError(f"Unknown event name: {self.event_name!r}")

        if name not in SOURCE_EVENTS[self.source]:
            raise MalformedEventError(
                f"Event {name.value} is not emitted by {self.source.value}"
            )

        try:
            return _payload_adapter.validate_python({**self.payload, "event_name": name.value})
        except PydanticValidationError as e:
            raise MalformedEventError(
                f"Invalid {name.value} payload (tx {self.tx_ref}): {e.error_count()} error(s)"
            ) from e


class EventLogEntry(BaseModel):
    """
    Immutable record of a received event.

    Created on receipt, mutated exactly once to processed=True.
    Idempotency key: (source, tx_ref, event_name).
    """
    entry_id: int
    source: LedgerSource
    event_name: EventName
    tx_ref: str
    block: int
    payload: dict[str, Any]
    processed: bool = False
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.source.value, self.tx_ref, self.event_name.value)

    def to_raw(self) -> RawLedgerEvent:
        return RawLedgerEvent(
            source=self.source,
            event_name=self.event_name.value,
            tx_ref=self.tx_ref,
            block=self.block,
            payload=self.payload,
        )


class CheckpointStatus(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"
    ERROR = "error"


class SyncCheckpoint(BaseModel):
    """Last processed block per source. last_synced_block never decreases."""
    source: LedgerSource
    last_synced_block: int = 0
    last_synced_at: Optional[datetime] = None
    status: CheckpointStatus = CheckpointStatus.ACTIVE
    error_message: Optional[str] = None
