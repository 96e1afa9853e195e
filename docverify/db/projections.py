"""
Projection Service - Ledger Events to Cache

Applies validated ledger events to the verification cache.
The cache is a projection; the ledgers are the source of truth.

Every handler is an upsert keyed by a natural identifier:
- document_hash for verification events
- org_id for organization events
- certificate_id for certificate events

Handlers take their timestamps from the event payload, never from the
wall clock, so applying the same events yields the same cache state no
matter how often or how late they are delivered.

USAGE:
    projections = ProjectionService(store)
    projections.apply(raw_event, raw_event.parse_payload())
"""

import logging
from typing import Optional

from ..schemas import (
    CertificateIssuedPayload,
    CertificateRecord,
    CertificateStatus,
    CertificateStatusUpdatedPayload,
    DocumentRejectedPayload,
    DocumentVerifiedPayload,
    EventPayload,
    Organization,
    OrganizationDeactivatedPayload,
    OrganizationRegisteredPayload,
    RawLedgerEvent,
    VerificationRecord,
    VerificationStatus,
    from_epoch_ms,
)
from .store import DuplicateVerificationError, VerificationStore

logger = logging.getLogger(__name__)


class ProjectionService:
    """
    Maintains the verification cache from the ledger event streams.

    Thread Safety:
    - Holds no state of its own
    - Concurrent writers are arbitrated by the store's uniqueness
      constraints and compare-and-set transitions
    """

    def __init__(self, store: VerificationStore):
        self._store = store

    # ================================================================
    # DISPATCH
    # ================================================================

    def apply(self, event: RawLedgerEvent, payload: EventPayload) -> None:
        """
        Update the cache for one validated event.

        Args:
            event: The delivered event (for tx_ref and block)
            payload: The parsed payload from event.parse_payload()
        """
        handlers = {
            "OrganizationRegistered": self._handle_organization_registered,
            "OrganizationDeactivated": self._handle_organization_deactivated,
            "DocumentVerified": self._handle_document_verified,
            "DocumentRejected": self._handle_document_rejected,
            "CertificateIssued": self._handle_certificate_issued,
            "CertificateStatusUpdated": self._handle_certificate_status_updated,
        }

        handler = handlers.get(payload.event_name)
        if handler:
            handler(event, payload)
        else:
            logger.warning(f"No projection handler for event: {payload.event_name}")

    # ================================================================
    # ORGANIZATIONS
    # ================================================================

    def _handle_organization_registered(
        self, event: RawLedgerEvent, payload: OrganizationRegisteredPayload
    ) -> None:
        at = from_epoch_ms(payload.timestamp)
        existing = self._store.get_organization(payload.org_id)
        if existing is not None:
            org = existing.model_copy(update={
                "wallet_address": payload.wallet_address,
                "org_type": payload.org_type,
                "name": payload.name or existing.name,
                "registered_at": existing.registered_at or at,
                "updated_at": max(existing.updated_at, at),
            })
        else:
            org = Organization(
                org_id=payload.org_id,
                wallet_address=payload.wallet_address,
                org_type=payload.org_type,
                name=payload.name,
                registered_at=at,
                updated_at=at,
            )
        self._store.upsert_organization(org)

    def _handle_organization_deactivated(
        self, event: RawLedgerEvent, payload: OrganizationDeactivatedPayload
    ) -> None:
        at = from_epoch_ms(payload.timestamp)
        existing = self._store.get_organization(payload.org_id)
        if existing is None:
            # Deactivation seen before registration; keep the fact anyway.
            org = Organization(
                org_id=payload.org_id,
                wallet_address=payload.wallet_address,
                is_active=False,
                updated_at=at,
            )
        else:
            org = existing.model_copy(update={
                "is_active": False,
                "updated_at": max(existing.updated_at, at),
            })
        self._store.upsert_organization(org)

    # ================================================================
    # VERIFICATION RECORDS
    # ================================================================

    def _handle_document_verified(
        self, event: RawLedgerEvent, payload: DocumentVerifiedPayload, retry: bool = True
    ) -> None:
        """
        Reconcile a confirmed anchor by document hash.

        - Record already owns this tx -> promote it if still pending
        - Pending record for the hash -> resolve it to verified
        - Verified record for the hash -> merge missing ledger fields
        - No active record -> create the verified record
        """
        at = from_epoch_ms(payload.timestamp)
        resolved = {
            "ledger_b_tx_ref": event.tx_ref,
            "ledger_b_block": event.block,
            "verified_at": at,
            "updated_at": at,
        }

        owner = self._store.find_by_ledger_b_tx(event.tx_ref)
        if owner is not None:
            if owner.status == VerificationStatus.PENDING_CONFIRMATION:
                self._resolve_pending(owner, payload, resolved)
            elif owner.status != VerificationStatus.VERIFIED:
                logger.warning(
                    f"Anchor {event.tx_ref} confirmed for record {owner.record_id} "
                    f"in status {owner.status.value}"
                )
            return

        active = self._store.get_active_record(payload.document_hash)
        if active is not None and active.status == VerificationStatus.PENDING_CONFIRMATION:
            if self._resolve_pending(active, payload, resolved) is None and retry:
                self._handle_document_verified(event, payload, retry=False)
            return

        if active is not None:
            if active.ledger_b_tx_ref is None:
                self._store.transition_record(
                    active.record_id,
                    VerificationStatus.VERIFIED,
                    ledger_b_tx_ref=event.tx_ref,
                    ledger_b_block=event.block,
                    updated_at=at,
                )
            else:
                logger.warning(
                    f"Second anchor {event.tx_ref} for {payload.document_hash}; "
                    f"already verified by {active.ledger_b_tx_ref}"
                )
            return

        record = VerificationRecord(
            document_hash=payload.document_hash,
            organization_id=payload.organization_id,
            status=VerificationStatus.VERIFIED,
            blob_ref=payload.blob_ref,
            certificate_id=self._certificate_for(payload.document_hash, payload.organization_id),
            proof_hash=payload.proof_hash,
            anchored_at=at,
            created_at=at,
            **resolved,
        )
        try:
            self._store.insert_record(record)
        except DuplicateVerificationError as e:
            if e.constraint == "tx_ref" or not retry:
                return
            # Lost the race to another writer; reconcile against its record.
            self._handle_document_verified(event, payload, retry=False)

    def _resolve_pending(
        self,
        record: VerificationRecord,
        payload: DocumentVerifiedPayload,
        resolved: dict,
    ) -> Optional[VerificationRecord]:
        changes = dict(resolved)
        changes.setdefault("blob_ref", record.blob_ref or payload.blob_ref)
        changes.setdefault("proof_hash", record.proof_hash or payload.proof_hash)
        if record.anchored_at is None:
            changes["anchored_at"] = resolved["verified_at"]
        updated = self._store.transition_record(
            record.record_id,
            VerificationStatus.PENDING_CONFIRMATION,
            status=VerificationStatus.VERIFIED,
            **changes,
        )
        if updated is not None:
            logger.info(
                f"Resolved pending record {record.record_id} for "
                f"{record.document_hash[:18]}... from anchor event"
            )
        return updated

    def _handle_document_rejected(
        self, event: RawLedgerEvent, payload: DocumentRejectedPayload
    ) -> None:
        if self._store.find_by_ledger_b_tx(event.tx_ref) is not None:
            return

        at = from_epoch_ms(payload.timestamp)
        record = VerificationRecord(
            document_hash=payload.document_hash,
            organization_id=payload.organization_id,
            status=VerificationStatus.REJECTED,
            reason=payload.reason,
            ledger_b_tx_ref=event.tx_ref,
            ledger_b_block=event.block,
            created_at=at,
            updated_at=at,
        )
        try:
            self._store.insert_record(record)
        except DuplicateVerificationError:
            # The orchestrator recorded this rejection first.
            pass

    def _certificate_for(self, document_hash: str, organization_id: str) -> Optional[str]:
        for cert in self._store.find_certificates_by_hash(document_hash):
            if cert.organization_id == organization_id:
                return cert.certificate_id
        return None

    # ================================================================
    # CERTIFICATES
    # ================================================================

    def _handle_certificate_issued(
        self, event: RawLedgerEvent, payload: CertificateIssuedPayload
    ) -> None:
        at = from_epoch_ms(payload.timestamp)
        existing = self._store.get_certificate(payload.certificate_id)
        if existing is not None:
            # A status update may have arrived first; keep its status.
            cert = existing.model_copy(update={
                "organization_id": payload.organization_id,
                "document_hash": payload.document_hash,
                "issued_at": at,
            })
        else:
            cert = CertificateRecord(
                certificate_id=payload.certificate_id,
                organization_id=payload.organization_id,
                document_hash=payload.document_hash,
                status=CertificateStatus.ACTIVE,
                issued_at=at,
                updated_at=at,
            )
        self._store.upsert_certificate(cert)

    def _handle_certificate_status_updated(
        self, event: RawLedgerEvent, payload: CertificateStatusUpdatedPayload
    ) -> None:
        at = from_epoch_ms(payload.timestamp)
        existing = self._store.get_certificate(payload.certificate_id)
        if existing is not None and existing.updated_at > at:
            logger.info(
                f"Ignoring stale status {payload.status.value} for {payload.certificate_id}"
            )
            return

        base = existing or CertificateRecord(certificate_id=payload.certificate_id)
        cert = base.model_copy(update={
            "status": payload.status,
            "status_reason": payload.reason,
            "updated_at": at,
        })
        self._store.upsert_certificate(cert)
