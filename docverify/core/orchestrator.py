"""
Verification Orchestrator - The Write Path

Turns an uploaded document (or a rendered template) into a verification
record backed by both ledgers.

FLOW (submit):
1. Hash the bytes (SHA-256, 0x-prefixed)
2. Store the bytes in the blob store. Failure aborts before any ledger write.
3. Look the hash up on LedgerA for the submitting organization
   - Not there: anchor a rejection on LedgerB and record it
4. Derive the proof hash and persist a pending_confirmation record
5. Anchor on LedgerB and wait (bounded) for confirmation
   - Confirmed: record becomes verified
   - Refused: record becomes failed, AnchorFailedError
   - No answer in time: record stays pending, LedgerTimeoutError.
     The LedgerB event stream resolves it later.

Nothing here is retried. A blind retry of an anchor whose first attempt
may have landed risks a second anchor for the same document.

CONFIGURATION:
- DOCVERIFY_ANCHOR_TIMEOUT_SECONDS: Confirmation wait (default: 30)
- DOCVERIFY_VERIFY_BASE_URL: Embedded in issued certificates
- DOCVERIFY_CERT_ID_ATTEMPTS: Certificate id collision retries (default: 5)
"""

import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..db.store import DuplicateVerificationError, VerificationStore
from ..ledgers.base import BlobStore, LedgerAClient, LedgerBClient
from ..observability import get_metrics
from ..schemas import (
    CertificateStatus,
    LedgerARecord,
    SubmissionResult,
    VerificationRecord,
    VerificationStatus,
    to_epoch_ms,
    utcnow,
)
from .errors import (
    AnchorFailedError,
    ConsistencyError,
    DocVerifyError,
    LedgerError,
    LedgerTimeoutError,
    OrganizationBannedError,
    ValidationError,
)
from .hasher import Hasher
from .rendering import ArtifactRenderer, CanonicalJsonRenderer

logger = logging.getLogger(__name__)

REASON_NOT_IN_LEDGER_A = "not found in organization ledger"
REASON_ANCHORED_ELSEWHERE = "already anchored by another organization"

CERTIFICATE_ID_PATTERN = re.compile(r"^CERT-\d{8}-[0-9A-F]{6}$")


def generate_certificate_id(now: datetime) -> str:
    """CERT-{YYYYMMDD}-{6 uppercase hex}."""
    return f"CERT-{now.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


def is_certificate_id(value: Any) -> bool:
    return isinstance(value, str) and CERTIFICATE_ID_PATTERN.match(value) is not None


@dataclass
class OrchestratorConfig:
    """Configuration for the write path."""
    anchor_timeout_seconds: float = 30.0
    verify_base_url: str = "http://localhost:8000/verify"
    certificate_id_attempts: int = 5

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables."""
        return cls(
            anchor_timeout_seconds=float(os.environ.get("DOCVERIFY_ANCHOR_TIMEOUT_SECONDS", "30")),
            verify_base_url=os.environ.get("DOCVERIFY_VERIFY_BASE_URL", "http://localhost:8000/verify"),
            certificate_id_attempts=int(os.environ.get("DOCVERIFY_CERT_ID_ATTEMPTS", "5")),
        )


class VerificationOrchestrator:
    """
    Write path for document verification.

    Stateless between calls; safe to share across request threads.
    Concurrent submissions of the same bytes are arbitrated by the
    store's one-active-record-per-hash constraint.
    """

    def __init__(
        self,
        store: VerificationStore,
        ledger_a: LedgerAClient,
        ledger_b: LedgerBClient,
        blob_store: BlobStore,
        renderer: Optional[ArtifactRenderer] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        certificate_id_factory: Optional[Callable[[datetime], str]] = None,
    ):
        self._store = store
        self._ledger_a = ledger_a
        self._ledger_b = ledger_b
        self._blob_store = blob_store
        self._renderer = renderer or CanonicalJsonRenderer()
        self._config = config or OrchestratorConfig.from_env()
        self._clock = clock or utcnow
        self._new_certificate_id = certificate_id_factory or generate_certificate_id

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def renderer(self) -> ArtifactRenderer:
        return self._renderer

    # ================================================================
    # SUBMISSION
    # ================================================================

    def submit(
        self,
        document: bytes,
        organization_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SubmissionResult:
        """
        Verify uploaded bytes against the organization's ledger and anchor the result.

        Returns:
            SubmissionResult. verified=False with a reason for rejections.

        Raises:
            ValidationError: Empty document or missing organization
            OrganizationBannedError: Organization is under an active ban
            StorageError: Blob store failed (nothing written to either ledger)
            LedgerUnavailableError: A ledger could not be reached
            AnchorFailedError: LedgerB refused the anchor (record is failed)
            LedgerTimeoutError: Outcome unknown (record is pending_confirmation)
        """
        if not document:
            raise ValidationError("Document is empty")
        organization_id = self._require_organization(organization_id)
        self._check_not_banned(organization_id)

        document_hash = Hasher.hash_document(document)

        existing = self._store.get_active_record(document_hash)
        if existing is not None and existing.organization_id == organization_id:
            logger.info(f"Document {document_hash[:18]}... already has record {existing.record_id}")
            get_metrics().record_submission("duplicate")
            return SubmissionResult.from_record(existing, duplicate=True)

        blob_ref = self._blob_store.put(document)

        matches = self._ledger_a.query_by_hash(document_hash, organization_id)
        if not matches:
            return self._reject(document_hash, organization_id, blob_ref, REASON_NOT_IN_LEDGER_A, metadata)

        current = [m for m in matches if m.status == CertificateStatus.ACTIVE]
        if not current:
            reason = f"certificate {matches[0].status.value}"
            return self._reject(document_hash, organization_id, blob_ref, reason, metadata)

        return self._anchor(document_hash, organization_id, blob_ref, current[0], metadata)

    def issue_from_template(
        self,
        template_id: str,
        data: dict[str, Any],
        organization_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SubmissionResult:
        """
        Issue a certificate: render, record on LedgerA, then anchor on LedgerB.

        The certificate id is generated once, embedded in the rendered bytes,
        written to LedgerA and carried into the persisted record unchanged.
        """
        organization_id = self._require_organization(organization_id)
        self._check_not_banned(organization_id)

        template = self._renderer.get_template(template_id)
        template.validate(data)

        certificate_id = self._allocate_certificate_id()
        verify_url = f"{self._config.verify_base_url}?id={certificate_id}"
        content = self._renderer.render(template, data, certificate_id, verify_url)
        document_hash = Hasher.hash_document(content)

        blob_ref = self._blob_store.put(content)

        issue_date = data.get(template.issue_date_field) or self._clock().date().isoformat()
        record_a = self._ledger_a.submit(
            certificate_id=certificate_id,
            organization_id=organization_id,
            document_hash=document_hash,
            holder_name=str(data.get(template.holder_field, "")),
            issue_date=str(issue_date),
            metadata={"template_id": template.template_id, **(metadata or {})},
        )
        logger.info(f"Issued {certificate_id} on organization ledger for {organization_id}")

        return self._anchor(
            document_hash,
            organization_id,
            blob_ref,
            record_a,
            metadata,
            certificate_id=certificate_id,
        )

    # ================================================================
    # INTERNALS
    # ================================================================

    @staticmethod
    def _require_organization(organization_id: Optional[str]) -> str:
        if not organization_id or not organization_id.strip():
            raise ValidationError("organization_id is required")
        return organization_id.strip()

    def _check_not_banned(self, organization_id: str) -> None:
        org = self._store.get_organization(organization_id)
        if org is not None and org.is_banned(self._clock()):
            raise OrganizationBannedError(organization_id, org.ban_expires_at)

    def _allocate_certificate_id(self) -> str:
        for _ in range(max(1, self._config.certificate_id_attempts)):
            candidate = self._new_certificate_id(self._clock())
            if (
                self._ledger_a.query_by_id(candidate) is None
                and self._store.find_by_certificate_id(candidate) is None
            ):
                return candidate
            logger.warning(f"Certificate id collision on {candidate}")
        raise DocVerifyError(
            f"Could not allocate a unique certificate id in "
            f"{self._config.certificate_id_attempts} attempts"
        )

    def _reject(
        self,
        document_hash: str,
        organization_id: str,
        blob_ref: str,
        reason: str,
        metadata: Optional[dict[str, Any]],
    ) -> SubmissionResult:
        """Anchor the rejection on LedgerB and record it."""
        tx_ref = self._ledger_b.reject(document_hash, organization_id, reason)

        record = VerificationRecord(
            document_hash=document_hash,
            organization_id=organization_id,
            status=VerificationStatus.REJECTED,
            blob_ref=blob_ref,
            reason=reason,
            ledger_b_tx_ref=tx_ref,
            metadata=dict(metadata or {}),
        )
        try:
            stored = self._store.insert_record(record)
        except DuplicateVerificationError:
            # The DocumentRejected event got here first.
            stored = self._store.find_by_ledger_b_tx(tx_ref) or record

        logger.info(f"Rejected {document_hash[:18]}... for {organization_id}: {reason}")
        get_metrics().record_submission("rejected")
        return SubmissionResult.from_record(stored)

    def _anchor(
        self,
        document_hash: str,
        organization_id: str,
        blob_ref: str,
        record_a: LedgerARecord,
        metadata: Optional[dict[str, Any]],
        certificate_id: Optional[str] = None,
    ) -> SubmissionResult:
        if certificate_id is not None and record_a.certificate_id != certificate_id:
            raise ConsistencyError(
                f"Organization ledger returned {record_a.certificate_id}, expected {certificate_id}"
            )

        anchored_at = self._clock()
        proof_hash = Hasher.proof_hash(document_hash, organization_id, to_epoch_ms(anchored_at))

        pending = VerificationRecord(
            document_hash=document_hash,
            organization_id=organization_id,
            status=VerificationStatus.PENDING_CONFIRMATION,
            blob_ref=blob_ref,
            certificate_id=record_a.certificate_id,
            proof_hash=proof_hash,
            anchored_at=anchored_at,
            metadata=dict(metadata or {}),
            ledger_a_snapshot=record_a.model_dump(mode="json"),
        )
        try:
            pending = self._store.insert_record(pending)
        except DuplicateVerificationError:
            existing = self._store.get_active_record(document_hash)
            if existing is None:
                raise
            if existing.organization_id != organization_id:
                return self._reject(document_hash, organization_id, blob_ref, REASON_ANCHORED_ELSEWHERE, metadata)
            get_metrics().record_submission("duplicate")
            return SubmissionResult.from_record(existing, duplicate=True)

        context = {"document_hash": document_hash, "record_id": pending.record_id}
        start = time.perf_counter()

        try:
            tx_ref = self._ledger_b.anchor(document_hash, blob_ref, organization_id, proof_hash)
        except LedgerTimeoutError as e:
            self._annotate(e, **context)
            logger.warning(f"Anchor submission for {document_hash[:18]}... timed out; left pending")
            get_metrics().record_submission("pending")
            raise
        except Exception as e:
            # Nothing is pending on LedgerB; the record must not stay active.
            reason = getattr(e, "reason", None) or str(e)
            self._store.transition_record(
                pending.record_id,
                VerificationStatus.PENDING_CONFIRMATION,
                status=VerificationStatus.FAILED,
                reason=reason,
            )
            if isinstance(e, LedgerError):
                self._annotate(e, **context)
            logger.warning(f"Anchor submission for {document_hash[:18]}... failed: {reason}")
            get_metrics().record_submission("failed")
            raise

        context["tx_ref"] = tx_ref
        self._store.transition_record(
            pending.record_id,
            VerificationStatus.PENDING_CONFIRMATION,
            ledger_b_tx_ref=tx_ref,
        )

        try:
            receipt = self._ledger_b.wait_for_confirmation(tx_ref, self._config.anchor_timeout_seconds)
        except LedgerTimeoutError as e:
            self._annotate(e, **context)
            logger.warning(
                f"No confirmation for {tx_ref} within {self._config.anchor_timeout_seconds}s; "
                f"record {pending.record_id} left pending"
            )
            get_metrics().record_submission("pending")
            raise
        except LedgerError as e:
            # The transaction was sent; losing the connection now says nothing about it.
            get_metrics().record_submission("pending")
            raise LedgerTimeoutError(
                f"Lost contact with LedgerB while awaiting {tx_ref}: {e}", **context
            ) from e

        if not receipt.success:
            reason = receipt.reason or "anchor transaction failed"
            self._store.transition_record(
                pending.record_id,
                VerificationStatus.PENDING_CONFIRMATION,
                status=VerificationStatus.FAILED,
                reason=reason,
            )
            logger.warning(f"LedgerB refused anchor {tx_ref}: {reason}")
            get_metrics().record_submission("failed")
            raise AnchorFailedError(reason, **context)

        record = self._store.transition_record(
            pending.record_id,
            VerificationStatus.PENDING_CONFIRMATION,
            status=VerificationStatus.VERIFIED,
            ledger_b_tx_ref=tx_ref,
            ledger_b_block=receipt.block,
            verified_at=self._clock(),
        )
        if record is None:
            # The event stream resolved it first.
            record = self._store.get_record(pending.record_id)

        get_metrics().record_anchor((time.perf_counter() - start) * 1000)
        get_metrics().record_submission("verified")
        logger.info(f"Verified {document_hash[:18]}... via {tx_ref} (block {receipt.block})")
        return SubmissionResult.from_record(record)

    @staticmethod
    def _annotate(error: LedgerError, **context: Any) -> None:
        for key, value in context.items():
            if getattr(error, key, None) is None:
                setattr(error, key, value)

    # ================================================================
    # OPERATOR RECONCILIATION
    # ================================================================

    def resolve_pending(self, stale_after: Optional[timedelta] = None) -> dict[str, int]:
        """
        Settle pending_confirmation records by asking LedgerB directly.

        Used when the event stream cannot be relied on (listener down,
        events lost before the checkpoint). Never re-submits an anchor.

        Args:
            stale_after: Records older than this with no transaction and
                no anchor on LedgerB are marked failed. None leaves them.

        Returns:
            Counts of records verified, failed and still pending
        """
        summary = {"verified": 0, "failed": 0, "pending": 0}
        now = self._clock()

        for record in self._store.list_pending():
            outcome = self._resolve_one(record, now, stale_after)
            summary[outcome] += 1

        logger.info(
            f"Pending reconciliation: {summary['verified']} verified, "
            f"{summary['failed']} failed, {summary['pending']} still pending"
        )
        return summary

    def _resolve_one(
        self,
        record: VerificationRecord,
        now: datetime,
        stale_after: Optional[timedelta],
    ) -> str:
        expected = VerificationStatus.PENDING_CONFIRMATION

        if record.ledger_b_tx_ref:
            receipt = self._ledger_b.get_receipt(record.ledger_b_tx_ref)
            if receipt is None:
                return "pending"
            if receipt.success:
                updated = self._store.transition_record(
                    record.record_id, expected,
                    status=VerificationStatus.VERIFIED,
                    ledger_b_block=receipt.block,
                    verified_at=now,
                )
                return "verified" if updated else "pending"
            updated = self._store.transition_record(
                record.record_id, expected,
                status=VerificationStatus.FAILED,
                reason=receipt.reason or "anchor transaction failed",
            )
            return "failed" if updated else "pending"

        anchor = self._ledger_b.get_anchor(record.document_hash)
        if anchor is not None and anchor.organization_id == record.organization_id:
            try:
                updated = self._store.transition_record(
                    record.record_id, expected,
                    status=VerificationStatus.VERIFIED,
                    ledger_b_tx_ref=anchor.tx_ref,
                    ledger_b_block=anchor.block,
                    verified_at=anchor.anchored_at,
                )
            except DuplicateVerificationError:
                logger.warning(f"Anchor {anchor.tx_ref} already belongs to another record")
                return "pending"
            return "verified" if updated else "pending"

        if stale_after is not None and now - record.created_at > stale_after:
            updated = self._store.transition_record(
                record.record_id, expected,
                status=VerificationStatus.FAILED,
                reason="anchor never confirmed",
            )
            return "failed" if updated else "pending"

        return "pending"
