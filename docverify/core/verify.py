"""
Public Verification - The Read Path

Answers "is this document verified" for anyone holding a hash or a
certificate id.

RULES:
- A positive answer always comes from a live query of BOTH ledgers.
  The cache supplies hints (which certificate, which anchoring time),
  never the verdict.
- If the ledgers disagree the answer is verified=False, whatever the
  cache says.
- "Not found" and "inconsistent" are answers, not exceptions. Only
  infrastructure outages raise.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..db.store import VerificationStore
from ..ledgers.base import BlobStore, LedgerAClient, LedgerBClient
from ..schemas import (
    CertificateStatus,
    HistoryEntry,
    LedgerARecord,
    LedgerBAnchor,
    ProofBundle,
    ProofDetails,
    VerificationHistory,
    VerificationRecord,
)
from .consistency import ConsistencyReport, ConsistencyValidator
from .errors import ConsistencyError, InvalidHashError, NotFoundError, ValidationError
from .hasher import Hasher
from .orchestrator import REASON_NOT_IN_LEDGER_A, is_certificate_id

logger = logging.getLogger(__name__)

MAX_BULK_HASHES = 100

REASON_NOT_FOUND = "not found"
REASON_NOT_ANCHORED = "not anchored on public ledger"
REASON_INCONSISTENT = "ledger records are inconsistent"
REASON_INVALID_HASH = "invalid document hash"
REASON_INVALID_CERTIFICATE_ID = "invalid certificate id"


@dataclass
class Artifact:
    """A stored document, fetched by certificate id."""
    certificate_id: str
    document_hash: str
    blob_ref: str
    content: bytes


class PublicVerifyService:
    """
    Read path for verification.

    Usage:
        service = PublicVerifyService(store, ledger_a, ledger_b, blob_store)
        bundle = service.verify_by_hash("0x...")
        if bundle.verified:
            ...
    """

    def __init__(
        self,
        store: VerificationStore,
        ledger_a: LedgerAClient,
        ledger_b: LedgerBClient,
        blob_store: BlobStore,
        validator: Optional[ConsistencyValidator] = None,
    ):
        self._store = store
        self._ledger_a = ledger_a
        self._ledger_b = ledger_b
        self._blob_store = blob_store
        self._validator = validator or ConsistencyValidator.from_env()

    # ================================================================
    # VERIFICATION
    # ================================================================

    def verify_by_hash(self, document_hash: str) -> ProofBundle:
        """
        Live dual-ledger verification of a document hash.

        Raises:
            LedgerUnavailableError: A ledger could not be reached
        """
        try:
            normalized = Hasher.normalize_hash(document_hash)
        except InvalidHashError:
            return ProofBundle.not_verified(REASON_INVALID_HASH)

        cached = self._store.get_verified_record(normalized)

        anchor = self._ledger_b.get_anchor(normalized)
        if anchor is None:
            if cached is not None:
                logger.warning(f"Cache says {normalized[:18]}... is verified but LedgerB has no anchor")
            return ProofBundle.not_verified(REASON_NOT_ANCHORED, document_hash=normalized)

        candidates = self._ledger_a.query_by_hash(normalized, anchor.organization_id)
        if not candidates:
            return ProofBundle.not_verified(REASON_NOT_IN_LEDGER_A, document_hash=normalized)

        record_a = self._pick_certificate(candidates, cached)

        try:
            report = self._reconcile(record_a, anchor, cached)
        except ConsistencyError as e:
            logger.warning(f"Downgrading {normalized[:18]}... to not verified: {e}")
            return ProofBundle.not_verified(
                REASON_INCONSISTENT,
                document_hash=normalized,
                certificate_id=record_a.certificate_id,
            )

        if record_a.status != CertificateStatus.ACTIVE:
            return ProofBundle.not_verified(
                f"certificate {record_a.status.value}",
                document_hash=normalized,
                certificate_id=record_a.certificate_id,
            )

        return ProofBundle(
            verified=True,
            document_hash=normalized,
            organization=self._store.get_organization(anchor.organization_id),
            organization_id=anchor.organization_id,
            certificate_id=record_a.certificate_id,
            holder_name=record_a.holder_name,
            issue_date=record_a.issue_date,
            proof=ProofDetails(
                proof_hash=anchor.proof_hash,
                proof_hash_recomputed=report.proof_match,
                ledger_b_tx_ref=anchor.tx_ref,
                ledger_b_block=anchor.block,
                anchored_at=anchor.anchored_at,
                blob_ref=anchor.blob_ref,
                ledger_a_version=record_a.version,
                ledger_a_timestamp=record_a.timestamp,
            ),
        )

    def verify_by_certificate_id(self, certificate_id: str) -> ProofBundle:
        """
        Resolve a certificate id to its document hash via the cache, then verify.

        A cache miss is verified=False with reason "not found", with no side effects.
        """
        if not is_certificate_id(certificate_id):
            return ProofBundle.not_verified(REASON_INVALID_CERTIFICATE_ID, certificate_id=certificate_id)

        document_hash = None
        record = self._store.find_by_certificate_id(certificate_id)
        if record is not None:
            document_hash = record.document_hash
        else:
            cert = self._store.get_certificate(certificate_id)
            if cert is not None:
                document_hash = cert.document_hash

        if document_hash is None:
            return ProofBundle.not_verified(REASON_NOT_FOUND, certificate_id=certificate_id)

        bundle = self.verify_by_hash(document_hash)
        if bundle.certificate_id is None:
            bundle = bundle.model_copy(update={"certificate_id": certificate_id})
        return bundle

    def verify_many(self, document_hashes: Iterable[str]) -> list[ProofBundle]:
        """
        Verify up to MAX_BULK_HASHES hashes.

        Raises:
            ValidationError: Empty input or too many hashes
        """
        hashes = list(document_hashes)
        if not hashes:
            raise ValidationError("At least one document hash is required")
        if len(hashes) > MAX_BULK_HASHES:
            raise ValidationError(f"At most {MAX_BULK_HASHES} hashes per request")
        return [self.verify_by_hash(h) for h in hashes]

    def _pick_certificate(
        self,
        candidates: list[LedgerARecord],
        cached: Optional[VerificationRecord],
    ) -> LedgerARecord:
        if cached is not None and cached.certificate_id:
            for candidate in candidates:
                if candidate.certificate_id == cached.certificate_id:
                    return candidate
        for candidate in candidates:
            if candidate.status == CertificateStatus.ACTIVE:
                return candidate
        return candidates[0]

    def _reconcile(
        self,
        record_a: LedgerARecord,
        anchor: LedgerBAnchor,
        cached: Optional[VerificationRecord],
    ) -> ConsistencyReport:
        """
        Raises:
            ConsistencyError: The ledgers disagree
        """
        anchored_at = None
        if cached is not None and Hasher.hashes_equal(cached.proof_hash, anchor.proof_hash):
            anchored_at = cached.anchored_at

        report = self._validator.check(record_a, anchor, anchored_at=anchored_at)
        if not report.consistent:
            raise ConsistencyError("; ".join(report.reasons) or "ledger records disagree")
        return report

    # ================================================================
    # HISTORY AND ARTIFACTS
    # ================================================================

    def get_verification_history(self, document_hash: str) -> VerificationHistory:
        """
        Everything known about a document: ledger events, certificate
        versions on LedgerA, and every verification attempt.

        Raises:
            InvalidHashError: Malformed hash
        """
        normalized = Hasher.normalize_hash(document_hash)

        records = self._store.list_records(normalized)
        events = [
            HistoryEntry(
                source=entry.source.value,
                event_name=entry.event_name.value,
                tx_ref=entry.tx_ref,
                block=entry.block,
                recorded_at=entry.created_at,
                payload=entry.payload,
            )
            for entry in self._store.list_events(document_hash=normalized)
        ]

        certificate_id = next((r.certificate_id for r in records if r.certificate_id), None)
        if certificate_id is None:
            certs = self._store.find_certificates_by_hash(normalized)
            if certs:
                certificate_id = certs[0].certificate_id

        versions = self._ledger_a.get_history(certificate_id) if certificate_id else []

        return VerificationHistory(
            document_hash=normalized,
            certificate_id=certificate_id,
            events=events,
            certificate_versions=versions,
            records=records,
        )

    def download_artifact(self, certificate_id: str) -> Artifact:
        """
        Fetch the stored document for a certificate.

        Raises:
            NotFoundError: Unknown certificate or nothing stored for it
            ConsistencyError: Stored bytes no longer hash to the recorded hash
            StorageError: Blob store unreachable
        """
        record = self._store.find_by_certificate_id(certificate_id)
        if record is None or not record.blob_ref:
            raise NotFoundError(f"No stored artifact for {certificate_id}")

        content = self._blob_store.get(record.blob_ref)
        if not Hasher.hashes_equal(Hasher.hash_document(content), record.document_hash):
            raise ConsistencyError(f"Stored artifact for {certificate_id} does not match its hash")

        return Artifact(
            certificate_id=certificate_id,
            document_hash=record.document_hash,
            blob_ref=record.blob_ref,
            content=content,
        )
