"""
Tests for cross-ledger consistency checks.
"""

from datetime import datetime, timedelta, timezone

import pytest

from docverify.core.consistency import ConsistencyValidator
from docverify.core.hasher import Hasher
from docverify.schemas import LedgerARecord, LedgerBAnchor, to_epoch_ms

BARE = "c" * 64
ORG = "org-university-1"
ANCHORED_AT = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def record_a(document_hash=BARE, organization_id=ORG):
    return LedgerARecord(
        certificate_id="CERT-20260301-0A0B0C",
        organization_id=organization_id,
        document_hash=document_hash,
        holder_name="Grace Hopper",
    )


def anchor_b(document_hash="0x" + BARE, organization_id=ORG, anchored_at=ANCHORED_AT, proof_hash=None):
    if proof_hash is None:
        proof_hash = Hasher.proof_hash(document_hash, organization_id, to_epoch_ms(anchored_at))
    return LedgerBAnchor(
        document_hash=document_hash,
        organization_id=organization_id,
        blob_ref="mem-blob",
        proof_hash=proof_hash,
        anchored_at=anchored_at,
        tx_ref="0xtx",
        block=1,
    )


class TestConsistencyValidator:

    @pytest.fixture
    def validator(self):
        return ConsistencyValidator()

    def test_prefix_difference_is_not_a_mismatch(self, validator):
        """LedgerA keeps bare hex, LedgerB keeps 0x-prefixed."""
        report = validator.check(record_a(), anchor_b())
        assert report.consistent
        assert report.hash_match and report.org_match
        assert report.proof_match is True
        assert report.reasons == []

    def test_case_difference_is_not_a_mismatch(self, validator):
        assert validator.consistent(record_a(BARE.upper()), anchor_b())

    def test_hash_mismatch(self, validator):
        report = validator.check(record_a("d" * 64), anchor_b())
        assert not report
        assert "document hash mismatch" in report.reasons

    def test_organization_mismatch(self, validator):
        report = validator.check(record_a(organization_id="org-other"), anchor_b())
        assert not report.consistent
        assert any("organization mismatch" in r for r in report.reasons)

    @pytest.mark.parametrize("left,right", [(None, "anchor"), ("record", None), (None, None)])
    def test_missing_side_never_raises(self, validator, left, right):
        a = record_a() if left else None
        b = anchor_b() if right else None
        report = validator.check(a, b)
        assert not report.consistent
        assert report.reasons[0].startswith("missing")

    def test_garbage_hash_never_raises(self, validator):
        assert not validator.consistent(record_a("not-a-hash"), anchor_b())


class TestProofHash:

    def test_unrecoverable_proof_is_advisory_by_default(self):
        validator = ConsistencyValidator(strict_proof=False)
        report = validator.check(record_a(), anchor_b(proof_hash="0x" + "e" * 64))
        assert report.proof_match is False
        assert report.consistent

    def test_strict_mode_requires_recomputable_proof(self):
        validator = ConsistencyValidator(strict_proof=True)
        assert not validator.consistent(record_a(), anchor_b(proof_hash="0x" + "e" * 64))
        assert validator.consistent(record_a(), anchor_b())

    def test_cached_anchoring_time_is_tried_first(self):
        """The proof may have been derived before LedgerB stamped the block."""
        written_at = ANCHORED_AT - timedelta(seconds=2)
        proof = Hasher.proof_hash(BARE, ORG, to_epoch_ms(written_at))
        validator = ConsistencyValidator(strict_proof=True)

        assert not validator.consistent(record_a(), anchor_b(proof_hash=proof))
        assert validator.consistent(record_a(), anchor_b(proof_hash=proof), anchored_at=written_at)

    def test_malformed_proof_is_not_consistent_in_strict_mode(self):
        validator = ConsistencyValidator(strict_proof=True)
        report = validator.check(record_a(), anchor_b(proof_hash="garbage"))
        assert report.proof_match is False
        assert not report.consistent

    @pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("", False), ("no", False)])
    def test_from_env(self, monkeypatch, value, expected):
        monkeypatch.setenv("DOCVERIFY_STRICT_PROOF_HASH", value)
        assert ConsistencyValidator.from_env().strict_proof is expected
