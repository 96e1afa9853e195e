"""
Cross-Ledger Consistency

Decides whether a LedgerA certificate record and a LedgerB anchor describe
the same verification.

Checks:
1. Document hash equality after normalization (LedgerA keeps bare hex,
   LedgerB keeps 0x-prefixed)
2. Organization equality
3. Proof hash recomputation from hash, organization and anchoring time

The anchoring timestamp used when the proof was written is not always
recoverable, so (3) is advisory by default. Set
DOCVERIFY_STRICT_PROOF_HASH=1 to make it a hard requirement.

The validator never raises. A missing side or an unparseable value is
simply "not consistent".
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..schemas import LedgerARecord, LedgerBAnchor, to_epoch_ms
from .errors import InvalidHashError
from .hasher import Hasher

logger = logging.getLogger(__name__)


@dataclass
class ConsistencyReport:
    """Outcome of comparing one LedgerA record with one LedgerB anchor."""
    hash_match: bool
    org_match: bool
    proof_match: Optional[bool]  # None when there was nothing to recompute from
    strict_proof: bool = False
    reasons: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        if not (self.hash_match and self.org_match):
            return False
        if self.strict_proof:
            return self.proof_match is True
        return True

    def __bool__(self) -> bool:
        return self.consistent


class ConsistencyValidator:
    """
    Pure comparison of the two ledgers' views of a document.

    Usage:
        validator = ConsistencyValidator()
        if validator.consistent(ledger_a_record, anchor):
            ...
    """

    def __init__(self, strict_proof: bool = False):
        self.strict_proof = strict_proof

    @classmethod
    def from_env(cls) -> "ConsistencyValidator":
        return cls(
            strict_proof=os.environ.get("DOCVERIFY_STRICT_PROOF_HASH", "").lower()
            in ("1", "true", "yes"),
        )

    def consistent(
        self,
        record_a: Optional[LedgerARecord],
        anchor_b: Optional[LedgerBAnchor],
        anchored_at: Optional[datetime] = None,
    ) -> bool:
        return self.check(record_a, anchor_b, anchored_at).consistent

    def check(
        self,
        record_a: Optional[LedgerARecord],
        anchor_b: Optional[LedgerBAnchor],
        anchored_at: Optional[datetime] = None,
    ) -> ConsistencyReport:
        """
        Compare both sides and explain any mismatch.

        Args:
            record_a: Current LedgerA version of the certificate
            anchor_b: LedgerB anchor for the document
            anchored_at: Timestamp the proof was originally derived from,
                when known (cached verification record)
        """
        if record_a is None or anchor_b is None:
            missing = "ledger A record" if record_a is None else "ledger B anchor"
            return ConsistencyReport(
                hash_match=False,
                org_match=False,
                proof_match=None,
                strict_proof=self.strict_proof,
                reasons=[f"missing {missing}"],
            )

        reasons = []

        hash_match = Hasher.hashes_equal(record_a.document_hash, anchor_b.document_hash)
        if not hash_match:
            reasons.append("document hash mismatch")

        org_match = record_a.organization_id == anchor_b.organization_id
        if not org_match:
            reasons.append(
                f"organization mismatch ({record_a.organization_id} != {anchor_b.organization_id})"
            )

        proof_match = self._proof_matches(anchor_b, self._candidate_timestamps(anchor_b, anchored_at))
        if proof_match is False:
            reasons.append("proof hash not recomputable")

        report = ConsistencyReport(
            hash_match=hash_match,
            org_match=org_match,
            proof_match=proof_match,
            strict_proof=self.strict_proof,
            reasons=reasons,
        )
        if not report.consistent:
            logger.info(
                f"Ledgers disagree on {anchor_b.document_hash[:18]}...: {'; '.join(reasons)}"
            )
        return report

    @staticmethod
    def _candidate_timestamps(
        anchor_b: LedgerBAnchor, anchored_at: Optional[datetime]
    ) -> list[int]:
        candidates = []
        if anchored_at is not None:
            candidates.append(to_epoch_ms(anchored_at))
        candidates.append(anchor_b.anchored_at_ms)
        return list(dict.fromkeys(candidates))

    @staticmethod
    def _proof_matches(anchor_b: LedgerBAnchor, timestamps: Iterable[int]) -> Optional[bool]:
        if not anchor_b.proof_hash:
            return None
        try:
            expected = Hasher.normalize_hash(anchor_b.proof_hash)
            for ts in timestamps:
                candidate = Hasher.proof_hash(anchor_b.document_hash, anchor_b.organization_id, ts)
                if Hasher.hashes_equal(candidate, expected):
                    return True
        except InvalidHashError:
            return False
        return False
