"""
Error Taxonomy

Every failure the verification core can surface is one of these.

READ PATH:
- Never raises for "not found" or "not consistent" - those become
  a structured {verified: false, reason} answer.
- Raises only for infrastructure outages (LedgerUnavailableError, StorageError).

WRITE PATH:
- AnchorFailedError: LedgerB definitely refused the anchor. Final.
- LedgerTimeoutError: outcome unknown. The record stays pending-confirmation
  and is resolved later from the LedgerB event stream. NOT a failure.
- Nothing here is retried automatically.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID


class DocVerifyError(Exception):
    """Base exception for verification core errors."""
    pass


class ValidationError(DocVerifyError):
    """Raised when input is malformed or missing (hash, org, template fields)."""
    pass


class InvalidHashError(ValidationError):
    """Raised when a value is not a 32-byte hex content hash."""
    pass


class OrganizationBannedError(ValidationError):
    """Raised when a banned organization submits before its ban expires."""

    def __init__(self, organization_id: str, ban_expires_at: Optional[datetime] = None):
        self.organization_id = organization_id
        self.ban_expires_at = ban_expires_at
        until = f" until {ban_expires_at.isoformat()}" if ban_expires_at else ""
        super().__init__(f"Organization {organization_id} is banned{until}")


class NotFoundError(DocVerifyError):
    """Raised when a hash, certificate or blob is absent where it must exist."""
    pass


class ConsistencyError(DocVerifyError):
    """Raised when LedgerA and LedgerB disagree about a record claimed verified."""
    pass


class StorageError(DocVerifyError):
    """Raised when the blob store is unreachable or refuses a write."""
    pass


class MalformedEventError(DocVerifyError):
    """Raised when a ledger event fails schema validation at ingestion."""
    pass


class LedgerError(DocVerifyError):
    """
    Base exception for ledger failures.

    Carries enough context for the caller to find the affected record later.
    """

    def __init__(
        self,
        message: str,
        document_hash: Optional[str] = None,
        record_id: Optional[UUID] = None,
        tx_ref: Optional[str] = None,
    ):
        super().__init__(message)
        self.document_hash = document_hash
        self.record_id = record_id
        self.tx_ref = tx_ref


class LedgerUnavailableError(LedgerError):
    """Raised when a ledger cannot be reached. Nothing was written."""
    pass


class AnchorFailedError(LedgerError):
    """Raised when LedgerB explicitly rejected an anchor transaction."""

    def __init__(self, reason: str, **context):
        super().__init__(f"Anchor failed: {reason}", **context)
        self.reason = reason


class LedgerTimeoutError(LedgerError):
    """
    Raised when a ledger write was neither confirmed nor refused in time.

    Ambiguous: the write may still land. Check the record's terminal state.
    """
    pass
