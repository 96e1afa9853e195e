# Leaf services only. Orchestrator, verifier and sync engine are imported
# by module path (docverify.core.orchestrator, ...) to keep schemas importable.
from .errors import (
    DocVerifyError,
    ValidationError,
    InvalidHashError,
    OrganizationBannedError,
    NotFoundError,
    ConsistencyError,
    StorageError,
    MalformedEventError,
    LedgerError,
    LedgerUnavailableError,
    AnchorFailedError,
    LedgerTimeoutError,
)
from .hasher import Hasher, CanonicalSerializationError, HASH_PREFIX

__all__ = [
    "DocVerifyError",
    "ValidationError",
    "InvalidHashError",
    "OrganizationBannedError",
    "NotFoundError",
    "ConsistencyError",
    "StorageError",
    "MalformedEventError",
    "LedgerError",
    "LedgerUnavailableError",
    "AnchorFailedError",
    "LedgerTimeoutError",
    "Hasher",
    "CanonicalSerializationError",
    "HASH_PREFIX",
]
