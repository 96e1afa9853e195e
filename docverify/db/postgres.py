"""
PostgreSQL Verification Store

psycopg2 implementation of VerificationStore. Tables come from schema.sql.

Provides:
- Uniqueness enforced by partial unique indexes (see schema.sql)
- Compare-and-set record transitions (UPDATE ... WHERE status = expected)
- Idempotent event append (ON CONFLICT DO NOTHING)
- Monotonic checkpoints (GREATEST)
- Lock/statement timeouts on every transaction

THREAD SAFETY:
Every operation opens its own connection from connection_factory and
closes it before returning, so one store instance can be shared by the
request handlers and both sync listeners.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Generator, Optional
from uuid import UUID

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from ..core.hasher import Hasher
from ..schemas import (
    CertificateRecord,
    CheckpointStatus,
    EventLogEntry,
    EventName,
    LedgerSource,
    Organization,
    SyncCheckpoint,
    VerificationRecord,
    VerificationStatus,
    utcnow,
)
from .config import DatabaseConfig
from .store import (
    DuplicateVerificationError,
    StoreError,
    VerificationStore,
    _check_transition_fields,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_CONSTRAINTS = {
    "uq_verification_active_hash": "active_hash",
    "uq_verification_tx_ref": "tx_ref",
    "verification_records_pkey": "record_id",
}

_RECORD_COLUMNS = (
    "record_id", "document_hash", "organization_id", "status", "blob_ref",
    "certificate_id", "proof_hash", "anchored_at", "ledger_b_tx_ref",
    "ledger_b_block", "reason", "metadata", "ledger_a_snapshot",
    "created_at", "updated_at", "verified_at",
)
_RECORD_SELECT = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM verification_records"

_ORG_COLUMNS = (
    "org_id", "wallet_address", "org_type", "name", "status", "is_active",
    "ban_expires_at", "registered_at", "updated_at",
)

_CERT_COLUMNS = (
    "certificate_id", "organization_id", "document_hash", "status",
    "status_reason", "issued_at", "updated_at",
)

_EVENT_COLUMNS = (
    "entry_id", "source", "event_name", "tx_ref", "block", "payload",
    "processed", "processed_at", "created_at",
)

_CHECKPOINT_COLUMNS = ("source", "last_synced_block", "last_synced_at", "status", "error_message")


def create_connection_factory(config: DatabaseConfig) -> Callable[[], Any]:
    """Connection factory for PostgresVerificationStore."""
    return partial(psycopg2.connect, config.to_dsn())


class PostgresVerificationStore(VerificationStore):
    """
    PostgreSQL implementation of VerificationStore.

    Usage:
        store = PostgresVerificationStore(create_connection_factory(DatabaseConfig.from_env()))
        store.apply_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row locks (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "PostgresVerificationStore":
        return cls(
            create_connection_factory(config),
            lock_timeout_ms=config.lock_timeout_ms,
            statement_timeout_ms=config.statement_timeout_ms,
        )

    # ================================================================
    # TRANSACTIONS
    # ================================================================

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """One connection, one transaction, committed on clean exit."""
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")
            yield cursor
            conn.commit()
        except pg_errors.UniqueViolation as e:
            conn.rollback()
            name = getattr(getattr(e, "diag", None), "constraint_name", None)
            constraint = _CONSTRAINTS.get(name)
            if constraint is None:
                raise StoreError(f"Unique constraint {name} violated") from e
            raise DuplicateVerificationError(
                f"Uniqueness constraint {name} violated",
                constraint=constraint,
            ) from e
        except psycopg2.Error as e:
            conn.rollback()
            kind = self._timeout_kind(e)
            if kind is not None:
                raise StoreError(f"Database {kind} timeout") from e
            raise StoreError(f"Database error: {e}") from e
        finally:
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL timeout.

        57014 (query_canceled) covers both lock_timeout and statement_timeout;
        the message tells them apart.
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg:
                return "lock"
            if "statement timeout" in err_msg:
                return "statement"
            return "query"
        return None

    def apply_schema(self) -> None:
        """Create tables and indexes if missing."""
        ddl = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._transaction() as cur:
            cur.execute(ddl)
        logger.info("Verification schema applied")

    # ================================================================
    # ROW MAPPING
    # ================================================================

    @staticmethod
    def _row(columns: tuple[str, ...], row: tuple) -> dict[str, Any]:
        return dict(zip(columns, row))

    def _to_record(self, row: tuple) -> VerificationRecord:
        data = self._row(_RECORD_COLUMNS, row)
        data["metadata"] = data["metadata"] or {}
        return VerificationRecord.model_validate(data)

    # ================================================================
    # VERIFICATION RECORDS
    # ================================================================

    def insert_record(self, record: VerificationRecord) -> VerificationRecord:
        with self._transaction() as cur:
            cur.execute(f"""
                INSERT INTO verification_records ({', '.join(_RECORD_COLUMNS)})
                VALUES ({', '.join(['%s'] * len(_RECORD_COLUMNS))})
            """, (
                str(record.record_id),
                record.document_hash,
                record.organization_id,
                record.status.value,
                record.blob_ref,
                record.certificate_id,
                record.proof_hash,
                record.anchored_at,
                record.ledger_b_tx_ref,
                record.ledger_b_block,
                record.reason,
                Json(record.metadata),
                Json(record.ledger_a_snapshot) if record.ledger_a_snapshot is not None else None,
                record.created_at,
                record.updated_at,
                record.verified_at,
            ))
        return record

    def transition_record(
        self,
        record_id: UUID,
        expected: VerificationStatus,
        status: Optional[VerificationStatus] = None,
        **changes: Any,
    ) -> Optional[VerificationRecord]:
        _check_transition_fields(changes)
        update = dict(changes)
        if status is not None:
            update["status"] = VerificationStatus(status).value
        update.setdefault("updated_at", utcnow())
        if "metadata" in update:
            update["metadata"] = Json(update["metadata"])

        # Column names come from TRANSITION_FIELDS, never from callers.
        assignments = ", ".join(f"{column} = %s" for column in update)
        with self._transaction() as cur:
            cur.execute(f"""
                UPDATE verification_records SET {assignments}
                WHERE record_id = %s AND status = %s
                RETURNING {', '.join(_RECORD_COLUMNS)}
            """, (*update.values(), str(record_id), VerificationStatus(expected).value))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def get_record(self, record_id: UUID) -> Optional[VerificationRecord]:
        with self._transaction() as cur:
            cur.execute(f"{_RECORD_SELECT} WHERE record_id = %s", (str(record_id),))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def get_active_record(self, document_hash: str) -> Optional[VerificationRecord]:
        with self._transaction() as cur:
            cur.execute(f"""
                {_RECORD_SELECT}
                WHERE document_hash = %s
                  AND status IN ('pending_confirmation', 'verified')
            """, (Hasher.normalize_hash(document_hash),))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def list_records(self, document_hash: str) -> list[VerificationRecord]:
        with self._transaction() as cur:
            cur.execute(
                f"{_RECORD_SELECT} WHERE document_hash = %s ORDER BY created_at, record_id",
                (Hasher.normalize_hash(document_hash),),
            )
            rows = cur.fetchall()
        return [self._to_record(r) for r in rows]

    def find_by_certificate_id(self, certificate_id: str) -> Optional[VerificationRecord]:
        with self._transaction() as cur:
            cur.execute(f"""
                {_RECORD_SELECT}
                WHERE certificate_id = %s
                ORDER BY CASE status
                    WHEN 'verified' THEN 0
                    WHEN 'pending_confirmation' THEN 1
                    ELSE 2 END,
                    created_at DESC
                LIMIT 1
            """, (certificate_id,))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def find_by_ledger_b_tx(self, tx_ref: str) -> Optional[VerificationRecord]:
        with self._transaction() as cur:
            cur.execute(f"{_RECORD_SELECT} WHERE ledger_b_tx_ref = %s", (tx_ref,))
            row = cur.fetchone()
        return self._to_record(row) if row else None

    def list_pending(self) -> list[VerificationRecord]:
        with self._transaction() as cur:
            cur.execute(
                f"{_RECORD_SELECT} WHERE status = 'pending_confirmation' ORDER BY created_at"
            )
            rows = cur.fetchall()
        return [self._to_record(r) for r in rows]

    # ================================================================
    # ORGANIZATIONS AND CERTIFICATES
    # ================================================================

    def upsert_organization(self, organization: Organization) -> Organization:
        with self._transaction() as cur:
            cur.execute(f"""
                INSERT INTO organizations ({', '.join(_ORG_COLUMNS)})
                VALUES ({', '.join(['%s'] * len(_ORG_COLUMNS))})
                ON CONFLICT (org_id) DO UPDATE SET
                    wallet_address = EXCLUDED.wallet_address,
                    org_type = EXCLUDED.org_type,
                    name = EXCLUDED.name,
                    status = EXCLUDED.status,
                    is_active = EXCLUDED.is_active,
                    ban_expires_at = EXCLUDED.ban_expires_at,
                    registered_at = EXCLUDED.registered_at,
                    updated_at = EXCLUDED.updated_at
            """, (
                organization.org_id,
                organization.wallet_address,
                organization.org_type,
                organization.name,
                organization.status.value,
                organization.is_active,
                organization.ban_expires_at,
                organization.registered_at,
                organization.updated_at,
            ))
        return organization

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {', '.join(_ORG_COLUMNS)} FROM organizations WHERE org_id = %s",
                (org_id,),
            )
            row = cur.fetchone()
        return Organization.model_validate(self._row(_ORG_COLUMNS, row)) if row else None

    def upsert_certificate(self, certificate: CertificateRecord) -> CertificateRecord:
        with self._transaction() as cur:
            cur.execute(f"""
                INSERT INTO certificates ({', '.join(_CERT_COLUMNS)})
                VALUES ({', '.join(['%s'] * len(_CERT_COLUMNS))})
                ON CONFLICT (certificate_id) DO UPDATE SET
                    organization_id = COALESCE(EXCLUDED.organization_id, certificates.organization_id),
                    document_hash = COALESCE(EXCLUDED.document_hash, certificates.document_hash),
                    status = EXCLUDED.status,
                    status_reason = EXCLUDED.status_reason,
                    issued_at = COALESCE(EXCLUDED.issued_at, certificates.issued_at),
                    updated_at = EXCLUDED.updated_at
            """, (
                certificate.certificate_id,
                certificate.organization_id,
                certificate.document_hash,
                certificate.status.value,
                certificate.status_reason,
                certificate.issued_at,
                certificate.updated_at,
            ))
        return certificate

    def get_certificate(self, certificate_id: str) -> Optional[CertificateRecord]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {', '.join(_CERT_COLUMNS)} FROM certificates WHERE certificate_id = %s",
                (certificate_id,),
            )
            row = cur.fetchone()
        return CertificateRecord.model_validate(self._row(_CERT_COLUMNS, row)) if row else None

    def find_certificates_by_hash(self, document_hash: str) -> list[CertificateRecord]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {', '.join(_CERT_COLUMNS)} FROM certificates WHERE document_hash = %s",
                (Hasher.normalize_hash(document_hash),),
            )
            rows = cur.fetchall()
        return [CertificateRecord.model_validate(self._row(_CERT_COLUMNS, r)) for r in rows]

    # ================================================================
    # EVENT LOG
    # ================================================================

    def _to_entry(self, row: tuple) -> EventLogEntry:
        return EventLogEntry.model_validate(self._row(_EVENT_COLUMNS, row))

    def append_event(
        self,
        source: LedgerSource,
        event_name: EventName,
        tx_ref: str,
        block: int,
        payload: dict[str, Any],
    ) -> tuple[EventLogEntry, bool]:
        source_value = LedgerSource(source).value
        name_value = EventName(event_name).value
        with self._transaction() as cur:
            cur.execute(f"""
                INSERT INTO ledger_event_log (source, event_name, tx_ref, block, payload)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (source, tx_ref, event_name) DO NOTHING
                RETURNING {', '.join(_EVENT_COLUMNS)}
            """, (source_value, name_value, tx_ref, block, Json(payload)))
            row = cur.fetchone()
            if row is not None:
                return self._to_entry(row), True

            cur.execute(f"""
                SELECT {', '.join(_EVENT_COLUMNS)} FROM ledger_event_log
                WHERE source = %s AND tx_ref = %s AND event_name = %s
            """, (source_value, tx_ref, name_value))
            return self._to_entry(cur.fetchone()), False

    def mark_event_processed(self, entry_id: int, processed_at: Optional[datetime] = None) -> None:
        with self._transaction() as cur:
            cur.execute("""
                UPDATE ledger_event_log
                SET processed = TRUE, processed_at = %s
                WHERE entry_id = %s AND processed = FALSE
            """, (processed_at or utcnow(), entry_id))

    def list_events(
        self,
        source: Optional[LedgerSource] = None,
        processed: Optional[bool] = None,
        document_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[EventLogEntry]:
        clauses = []
        params: list[Any] = []
        if source is not None:
            clauses.append("source = %s")
            params.append(LedgerSource(source).value)
        if processed is not None:
            clauses.append("processed = %s")
            params.append(processed)
        if document_hash is not None:
            clauses.append("payload->>'document_hash' = %s")
            params.append(Hasher.normalize_hash(document_hash))

        sql = f"SELECT {', '.join(_EVENT_COLUMNS)} FROM ledger_event_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY entry_id"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))

        with self._transaction() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [self._to_entry(r) for r in rows]

    # ================================================================
    # CHECKPOINTS
    # ================================================================

    def _to_checkpoint(self, row: tuple) -> SyncCheckpoint:
        return SyncCheckpoint.model_validate(self._row(_CHECKPOINT_COLUMNS, row))

    def get_checkpoint(self, source: LedgerSource) -> Optional[SyncCheckpoint]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {', '.join(_CHECKPOINT_COLUMNS)} FROM sync_checkpoints WHERE source = %s",
                (LedgerSource(source).value,),
            )
            row = cur.fetchone()
        return self._to_checkpoint(row) if row else None

    def advance_checkpoint(self, source: LedgerSource, block: int) -> SyncCheckpoint:
        with self._transaction() as cur:
            cur.execute(f"""
                INSERT INTO sync_checkpoints (source, last_synced_block, last_synced_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (source) DO UPDATE SET
                    last_synced_block = GREATEST(
                        sync_checkpoints.last_synced_block, EXCLUDED.last_synced_block),
                    last_synced_at = EXCLUDED.last_synced_at
                RETURNING {', '.join(_CHECKPOINT_COLUMNS)}
            """, (LedgerSource(source).value, block, utcnow()))
            return self._to_checkpoint(cur.fetchone())

    def set_checkpoint_status(
        self,
        source: LedgerSource,
        status: CheckpointStatus,
        error_message: Optional[str] = None,
    ) -> SyncCheckpoint:
        with self._transaction() as cur:
            cur.execute(f"""
                INSERT INTO sync_checkpoints (source, status, error_message)
                VALUES (%s, %s, %s)
                ON CONFLICT (source) DO UPDATE SET
                    status = EXCLUDED.status,
                    error_message = EXCLUDED.error_message
                RETURNING {', '.join(_CHECKPOINT_COLUMNS)}
            """, (LedgerSource(source).value, CheckpointStatus(status).value, error_message))
            return self._to_checkpoint(cur.fetchone())

    def ping(self) -> dict[str, Any]:
        with self._transaction() as cur:
            cur.execute("SELECT COUNT(*) FROM verification_records")
            records = cur.fetchone()[0]
            cur.execute("SELECT COUNT(*) FROM ledger_event_log")
            events = cur.fetchone()[0]
        return {"records": records, "events": events}
