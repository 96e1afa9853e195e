"""
HTTP Gateway Adapters

LedgerA, LedgerB and the blob store reached over HTTP with httpx.
Each ledger sits behind a small JSON gateway; the blob store speaks the
IPFS HTTP API (/api/v0/add, /api/v0/cat).

CONFIGURATION:
- LEDGER_A_URL: LedgerA gateway base URL
- LEDGER_B_URL: LedgerB gateway base URL
- BLOB_STORE_URL: IPFS API base URL
- LEDGER_REQUEST_TIMEOUT_SECONDS: Per-request bound (default: 10)
- LEDGER_POLL_SECONDS: Receipt / event polling interval (default: 1)

ERROR MAPPING:
- Connection failure, 5xx, read timeout on a query -> LedgerUnavailableError
- Read timeout on an anchor SUBMISSION -> LedgerTimeoutError (it may have landed)
- 404 on a lookup -> None
- 409 / 422 -> ValidationError
- Any other 4xx, or a body that is not JSON -> LedgerError
- An anchor the gateway refuses or answers without a tx_ref -> AnchorFailedError
- Blob store failures -> StorageError
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

from ..core.errors import (
    AnchorFailedError,
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from ..core.hasher import Hasher
from ..schemas import (
    AnchorReceipt,
    CertificateStatus,
    EventName,
    LedgerARecord,
    LedgerBAnchor,
    LedgerSource,
    RawLedgerEvent,
)
from .base import BlobStore, EventSubscription, LedgerAClient, LedgerBClient

logger = logging.getLogger(__name__)


@dataclass
class GatewayConfig:
    """Endpoints and bounds for the HTTP adapters."""
    ledger_a_url: str = "http://localhost:8801"
    ledger_b_url: str = "http://localhost:8802"
    blob_store_url: str = "http://localhost:5001"
    request_timeout_seconds: float = 10.0
    poll_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Load configuration from environment variables."""
        return cls(
            ledger_a_url=os.environ.get("LEDGER_A_URL", "http://localhost:8801"),
            ledger_b_url=os.environ.get("LEDGER_B_URL", "http://localhost:8802"),
            blob_store_url=os.environ.get("BLOB_STORE_URL", "http://localhost:5001"),
            request_timeout_seconds=float(os.environ.get("LEDGER_REQUEST_TIMEOUT_SECONDS", "10")),
            poll_seconds=float(os.environ.get("LEDGER_POLL_SECONDS", "1")),
        )


class _GatewayClient:
    """Shared httpx plumbing for ledger gateways."""

    name = "ledger"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        allow_missing: bool = False,
        **kwargs,
    ) -> Optional[Any]:
        """
        Perform a request and decode the JSON body.

        Returns:
            Decoded JSON, or None for a 404 when allow_missing is set
        """
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise LedgerUnavailableError(f"{self.name} timed out on {method} {path}") from e
        except httpx.TransportError as e:
            raise LedgerUnavailableError(f"{self.name} unreachable: {e}") from e

        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code in (409, 422):
            raise ValidationError(f"{self.name} refused {method} {path}: {response.text[:200]}")
        if response.status_code == 404:
            raise NotFoundError(f"{self.name}: {method} {path} not found")
        if response.status_code >= 500:
            raise LedgerUnavailableError(
                f"{self.name} returned {response.status_code} on {method} {path}"
            )
        if response.status_code >= 400:
            raise LedgerError(
                f"{self.name} rejected {method} {path} ({response.status_code}): {response.text[:200]}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise LedgerError(f"{self.name} sent a non-JSON body for {method} {path}") from e


class PollingSubscription(EventSubscription):
    """Event subscription backed by GET /events?from_block=N polling."""

    def __init__(
        self,
        client: _GatewayClient,
        source: LedgerSource,
        from_block: int,
        event_names: Optional[Iterable[EventName]] = None,
        poll_seconds: float = 1.0,
    ):
        self._client = client
        self._source = source
        self._next_block = from_block
        self._names = [n.value for n in event_names] if event_names else None
        self._poll_seconds = poll_seconds
        self._buffer: list[RawLedgerEvent] = []
        self._seen_in_block: set[tuple[str, str]] = set()
        self._closed = False

    def _fetch(self) -> None:
        params: dict[str, Any] = {"from_block": self._next_block}
        if self._names:
            params["event_names"] = ",".join(self._names)
        body = self._client._request("GET", "/events", params=params) or {}

        for item in body.get("events", []):
            event = RawLedgerEvent(
                source=self._source,
                event_name=item.get("event_name", ""),
                tx_ref=item.get("tx_ref", ""),
                block=int(item.get("block", 0)),
                payload=item.get("payload") or {},
            )
            key = (event.tx_ref, event.event_name)
            if event.block < self._next_block:
                continue
            if event.block == self._next_block and key in self._seen_in_block:
                continue
            if event.block > self._next_block:
                self._next_block = event.block
                self._seen_in_block = set()
            self._seen_in_block.add(key)
            self._buffer.append(event)

    def next_event(self, timeout: float) -> Optional[RawLedgerEvent]:
        deadline = time.monotonic() + timeout
        while not self._closed:
            if self._buffer:
                return self._buffer.pop(0)
            self._fetch()
            if self._buffer:
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self._poll_seconds, remaining))
        return None

    def close(self) -> None:
        self._closed = True


# ============================================================
# LEDGER A
# ============================================================

class HttpLedgerAClient(_GatewayClient, LedgerAClient):
    """LedgerA via its HTTP gateway."""

    name = "LedgerA"

    def __init__(self, base_url: str, timeout: float = 10.0, poll_seconds: float = 1.0, transport=None):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self._poll_seconds = poll_seconds

    def submit(
        self,
        certificate_id: str,
        organization_id: str,
        document_hash: str,
        holder_name: str,
        issue_date: str,
        metadata: dict[str, Any],
    ) -> LedgerARecord:
        body = self._request("POST", "/certificates", json={
            "certificate_id": certificate_id,
            "organization_id": organization_id,
            "document_hash": Hasher.strip_prefix(document_hash),
            "holder_name": holder_name,
            "issue_date": issue_date,
            "metadata": metadata or {},
        })
        return LedgerARecord.model_validate(body)

    def query_by_hash(
        self,
        document_hash: str,
        organization_id: Optional[str] = None,
    ) -> list[LedgerARecord]:
        params = {"document_hash": Hasher.strip_prefix(document_hash)}
        if organization_id:
            params["organization_id"] = organization_id
        body = self._request("GET", "/certificates", params=params) or {}
        return [LedgerARecord.model_validate(r) for r in body.get("certificates", [])]

    def query_by_id(self, certificate_id: str) -> Optional[LedgerARecord]:
        body = self._request("GET", f"/certificates/{certificate_id}", allow_missing=True)
        return LedgerARecord.model_validate(body) if body else None

    def get_history(self, certificate_id: str) -> list[LedgerARecord]:
        body = self._request("GET", f"/certificates/{certificate_id}/history", allow_missing=True) or {}
        return [LedgerARecord.model_validate(r) for r in body.get("versions", [])]

    def update_status(
        self,
        certificate_id: str,
        status: CertificateStatus,
        reason: Optional[str] = None,
    ) -> LedgerARecord:
        body = self._request("PUT", f"/certificates/{certificate_id}/status", json={
            "status": CertificateStatus(status).value,
            "reason": reason,
        })
        return LedgerARecord.model_validate(body)

    def subscribe(self, from_block: int) -> EventSubscription:
        return PollingSubscription(self, LedgerSource.LEDGER_A, from_block, poll_seconds=self._poll_seconds)


# ============================================================
# LEDGER B
# ============================================================

class HttpLedgerBClient(_GatewayClient, LedgerBClient):
    """LedgerB via its HTTP gateway (transaction submit + receipt polling)."""

    name = "LedgerB"

    def __init__(self, base_url: str, timeout: float = 10.0, poll_seconds: float = 1.0, transport=None):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self._poll_seconds = poll_seconds

    def anchor(
        self,
        document_hash: str,
        blob_ref: str,
        organization_id: str,
        proof_hash: str,
    ) -> str:
        normalized = Hasher.normalize_hash(document_hash)
        try:
            response = self._client.post("/anchors", json={
                "document_hash": normalized,
                "blob_ref": blob_ref,
                "organization_id": organization_id,
                "proof_hash": proof_hash,
            })
        except (httpx.ReadTimeout, httpx.WriteTimeout, httpx.RemoteProtocolError) as e:
            # The request left this process; the transaction may exist.
            raise LedgerTimeoutError(
                f"LedgerB anchor submission outcome unknown: {e}",
                document_hash=normalized,
            ) from e
        except httpx.TransportError as e:
            raise LedgerUnavailableError(f"LedgerB unreachable: {e}") from e

        if response.status_code >= 500:
            raise LedgerUnavailableError(f"LedgerB returned {response.status_code} on anchor")
        if response.status_code >= 400:
            raise AnchorFailedError(
                f"LedgerB refused anchor ({response.status_code}): {response.text[:200]}",
                document_hash=normalized,
            )
        try:
            return response.json()["tx_ref"]
        except (ValueError, KeyError, TypeError) as e:
            raise AnchorFailedError(
                f"LedgerB answered {response.status_code} without a tx_ref",
                document_hash=normalized,
            ) from e

    def get_receipt(self, tx_ref: str) -> Optional[AnchorReceipt]:
        body = self._request("GET", f"/transactions/{tx_ref}/receipt", allow_missing=True)
        if not body or body.get("pending"):
            return None
        return AnchorReceipt(
            tx_ref=tx_ref,
            success=bool(body.get("success")),
            block=body.get("block"),
            reason=body.get("reason"),
        )

    def wait_for_confirmation(self, tx_ref: str, timeout: float) -> AnchorReceipt:
        deadline = time.monotonic() + timeout
        while True:
            try:
                receipt = self.get_receipt(tx_ref)
            except LedgerUnavailableError as e:
                # Losing the gateway mid-wait does not tell us the outcome.
                logger.warning(f"Receipt poll failed for {tx_ref}: {e}")
                receipt = None
            if receipt is not None:
                return receipt
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LedgerTimeoutError(
                    f"No confirmation for {tx_ref} within {timeout}s",
                    tx_ref=tx_ref,
                )
            time.sleep(min(self._poll_seconds, remaining))

    def reject(self, document_hash: str, organization_id: str, reason: str) -> str:
        body = self._request("POST", "/rejections", json={
            "document_hash": Hasher.normalize_hash(document_hash),
            "organization_id": organization_id,
            "reason": reason,
        })
        return body["tx_ref"]

    def get_anchor(self, document_hash: str) -> Optional[LedgerBAnchor]:
        normalized = Hasher.normalize_hash(document_hash)
        body = self._request("GET", f"/anchors/{normalized}", allow_missing=True)
        return LedgerBAnchor.model_validate(body) if body else None

    def subscribe(
        self,
        from_block: int,
        event_names: Optional[Iterable[EventName]] = None,
    ) -> EventSubscription:
        return PollingSubscription(
            self,
            LedgerSource.LEDGER_B,
            from_block,
            event_names=event_names,
            poll_seconds=self._poll_seconds,
        )


# ============================================================
# BLOB STORE (IPFS HTTP API)
# ============================================================

class IpfsBlobStore(BlobStore):
    """Blob store backed by an IPFS node's HTTP API."""

    def __init__(self, base_url: str, timeout: float = 30.0, transport=None):
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def put(self, data: bytes) -> str:
        try:
            response = self._client.post(
                "/api/v0/add",
                params={"pin": "true", "cid-version": "1"},
                files={"file": ("document", data, "application/octet-stream")},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"IPFS add failed: {e}") from e

        try:
            cid = response.json().get("Hash")
        except (ValueError, AttributeError) as e:
            raise StorageError("IPFS add returned a malformed body") from e
        if not cid:
            raise StorageError("IPFS add returned no CID")
        logger.info(f"Stored document in IPFS: {cid}")
        return cid

    def get(self, ref: str) -> bytes:
        try:
            response = self._client.post("/api/v0/cat", params={"arg": ref})
        except httpx.HTTPError as e:
            raise StorageError(f"IPFS cat failed: {e}") from e

        if response.status_code == 404 or (
            response.status_code == 500 and "not found" in response.text.lower()
        ):
            raise NotFoundError(f"Blob {ref} not found")
        if response.status_code >= 400:
            raise StorageError(f"IPFS cat returned {response.status_code}")
        return response.content
