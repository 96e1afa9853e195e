"""
Tests for the HTTP gateway adapters against httpx.MockTransport.
"""

import json

import httpx
import pytest

from docverify.core.errors import (
    AnchorFailedError,
    LedgerError,
    LedgerTimeoutError,
    LedgerUnavailableError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from docverify.ledgers.gateway import (
    GatewayConfig,
    HttpLedgerAClient,
    HttpLedgerBClient,
    IpfsBlobStore,
)
from docverify.schemas import CertificateStatus, EventName, LedgerSource

ORG = "org-university-1"
BARE = "ab" * 32
PREFIXED = "0x" + BARE

CERTIFICATE = {
    "certificate_id": "CERT-20260101-ABC123",
    "organization_id": ORG,
    "document_hash": BARE,
    "holder_name": "Ada Lovelace",
    "issue_date": "2026-01-01",
    "timestamp": "2026-01-01T00:00:00Z",
    "version": 1,
}


def ledger_a(handler):
    return HttpLedgerAClient("http://ledger-a", poll_seconds=0.01, transport=httpx.MockTransport(handler))


def ledger_b(handler):
    return HttpLedgerBClient("http://ledger-b", poll_seconds=0.01, transport=httpx.MockTransport(handler))


class TestLedgerAClient:

    def test_submit_sends_bare_hash(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=CERTIFICATE)

        record = ledger_a(handler).submit(
            "CERT-20260101-ABC123", ORG, PREFIXED, "Ada Lovelace", "2026-01-01", {},
        )

        assert seen["body"]["document_hash"] == BARE
        assert record.certificate_id == "CERT-20260101-ABC123"
        assert record.status == CertificateStatus.ACTIVE

    def test_query_by_hash(self):
        def handler(request):
            assert request.url.params["document_hash"] == BARE
            assert request.url.params["organization_id"] == ORG
            return httpx.Response(200, json={"certificates": [CERTIFICATE]})

        records = ledger_a(handler).query_by_hash(PREFIXED, ORG)
        assert [r.holder_name for r in records] == ["Ada Lovelace"]

    def test_missing_certificate_is_none(self):
        client = ledger_a(lambda request: httpx.Response(404))
        assert client.query_by_id("CERT-99999999-FFFFFF") is None
        assert client.get_history("CERT-99999999-FFFFFF") == []

    def test_conflict_is_validation_error(self):
        client = ledger_a(lambda request: httpx.Response(409, text="duplicate certificate"))
        with pytest.raises(ValidationError):
            client.submit("CERT-20260101-ABC123", ORG, BARE, "Ada", "2026-01-01", {})

    def test_update_unknown_certificate(self):
        client = ledger_a(lambda request: httpx.Response(404))
        with pytest.raises(NotFoundError):
            client.update_status("CERT-99999999-FFFFFF", CertificateStatus.REVOKED)

    @pytest.mark.parametrize("failure", [httpx.ConnectError, httpx.ReadTimeout])
    def test_transport_failure_is_unavailable(self, failure):
        def handler(request):
            raise failure("no route", request=request)

        with pytest.raises(LedgerUnavailableError):
            ledger_a(handler).query_by_hash(BARE)

    def test_server_error_is_unavailable(self):
        with pytest.raises(LedgerUnavailableError):
            ledger_a(lambda request: httpx.Response(503)).query_by_hash(BARE)

    @pytest.mark.parametrize("status", [400, 401, 403])
    def test_other_client_errors_are_ledger_errors(self, status):
        client = ledger_a(lambda request: httpx.Response(status, text="bad credentials"))
        with pytest.raises(LedgerError) as info:
            client.query_by_hash(BARE, ORG)
        assert not isinstance(info.value, LedgerUnavailableError)
        assert str(status) in str(info.value)

    def test_non_json_body_is_ledger_error(self):
        client = ledger_a(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        with pytest.raises(LedgerError):
            client.query_by_hash(BARE, ORG)


class TestLedgerBClient:

    def test_anchor_returns_tx_ref(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"tx_ref": "0xtx1"})

        tx_ref = ledger_b(handler).anchor(BARE.upper(), "bafy1", ORG, "0x" + "c" * 64)

        assert tx_ref == "0xtx1"
        assert seen["body"]["document_hash"] == PREFIXED

    def test_anchor_read_timeout_is_ambiguous(self):
        def handler(request):
            raise httpx.ReadTimeout("no response", request=request)

        with pytest.raises(LedgerTimeoutError) as info:
            ledger_b(handler).anchor(PREFIXED, "bafy1", ORG, "0x" + "c" * 64)
        assert info.value.document_hash == PREFIXED

    def test_anchor_connect_failure_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LedgerUnavailableError):
            ledger_b(handler).anchor(PREFIXED, "bafy1", ORG, "0x" + "c" * 64)

    @pytest.mark.parametrize("status", [400, 409, 422])
    def test_anchor_refused(self, status):
        client = ledger_b(lambda request: httpx.Response(status, text="organization inactive"))
        with pytest.raises(AnchorFailedError) as info:
            client.anchor(PREFIXED, "bafy1", ORG, "0x" + "c" * 64)
        assert "organization inactive" in info.value.reason
        assert info.value.document_hash == PREFIXED

    @pytest.mark.parametrize("reply", [
        httpx.Response(202, json={"status": "queued"}),
        httpx.Response(202, text="accepted"),
    ])
    def test_anchor_reply_without_tx_ref(self, reply):
        with pytest.raises(AnchorFailedError):
            ledger_b(lambda request: reply).anchor(PREFIXED, "bafy1", ORG, "0x" + "c" * 64)

    def test_pending_receipt_is_none(self):
        client = ledger_b(lambda request: httpx.Response(200, json={"pending": True}))
        assert client.get_receipt("0xtx1") is None

    def test_wait_for_confirmation(self):
        replies = iter([
            httpx.Response(200, json={"pending": True}),
            httpx.Response(503),
            httpx.Response(200, json={"success": True, "block": 42}),
        ])
        receipt = ledger_b(lambda request: next(replies)).wait_for_confirmation("0xtx1", timeout=2)

        assert receipt.success
        assert receipt.block == 42

    def test_wait_for_confirmation_times_out(self):
        client = ledger_b(lambda request: httpx.Response(200, json={"pending": True}))
        with pytest.raises(LedgerTimeoutError) as info:
            client.wait_for_confirmation("0xtx1", timeout=0.05)
        assert info.value.tx_ref == "0xtx1"

    def test_get_anchor(self):
        def handler(request):
            assert request.url.path == f"/anchors/{PREFIXED}"
            return httpx.Response(200, json={
                "document_hash": PREFIXED,
                "organization_id": ORG,
                "blob_ref": "bafy1",
                "proof_hash": "0x" + "c" * 64,
                "anchored_at": "2026-01-01T00:00:00Z",
                "tx_ref": "0xtx1",
                "block": 42,
            })

        anchor = ledger_b(handler).get_anchor(BARE)
        assert anchor.block == 42
        assert anchor.anchored_at_ms == 1767225600000

    def test_missing_anchor_is_none(self):
        assert ledger_b(lambda request: httpx.Response(404)).get_anchor(BARE) is None


class TestPollingSubscription:

    def test_events_filtered_and_not_repeated(self):
        pages = []

        def handler(request):
            pages.append(dict(request.url.params))
            return httpx.Response(200, json={"events": [
                {"event_name": "DocumentVerified", "tx_ref": "0x1", "block": 5, "payload": {}},
                {"event_name": "DocumentRejected", "tx_ref": "0x2", "block": 6, "payload": {}},
            ]})

        subscription = ledger_b(handler).subscribe(
            5, event_names=[EventName.DOCUMENT_VERIFIED, EventName.DOCUMENT_REJECTED],
        )
        first = subscription.next_event(timeout=0.5)
        second = subscription.next_event(timeout=0.5)
        third = subscription.next_event(timeout=0.05)
        subscription.close()

        assert (first.tx_ref, first.block, first.source) == ("0x1", 5, LedgerSource.LEDGER_B)
        assert second.tx_ref == "0x2"
        assert third is None
        assert pages[0] == {"from_block": "5", "event_names": "DocumentVerified,DocumentRejected"}
        assert pages[-1]["from_block"] == "6"

    def test_closed_subscription_returns_nothing(self):
        subscription = ledger_a(lambda request: httpx.Response(200, json={"events": []})).subscribe(0)
        subscription.close()
        assert subscription.next_event(timeout=1) is None


class TestIpfsBlobStore:

    def test_put_and_get(self):
        stored = {}

        def handler(request):
            if request.url.path == "/api/v0/add":
                stored["bafy1"] = request.content
                return httpx.Response(200, json={"Hash": "bafy1"})
            assert request.url.params["arg"] == "bafy1"
            return httpx.Response(200, content=b"document bytes")

        blobs = IpfsBlobStore("http://ipfs", transport=httpx.MockTransport(handler))

        assert blobs.put(b"document bytes") == "bafy1"
        assert b"document bytes" in stored["bafy1"]
        assert blobs.get("bafy1") == b"document bytes"

    def test_missing_blob(self):
        blobs = IpfsBlobStore(
            "http://ipfs",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="block not found")),
        )
        with pytest.raises(NotFoundError):
            blobs.get("bafy-missing")

    def test_add_failure_is_storage_error(self):
        blobs = IpfsBlobStore(
            "http://ipfs",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="disk full")),
        )
        with pytest.raises(StorageError):
            blobs.put(b"data")

    def test_add_without_cid(self):
        blobs = IpfsBlobStore(
            "http://ipfs",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )
        with pytest.raises(StorageError):
            blobs.put(b"data")

    def test_add_with_non_json_reply(self):
        blobs = IpfsBlobStore(
            "http://ipfs",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>proxy</html>")),
        )
        with pytest.raises(StorageError):
            blobs.put(b"data")


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("LEDGER_B_URL", "http://anchors.internal:9000")
    monkeypatch.setenv("LEDGER_REQUEST_TIMEOUT_SECONDS", "3.5")

    config = GatewayConfig.from_env()

    assert config.ledger_b_url == "http://anchors.internal:9000"
    assert config.request_timeout_seconds == 3.5
    assert config.ledger_a_url == "http://localhost:8801"
