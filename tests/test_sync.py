"""
Tests for the event sync engine.

Delivery is at-least-once, so most of these replay events and check
that nothing changes the second time.
"""

import threading
import time

import pytest

from docverify.core.hasher import Hasher
from docverify.core.sync import EventSyncEngine, LedgerListener, ListenerState, ProcessOutcome, SyncConfig
from docverify.db.projections import ProjectionService
from docverify.db.store import InMemoryVerificationStore, StoreError
from docverify.schemas import (
    SOURCE_EVENTS,
    CertificateStatus,
    CheckpointStatus,
    EventName,
    LedgerSource,
    RawLedgerEvent,
    VerificationStatus,
    to_epoch_ms,
    utcnow,
)

ORG = "org-university-1"
TRANSCRIPT = b"%PDF-1.7 transcript"
DIPLOMA = b"%PDF-1.7 diploma"
FORGERY = b"%PDF-1.7 forged diploma"


def wait_for(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def anchor_directly(ledger_b, document: bytes, organization_id: str = ORG) -> str:
    """Anchor on LedgerB without the orchestrator, as another instance would."""
    document_hash = Hasher.hash_document(document)
    proof = Hasher.proof_hash(document_hash, organization_id, to_epoch_ms(utcnow()))
    return ledger_b.anchor(document_hash, "mem-" + document_hash[2:], organization_id, proof)


def populate(ledger_a, ledger_b, certify):
    """A little history on both ledgers."""
    ledger_b.register_organization(ORG, "0xwallet1", name="First University")
    certify(TRANSCRIPT, certificate_id="CERT-20260101-000001")
    certify(DIPLOMA, certificate_id="CERT-20260101-000002")
    anchor_directly(ledger_b, TRANSCRIPT)
    anchor_directly(ledger_b, DIPLOMA)
    ledger_b.reject(Hasher.hash_document(FORGERY), ORG, "not found in organization ledger")
    ledger_a.update_status("CERT-20260101-000001", CertificateStatus.REVOKED, "withdrawn")


class FlakyProjections(ProjectionService):
    """Fails the first time it sees each listed event name."""

    def __init__(self, store, fail_on):
        super().__init__(store)
        self.remaining = set(fail_on)

    def apply(self, event, payload):
        if payload.event_name in self.remaining:
            self.remaining.discard(payload.event_name)
            raise RuntimeError(f"handler blew up on {payload.event_name}")
        super().apply(event, payload)


class FlakyStore(InMemoryVerificationStore):
    """Refuses the first N event appends, as a database blip would."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def append_event(self, *args, **kwargs):
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("connection reset")
        return super().append_event(*args, **kwargs)


class HoldingListener(LedgerListener):
    """
    After the first failed event, holds the next event it dequeues until
    the producer has subscribed again.
    """

    def __init__(self, engine, source, subscribe, config):
        self.resubscribed = threading.Event()
        self.held = False
        self._subscriptions = 0

        def counting_subscribe(from_block):
            self._subscriptions += 1
            if self._subscriptions > 1:
                self.resubscribed.set()
            return subscribe(from_block)

        super().__init__(engine, source, counting_subscribe, config)

    def _take(self):
        item = super()._take()
        if item is not None and self.generation > 0 and not self.held:
            self.held = True
            self.resubscribed.wait(timeout=2.0)
        return item


class HoldingEngine(EventSyncEngine):
    listener_class = HoldingListener


class TestProcessEvent:

    def test_replay_is_idempotent(self, engine, store, ledger_a, certify):
        certify(DIPLOMA)
        event = ledger_a.feed.events()[0]

        assert engine.process_event(event) == ProcessOutcome.APPENDED
        before = store.snapshot()
        assert engine.process_event(event) == ProcessOutcome.DUPLICATE

        assert len(store.list_events()) == 1
        assert store.snapshot() == before

    def test_unknown_event_is_skipped(self, engine, store):
        event = RawLedgerEvent(
            source=LedgerSource.LEDGER_B,
            event_name="DocumentFrobnicated",
            tx_ref="0x01",
            block=4,
            payload={},
        )
        assert engine.process_event(event) == ProcessOutcome.SKIPPED
        assert store.list_events() == []
        assert store.get_checkpoint(LedgerSource.LEDGER_B).last_synced_block == 4

    def test_event_from_wrong_ledger_is_skipped(self, engine, store):
        event = RawLedgerEvent(
            source=LedgerSource.LEDGER_A,
            event_name="DocumentVerified",
            tx_ref="0x02",
            block=1,
            payload={},
        )
        assert engine.process_event(event) == ProcessOutcome.SKIPPED

    def test_malformed_payload_is_skipped_not_mis_mapped(self, engine, store, ledger_b):
        ledger_b.feed.publish_raw(RawLedgerEvent(
            source=LedgerSource.LEDGER_B,
            event_name="DocumentVerified",
            tx_ref="0xbad",
            block=1,
            payload={"document_hash": "not-a-hash", "organization_id": ORG},
        ))
        anchor_directly(ledger_b, DIPLOMA)

        summary = engine.catch_up(sources=[LedgerSource.LEDGER_B])

        assert summary["ledger_b"]["skipped"] == 1
        assert summary["ledger_b"]["appended"] == 1
        assert "0xbad" not in [e.tx_ref for e in store.list_events()]
        assert store.count_verified(Hasher.hash_document(DIPLOMA)) == 1

    def test_payload_hashes_normalized_at_ingestion(self, engine, store, ledger_a, certify):
        """LedgerA emits bare hex; the log and cache hold the prefixed form."""
        certify(DIPLOMA)
        engine.catch_up(sources=[LedgerSource.LEDGER_A])

        entry = store.list_events()[0]
        assert entry.payload["document_hash"] == Hasher.hash_document(DIPLOMA)
        assert store.get_certificate("CERT-20260101-ABC123").document_hash == Hasher.hash_document(DIPLOMA)


class TestProjections:

    def test_anchor_event_creates_verified_record(self, engine, store, ledger_b, certify):
        certify(DIPLOMA)
        tx_ref = anchor_directly(ledger_b, DIPLOMA)
        engine.catch_up()

        record = store.get_verified_record(Hasher.hash_document(DIPLOMA))
        assert record.ledger_b_tx_ref == tx_ref
        assert record.certificate_id == "CERT-20260101-ABC123"
        assert record.organization_id == ORG

    def test_events_in_either_ledger_order(self, store, ledger_a, ledger_b, sync_config, certify):
        """No ordering across ledgers: LedgerB first still yields the same cache."""
        certify(DIPLOMA)
        anchor_directly(ledger_b, DIPLOMA)

        b_first = InMemoryVerificationStore()
        EventSyncEngine(b_first, ledger_a, ledger_b, config=sync_config).catch_up(
            sources=[LedgerSource.LEDGER_B, LedgerSource.LEDGER_A]
        )
        a_first = InMemoryVerificationStore()
        EventSyncEngine(a_first, ledger_a, ledger_b, config=sync_config).catch_up(
            sources=[LedgerSource.LEDGER_A, LedgerSource.LEDGER_B]
        )

        document_hash = Hasher.hash_document(DIPLOMA)
        assert a_first.get_verified_record(document_hash).certificate_id == "CERT-20260101-ABC123"
        # Arriving before the certificate, the anchor has no certificate id to copy
        assert b_first.get_verified_record(document_hash) is not None
        assert b_first.get_certificate("CERT-20260101-ABC123") is not None

    def test_rejection_event_recorded_once(self, orchestrator, engine, store):
        result = orchestrator.submit(FORGERY, ORG)
        engine.catch_up()

        records = store.list_records(result.document_hash)
        assert len(records) == 1
        assert records[0].status == VerificationStatus.REJECTED

    def test_organization_lifecycle(self, engine, store, ledger_b):
        ledger_b.register_organization(ORG, "0xwallet1", name="First University")
        ledger_b.deactivate_organization(ORG, "0xwallet1")
        engine.catch_up()

        org = store.get_organization(ORG)
        assert org.name == "First University"
        assert org.wallet_address == "0xwallet1"
        assert not org.is_active

    def test_certificate_status_followed(self, engine, store, ledger_a, certify):
        certify(DIPLOMA)
        ledger_a.update_status("CERT-20260101-ABC123", CertificateStatus.REVOKED, "fraud")
        engine.catch_up()

        cert = store.get_certificate("CERT-20260101-ABC123")
        assert cert.status == CertificateStatus.REVOKED
        assert cert.status_reason == "fraud"


class TestCheckpoints:

    def test_checkpoint_tracks_last_block(self, engine, store, ledger_a, ledger_b, certify):
        populate(ledger_a, ledger_b, certify)
        engine.catch_up()

        assert store.get_checkpoint(LedgerSource.LEDGER_A).last_synced_block == ledger_a.feed.head_block
        assert store.get_checkpoint(LedgerSource.LEDGER_B).last_synced_block == ledger_b.feed.head_block

    def test_monotonic_across_restart(self, store, ledger_a, ledger_b, sync_config, certify):
        populate(ledger_a, ledger_b, certify)
        EventSyncEngine(store, ledger_a, ledger_b, config=sync_config).catch_up()
        high = store.get_checkpoint(LedgerSource.LEDGER_B).last_synced_block

        restarted = EventSyncEngine(store, ledger_a, ledger_b, config=sync_config)
        assert restarted.resume_block(LedgerSource.LEDGER_B) == high

        # An old event redelivered after the restart
        restarted.process_event(ledger_b.feed.events()[0])
        assert store.get_checkpoint(LedgerSource.LEDGER_B).last_synced_block == high

    def test_start_block_used_without_checkpoint(self, store, ledger_a, ledger_b):
        engine = EventSyncEngine(store, ledger_a, ledger_b, config=SyncConfig(start_block=40))
        assert engine.resume_block(LedgerSource.LEDGER_A) == 40


class TestCrashRecovery:

    def test_redelivery_after_restart_matches_exactly_once(self, ledger_a, ledger_b, sync_config, certify):
        populate(ledger_a, ledger_b, certify)

        exactly_once = InMemoryVerificationStore()
        EventSyncEngine(exactly_once, ledger_a, ledger_b, config=sync_config).catch_up()
        expected = exactly_once.snapshot()

        crashed = InMemoryVerificationStore()
        EventSyncEngine(crashed, ledger_a, ledger_b, config=sync_config).catch_up()

        # The ledgers redeliver the tail after the crash
        ledger_b.feed.redeliver(3)
        ledger_a.feed.redeliver(2)

        restarted = EventSyncEngine(crashed, ledger_a, ledger_b, config=sync_config)
        summary = restarted.catch_up()

        assert summary["ledger_b"]["duplicate"] >= 3
        assert summary["ledger_a"]["duplicate"] >= 2
        assert summary["ledger_b"]["appended"] == 0
        assert crashed.snapshot() == expected

    def test_replay_into_fresh_engine_twice(self, ledger_a, ledger_b, sync_config, certify):
        populate(ledger_a, ledger_b, certify)
        store = InMemoryVerificationStore()
        engine = EventSyncEngine(store, ledger_a, ledger_b, config=sync_config)

        for event in ledger_a.feed.events() + ledger_b.feed.events():
            engine.process_event(event)
        once = store.snapshot()
        for event in ledger_a.feed.events() + ledger_b.feed.events():
            engine.process_event(event)

        assert store.snapshot() == once


class TestFailedProjections:

    def test_failed_handler_left_unprocessed_then_reprocessed(self, store, ledger_a, ledger_b, sync_config, certify):
        certify(DIPLOMA)
        engine = EventSyncEngine(
            store, ledger_a, ledger_b,
            projections=FlakyProjections(store, fail_on={"CertificateIssued"}),
            config=sync_config,
        )

        summary = engine.catch_up()
        assert summary["ledger_a"]["failed"] == 1

        status = engine.get_sync_status()["sources"]["ledger_a"]
        assert status["unprocessed"] == 1
        assert status["checkpoint_status"] == "degraded"
        assert store.get_certificate("CERT-20260101-ABC123") is None

        assert engine.reprocess_unprocessed() == {"processed": 1, "failed": 0}
        assert store.get_certificate("CERT-20260101-ABC123") is not None
        assert store.get_checkpoint(LedgerSource.LEDGER_A).status == CheckpointStatus.ACTIVE

    def test_redelivery_retries_unprocessed_entry(self, store, ledger_a, ledger_b, sync_config, certify):
        certify(DIPLOMA)
        engine = EventSyncEngine(
            store, ledger_a, ledger_b,
            projections=FlakyProjections(store, fail_on={"CertificateIssued"}),
            config=sync_config,
        )
        event = ledger_a.feed.events()[0]

        assert engine.process_event(event) == ProcessOutcome.FAILED
        assert engine.process_event(event) == ProcessOutcome.APPENDED
        assert len(store.list_events()) == 1
        assert store.list_events(processed=False) == []


class TestListeners:

    def test_disabled_engine_does_not_start(self, store, ledger_a, ledger_b):
        engine = EventSyncEngine(store, ledger_a, ledger_b, config=SyncConfig(enabled=False))
        engine.start()
        assert not engine.is_running
        assert engine.get_sync_status()["enabled"] is False

    def test_background_listeners_follow_both_ledgers(self, engine, orchestrator, store, ledger_b, certify):
        engine.start()
        try:
            assert wait_for(lambda: engine.listener(LedgerSource.LEDGER_A).state == ListenerState.LISTENING)

            ledger_b.register_organization(ORG, "0xwallet1")
            certify(DIPLOMA)
            orchestrator.submit(DIPLOMA, ORG)

            assert wait_for(lambda: store.get_certificate("CERT-20260101-ABC123") is not None)
            assert wait_for(lambda: store.get_organization(ORG) is not None)
            assert wait_for(lambda: not store.list_events(processed=False) and len(store.list_events()) == 3)
            assert store.count_verified(Hasher.hash_document(DIPLOMA)) == 1
        finally:
            engine.stop(timeout=2.0)

        assert not engine.is_running
        assert engine.listener(LedgerSource.LEDGER_B).state == ListenerState.STOPPED

    def test_unreachable_ledger_degrades_then_errors_then_recovers(self, engine, store, ledger_a):
        def status():
            checkpoint = store.get_checkpoint(LedgerSource.LEDGER_A)
            return checkpoint.status if checkpoint else None

        ledger_a.available = False
        engine.start()
        try:
            assert wait_for(lambda: status() == CheckpointStatus.ERROR)
            assert "unreachable" in store.get_checkpoint(LedgerSource.LEDGER_A).error_message

            ledger_a.available = True
            assert wait_for(lambda: status() == CheckpointStatus.ACTIVE)
        finally:
            engine.stop(timeout=2.0)

    def test_store_failure_resyncs_from_checkpoint(self, ledger_a, ledger_b, sync_config, certify):
        store = FlakyStore(failures=1)
        engine = EventSyncEngine(store, ledger_a, ledger_b, config=sync_config)
        certify(DIPLOMA)

        engine.start()
        try:
            assert wait_for(lambda: store.get_certificate("CERT-20260101-ABC123") is not None)
        finally:
            engine.stop(timeout=2.0)

        assert store.failures == 0
        assert len(store.list_events()) == 1

    def test_events_queued_behind_a_failure_are_replayed(self, ledger_a, ledger_b, sync_config, certify):
        store = FlakyStore(failures=1)
        engine = HoldingEngine(store, ledger_a, ledger_b, config=sync_config)
        certify(TRANSCRIPT, certificate_id="CERT-20260101-000001")
        certify(DIPLOMA, certificate_id="CERT-20260101-000002")

        engine.start()
        try:
            assert wait_for(lambda: len(store.list_events()) == 2)
        finally:
            engine.stop(timeout=2.0)

        listener = engine.listener(LedgerSource.LEDGER_A)
        assert listener.held and listener.resubscribed.is_set()
        assert listener.generation == 1
        assert store.get_certificate("CERT-20260101-000001") is not None
        assert store.get_certificate("CERT-20260101-000002") is not None
        assert store.list_events(processed=False) == []

    def test_status_shape(self, engine):
        status = engine.get_sync_status()
        assert set(status["sources"]) == {"ledger_a", "ledger_b"}
        source = status["sources"]["ledger_b"]
        assert source["state"] == "disconnected"
        assert source["last_synced_block"] is None
        assert source["unprocessed"] == 0


@pytest.mark.parametrize("name", list(EventName))
def test_every_event_name_belongs_to_one_ledger(name):
    owners = [source for source, names in SOURCE_EVENTS.items() if name in names]
    assert len(owners) == 1
