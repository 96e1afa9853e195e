"""
Event Sync Engine

Keeps the verification cache in step with both ledgers.

One LedgerListener per source. Each listener runs two threads:
- producer: subscribes from the source's checkpoint and feeds a bounded
  queue (a full queue blocks the producer, which is the back-pressure)
- consumer: takes events off the queue and hands them to the engine

Per event the engine does:
    parse -> append to event log -> apply projection -> mark processed -> checkpoint

Delivery is at-least-once. Replays are harmless:
- The event log is unique on (source, tx_ref, event_name)
- Projections are upserts keyed by natural identifiers
- Checkpoints only move forward

Listener states:
    DISCONNECTED -> CONNECTING -> LISTENING -> ... -> STOPPED (explicit stop only)

CONFIGURATION:
- DOCVERIFY_SYNC_ENABLED: Start listeners with the app (default: false)
- DOCVERIFY_SYNC_QUEUE_SIZE: Events buffered per source (default: 256)
- DOCVERIFY_SYNC_POLL_SECONDS: Subscription poll interval (default: 1)
- DOCVERIFY_SYNC_BACKOFF_SECONDS: First reconnect delay (default: 1)
- DOCVERIFY_SYNC_MAX_BACKOFF_SECONDS: Reconnect delay cap (default: 60)
- DOCVERIFY_SYNC_ERROR_THRESHOLD: Consecutive failures before status=error (default: 5)
- DOCVERIFY_SYNC_START_BLOCK: Where to begin with no checkpoint (default: 0)
"""

import logging
import os
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Tuple

from ..db.projections import ProjectionService
from ..db.store import VerificationStore, iter_unprocessed
from ..ledgers.base import EventSubscription, LedgerAClient, LedgerBClient
from ..observability import get_metrics
from ..schemas import (
    SOURCE_EVENTS,
    CheckpointStatus,
    EventName,
    LedgerSource,
    RawLedgerEvent,
)
from .errors import MalformedEventError

logger = logging.getLogger(__name__)


@dataclass
class SyncConfig:
    """Configuration for the event sync engine."""
    enabled: bool = False
    queue_size: int = 256
    poll_seconds: float = 1.0
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    error_threshold: int = 5
    start_block: int = 0

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=os.environ.get("DOCVERIFY_SYNC_ENABLED", "").lower() in ("1", "true", "yes"),
            queue_size=int(os.environ.get("DOCVERIFY_SYNC_QUEUE_SIZE", "256")),
            poll_seconds=float(os.environ.get("DOCVERIFY_SYNC_POLL_SECONDS", "1")),
            backoff_seconds=float(os.environ.get("DOCVERIFY_SYNC_BACKOFF_SECONDS", "1")),
            max_backoff_seconds=float(os.environ.get("DOCVERIFY_SYNC_MAX_BACKOFF_SECONDS", "60")),
            error_threshold=int(os.environ.get("DOCVERIFY_SYNC_ERROR_THRESHOLD", "5")),
            start_block=int(os.environ.get("DOCVERIFY_SYNC_START_BLOCK", "0")),
        )


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    STOPPED = "stopped"


class ProcessOutcome(str, Enum):
    """What happened to one delivered event."""
    APPENDED = "appended"     # new (or previously unprocessed) and applied
    DUPLICATE = "duplicate"   # already in the log and processed
    SKIPPED = "skipped"       # failed schema validation
    FAILED = "failed"         # logged but its projection raised


# ============================================================
# LISTENER
# ============================================================

class LedgerListener:
    """
    Subscription-to-engine pump for one ledger.

    The producer resubscribes from the persisted checkpoint after any
    failure, so nothing between the checkpoint and the failure is lost.

    Each subscription runs under a generation number. Only the consumer
    advances it, when an event fails; anything queued under an older
    generation is discarded, since the new subscription delivers it again.
    """

    def __init__(
        self,
        engine: "EventSyncEngine",
        source: LedgerSource,
        subscribe: Callable[[int], EventSubscription],
        config: SyncConfig,
    ):
        self._engine = engine
        self.source = source
        self._subscribe = subscribe
        self._config = config

        self._queue: "queue.Queue[Tuple[int, RawLedgerEvent]]" = queue.Queue(maxsize=max(1, config.queue_size))
        self._stop_event = threading.Event()
        self._generation = 0
        self._generation_lock = threading.Lock()
        self._state = ListenerState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._failures = 0
        self._producer: Optional[threading.Thread] = None
        self._consumer: Optional[threading.Thread] = None

    @property
    def state(self) -> ListenerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ListenerState) -> None:
        with self._state_lock:
            if self._state != state:
                logger.debug(f"{self.source.value} listener: {self._state.value} -> {state.value}")
            self._state = state

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._producer is not None and self._producer.is_alive()

    @property
    def generation(self) -> int:
        with self._generation_lock:
            return self._generation

    def _invalidate(self, generation: int) -> None:
        """Retire `generation` unless a later one is already current."""
        with self._generation_lock:
            if self._generation == generation:
                self._generation += 1

    def start(self) -> None:
        if self.is_running:
            logger.warning(f"{self.source.value} listener already running")
            return

        self._stop_event.clear()
        self._drain()
        self._producer = threading.Thread(
            target=self._produce, name=f"sync-{self.source.value}-producer", daemon=True
        )
        self._consumer = threading.Thread(
            target=self._consume, name=f"sync-{self.source.value}-consumer", daemon=True
        )
        self._consumer.start()
        self._producer.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for thread in (self._producer, self._consumer):
            if thread is not None:
                thread.join(timeout=timeout)
        self._set_state(ListenerState.STOPPED)

    # ----------------------------------------------------------------
    # Producer
    # ----------------------------------------------------------------

    def _backoff(self) -> float:
        delay = self._config.backoff_seconds * (2 ** max(0, self._failures - 1))
        return min(delay, self._config.max_backoff_seconds)

    def _produce(self) -> None:
        while not self._stop_event.is_set():
            self._set_state(ListenerState.CONNECTING)
            # Read before the checkpoint, so a failure after this point
            # always shows up as a newer generation.
            generation = self.generation
            try:
                from_block = self._engine.resume_block(self.source)
                with self._subscribe(from_block) as subscription:
                    self._set_state(ListenerState.LISTENING)
                    if self._failures:
                        self._engine.mark_connected(self.source)
                        self._failures = 0
                    logger.info(f"{self.source.value} listener subscribed from block {from_block}")
                    self._pump(subscription, generation)
            except Exception as e:
                self._failures += 1
                self._set_state(ListenerState.DISCONNECTED)
                logger.warning(
                    f"{self.source.value} subscription failed "
                    f"({self._failures} in a row): {e}"
                )
                self._engine.mark_connection_failure(self.source, self._failures, str(e))
                self._stop_event.wait(timeout=self._backoff())
                continue

            if self.generation != generation:
                # Consumer hit an error; restart from the checkpoint.
                self._set_state(ListenerState.DISCONNECTED)
                self._drain()
                self._stop_event.wait(timeout=self._config.backoff_seconds)

        self._set_state(ListenerState.STOPPED)

    def _pump(self, subscription: EventSubscription, generation: int) -> None:
        while not self._stop_event.is_set() and self.generation == generation:
            event = subscription.next_event(timeout=self._config.poll_seconds)
            if event is None:
                continue
            while not self._stop_event.is_set() and self.generation == generation:
                try:
                    self._queue.put((generation, event), timeout=self._config.poll_seconds)
                    break
                except queue.Full:
                    continue

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    # ----------------------------------------------------------------
    # Consumer
    # ----------------------------------------------------------------

    def _take(self) -> Optional[Tuple[int, RawLedgerEvent]]:
        try:
            return self._queue.get(timeout=self._config.poll_seconds)
        except queue.Empty:
            return None

    def _consume(self) -> None:
        while True:
            item = self._take()
            if item is None:
                if self._stop_event.is_set():
                    return
                continue

            generation, event = item
            if generation != self.generation:
                # Queued ahead of a failure; the next subscription replays it.
                continue

            try:
                self._engine.process_event(event)
            except Exception as e:
                logger.exception(
                    f"Could not process {event.event_name} {event.tx_ref} "
                    f"from {self.source.value}: {e}"
                )
                self._invalidate(generation)


# ============================================================
# ENGINE
# ============================================================

class EventSyncEngine:
    """
    Owns the event log and the checkpoints.

    Usage:
        engine = EventSyncEngine(store, ledger_a, ledger_b)
        engine.start()         # background listeners (if enabled)
        engine.catch_up()      # or process what is available, synchronously
        engine.stop()
    """

    listener_class = LedgerListener

    def __init__(
        self,
        store: VerificationStore,
        ledger_a: LedgerAClient,
        ledger_b: LedgerBClient,
        projections: Optional[ProjectionService] = None,
        config: Optional[SyncConfig] = None,
    ):
        self._store = store
        self._projections = projections or ProjectionService(store)
        self._config = config or SyncConfig.from_env()

        ledger_b_events = sorted(SOURCE_EVENTS[LedgerSource.LEDGER_B], key=lambda n: n.value)
        self._subscribers: dict[LedgerSource, Callable[[int], EventSubscription]] = {
            LedgerSource.LEDGER_A: ledger_a.subscribe,
            LedgerSource.LEDGER_B: lambda block: ledger_b.subscribe(block, event_names=ledger_b_events),
        }
        self._listeners = {
            source: self.listener_class(self, source, subscribe, self._config)
            for source, subscribe in self._subscribers.items()
        }

    @property
    def config(self) -> SyncConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return any(listener.is_running for listener in self._listeners.values())

    def listener(self, source: LedgerSource) -> LedgerListener:
        return self._listeners[LedgerSource(source)]

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def start(self) -> None:
        """Start both listeners."""
        if not self._config.enabled:
            logger.info("Event sync disabled (set DOCVERIFY_SYNC_ENABLED=1 to enable)")
            return

        for listener in self._listeners.values():
            listener.start()

        logger.info(
            f"Event sync started (queue_size={self._config.queue_size}, "
            f"poll={self._config.poll_seconds}s)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop both listeners. Queued events are processed before the consumers exit."""
        if not self.is_running:
            return
        for listener in self._listeners.values():
            listener.stop(timeout=timeout)
        logger.info("Event sync stopped")

    # ================================================================
    # CHECKPOINTS
    # ================================================================

    def resume_block(self, source: LedgerSource) -> int:
        """
        Block to subscribe from.

        Inclusive: the checkpoint block is read again, since a block may
        hold events after the last one processed. Replays are idempotent.
        """
        checkpoint = self._store.get_checkpoint(source)
        if checkpoint is None:
            return self._config.start_block
        return max(checkpoint.last_synced_block, self._config.start_block)

    def mark_connection_failure(self, source: LedgerSource, failures: int, message: str) -> None:
        status = (
            CheckpointStatus.ERROR
            if failures >= self._config.error_threshold
            else CheckpointStatus.DEGRADED
        )
        try:
            self._store.set_checkpoint_status(source, status, message)
        except Exception as e:
            logger.error(f"Could not record {source.value} sync status {status.value}: {e}")

    def mark_connected(self, source: LedgerSource) -> None:
        self._store.set_checkpoint_status(source, CheckpointStatus.ACTIVE)
        logger.info(f"{source.value} listener reconnected")

    # ================================================================
    # EVENT PROCESSING
    # ================================================================

    def process_event(self, event: RawLedgerEvent) -> ProcessOutcome:
        """
        Append, dispatch and checkpoint one delivered event.

        Raises:
            StoreError: The cache is unreachable. Nothing was checkpointed,
                so the event will be delivered again.
        """
        metrics = get_metrics()

        try:
            payload = event.parse_payload()
        except MalformedEventError as e:
            logger.warning(f"Skipping malformed event from {event.source.value} at block {event.block}: {e}")
            self._store.advance_checkpoint(event.source, event.block)
            metrics.record_event(ProcessOutcome.SKIPPED.value)
            return ProcessOutcome.SKIPPED

        entry, created = self._store.append_event(
            event.source,
            EventName(payload.event_name),
            event.tx_ref,
            event.block,
            payload.model_dump(mode="json"),
        )

        if not created and entry.processed:
            logger.debug(f"Duplicate delivery of {payload.event_name} {event.tx_ref}")
            self._store.advance_checkpoint(event.source, event.block)
            metrics.record_event(ProcessOutcome.DUPLICATE.value)
            return ProcessOutcome.DUPLICATE

        try:
            self._projections.apply(event, payload)
        except Exception as e:
            logger.exception(f"Projection failed for {payload.event_name} {event.tx_ref}: {e}")
            # The entry stays unprocessed; reprocess_unprocessed() picks it up.
            self._store.set_checkpoint_status(
                event.source,
                CheckpointStatus.DEGRADED,
                f"{payload.event_name} {event.tx_ref}: {e}",
            )
            self._store.advance_checkpoint(event.source, event.block)
            metrics.record_event(ProcessOutcome.FAILED.value)
            return ProcessOutcome.FAILED

        self._store.mark_event_processed(entry.entry_id)
        self._store.advance_checkpoint(event.source, event.block)
        metrics.record_event(ProcessOutcome.APPENDED.value)
        return ProcessOutcome.APPENDED

    def catch_up(
        self,
        sources: Optional[Iterable[LedgerSource]] = None,
        timeout: float = 0.0,
    ) -> dict[str, dict[str, int]]:
        """
        Synchronously process everything currently available, from the checkpoints.

        Returns:
            Outcome counts per source
        """
        summary: dict[str, dict[str, int]] = {}
        for source in (sources or self._subscribers):
            source = LedgerSource(source)
            counts = {outcome.value: 0 for outcome in ProcessOutcome}
            with self._subscribers[source](self.resume_block(source)) as subscription:
                while True:
                    event = subscription.next_event(timeout=timeout)
                    if event is None:
                        break
                    counts[self.process_event(event).value] += 1
            summary[source.value] = counts
        return summary

    def reprocess_unprocessed(self) -> dict[str, int]:
        """
        Re-apply projections for log entries whose handler failed.

        Sources with nothing left unprocessed go back to active.
        """
        summary = {"processed": 0, "failed": 0}

        for entry in iter_unprocessed(self._store, LedgerSource):
            raw = entry.to_raw()
            try:
                payload = raw.parse_payload()
                self._projections.apply(raw, payload)
            except Exception as e:
                logger.error(f"Reprocessing {entry.event_name.value} {entry.tx_ref} failed: {e}")
                summary["failed"] += 1
                continue
            self._store.mark_event_processed(entry.entry_id)
            summary["processed"] += 1

        for source in LedgerSource:
            listener = self._listeners[source]
            checkpoint = self._store.get_checkpoint(source)
            if (
                checkpoint is not None
                and checkpoint.status == CheckpointStatus.DEGRADED
                and not self._store.list_events(source=source, processed=False, limit=1)
                and not (listener.is_running and listener.state == ListenerState.DISCONNECTED)
            ):
                self._store.set_checkpoint_status(source, CheckpointStatus.ACTIVE)

        logger.info(f"Reprocessed {summary['processed']} events ({summary['failed']} still failing)")
        return summary

    # ================================================================
    # STATUS
    # ================================================================

    def get_sync_status(self) -> dict[str, Any]:
        sources = {}
        for source, listener in self._listeners.items():
            checkpoint = self._store.get_checkpoint(source)
            sources[source.value] = {
                "state": listener.state.value,
                "queue_depth": listener.queue_depth,
                "last_synced_block": checkpoint.last_synced_block if checkpoint else None,
                "last_synced_at": (
                    checkpoint.last_synced_at.isoformat()
                    if checkpoint and checkpoint.last_synced_at else None
                ),
                "checkpoint_status": checkpoint.status.value if checkpoint else None,
                "error_message": checkpoint.error_message if checkpoint else None,
                "unprocessed": len(self._store.list_events(source=source, processed=False)),
            }
        return {
            "enabled": self._config.enabled,
            "running": self.is_running,
            "sources": sources,
        }
