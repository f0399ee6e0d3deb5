#!/usr/bin/env python3
"""
Watchlist Poller

One ContractPoller thread per watched contract. Each poller has its own queue
subscribed to the shared BlockBroadcaster and, for every block B, runs one
cycle over [B - overlap, B]:

    Idle -> Polling -> Classifying -> Valuing -> Notifying -> Idle

Cycles of one contract never overlap; different contracts run in parallel. A
failed log fetch skips the cycle. Any other error in a cycle is logged and the
poller moves on to the next block, so one contract can never stall another.
"""

import logging
import queue
import threading
from typing import Any, Dict, List, Optional

from chain_client import BlockBroadcaster, TransientNetworkError
from dedup_store import DedupStore
from event_classifier import EventClassifier, ClassifiedEvent, MINT, SALE
from notification_builder import NotificationBuilder
from notification_sink import Notification, NotificationSink
from watchlist_store import WatchEntry, WatchlistStore

logger = logging.getLogger(__name__)

IDLE = "idle"
POLLING = "polling"
CLASSIFYING = "classifying"
VALUING = "valuing"
NOTIFYING = "notifying"
STOPPED = "stopped"

QUEUE_WAIT_SECONDS = 0.5


class ContractPoller:
    def __init__(self, entry: WatchEntry, classifier: EventClassifier, builder: NotificationBuilder,
                 sink: NotificationSink, dedup: DedupStore, broadcaster: BlockBroadcaster,
                 overlap_blocks: int = 1):
        self._entry = entry
        self._entry_lock = threading.Lock()
        self.classifier = classifier
        self.builder = builder
        self.sink = sink
        self.dedup = dedup
        self.broadcaster = broadcaster
        self.overlap_blocks = max(0, overlap_blocks)

        self.state = IDLE
        self.last_block: Optional[int] = None
        self.notifications_sent = 0
        self.skipped_cycles = 0

        self._block_queue: Optional[queue.Queue] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def entry(self) -> WatchEntry:
        with self._entry_lock:
            return self._entry

    @property
    def name(self) -> str:
        return self.entry.name

    def update_entry(self, entry: WatchEntry):
        """Swap in new destinations/price; takes effect from the next cycle"""
        with self._entry_lock:
            self._entry = entry

    def start(self):
        self._block_queue = self.broadcaster.subscribe()
        self._thread = threading.Thread(target=self._run, name=f"poller-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Watching {self.name} at {self.entry.contract_address}")

    def stop(self):
        """Unsubscribe; an in-flight cycle finishes, no new one starts"""
        self._stop_event.set()
        if self._block_queue is not None:
            self.broadcaster.unsubscribe(self._block_queue)

    def join(self, timeout: Optional[float] = None):
        if self._thread:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self._stop_event.is_set():
            try:
                block_number = self._block_queue.get(timeout=QUEUE_WAIT_SECONDS)
            except queue.Empty:
                continue
            if self._stop_event.is_set():
                break
            try:
                self.process_block(block_number)
            except Exception:
                logger.exception(f"{self.name}: cycle for block {block_number} failed")
                self.state = IDLE

        self.state = STOPPED
        # shutdown checkpoint, in addition to the block-cadence flushes
        self.dedup.flush(self.name)
        logger.info(f"Stopped watching {self.name}")

    def process_block(self, block_number: int) -> List[Notification]:
        """Run one full cycle for block_number; returns the notifications sent"""
        entry = self.entry
        from_block = max(block_number - self.overlap_blocks, 0)
        notifications: List[Notification] = []

        self.state = POLLING
        try:
            logs = self.classifier.fetch_transfer_logs(entry.contract_address, from_block, block_number)
        except TransientNetworkError as e:
            self.skipped_cycles += 1
            logger.debug(f"{entry.name}: skipping block {block_number}: {e}")
        else:
            if logs:
                self.state = CLASSIFYING
                events = self.classifier.classify(entry.name, logs)
                if events:
                    notifications = self._value_and_notify(entry, events)

        self.dedup.flush_if_due(entry.name, block_number)
        self.last_block = block_number
        self.state = IDLE
        return notifications

    def _value_and_notify(self, entry: WatchEntry, events: List[ClassifiedEvent]) -> List[Notification]:
        mints = [event for event in events if event.kind == MINT]
        sales = [event for event in events if event.kind == SALE]
        logger.info(f"{entry.name}: {len(mints)} new mints, {len(sales)} new transfers")

        self.state = VALUING
        notifications: List[Notification] = []
        mint_batch = self.builder.build_mint_batch(entry, mints)
        if mint_batch is not None:
            notifications.append(mint_batch)
        for sale in sales:
            payload = self.builder.build_sale(entry, sale)
            if payload is not None:
                notifications.append(payload)

        self.state = NOTIFYING
        for payload in notifications:
            try:
                delivered = self.sink.deliver(entry.destination_ids, payload)
            except Exception:
                logger.exception(f"{entry.name}: delivering {payload.kind} notification failed")
                continue
            if delivered:
                self.notifications_sent += 1
        return notifications

    def status(self) -> Dict[str, Any]:
        minted, sold = self.dedup.counts(self.name)
        return {
            "name": self.name,
            "contract_address": self.entry.contract_address,
            "state": self.state,
            "last_block": self.last_block,
            "minted_seen": minted,
            "sold_seen": sold,
            "notifications_sent": self.notifications_sent,
            "skipped_cycles": self.skipped_cycles,
            "destinations": len(self.entry.destination_ids),
        }


class WatchlistPoller:
    """Owns the per-contract pollers and the block broadcaster"""

    def __init__(self, broadcaster: BlockBroadcaster, classifier: EventClassifier,
                 builder: NotificationBuilder, sink: NotificationSink, dedup: DedupStore,
                 overlap_blocks: int = 1):
        self.broadcaster = broadcaster
        self.classifier = classifier
        self.builder = builder
        self.sink = sink
        self.dedup = dedup
        self.overlap_blocks = overlap_blocks
        self._pollers: Dict[str, ContractPoller] = {}
        self._lock = threading.Lock()

    def load(self, store: WatchlistStore) -> int:
        entries = store.list_all()
        for entry in entries:
            self.start_watching(entry)
        return len(entries)

    def start_watching(self, entry: WatchEntry) -> ContractPoller:
        with self._lock:
            poller = self._pollers.get(entry.name)
            if poller is not None:
                poller.update_entry(entry)
                return poller
            poller = ContractPoller(
                entry, self.classifier, self.builder, self.sink, self.dedup,
                self.broadcaster, self.overlap_blocks,
            )
            self._pollers[entry.name] = poller
        poller.start()
        return poller

    def update_entry(self, entry: WatchEntry) -> ContractPoller:
        return self.start_watching(entry)

    def stop_watching(self, name: str) -> bool:
        with self._lock:
            poller = self._pollers.pop(name, None)
        if poller is None:
            return False
        poller.stop()
        return True

    def watched_names(self) -> List[str]:
        with self._lock:
            return list(self._pollers)

    def start(self):
        self.broadcaster.start()

    def stop(self, timeout: float = 10.0):
        with self._lock:
            pollers = list(self._pollers.values())
            self._pollers.clear()
        for poller in pollers:
            poller.stop()
        self.broadcaster.stop(timeout)
        for poller in pollers:
            poller.join(timeout)

    def status(self) -> List[Dict[str, Any]]:
        with self._lock:
            pollers = list(self._pollers.values())
        return [poller.status() for poller in pollers]
