"""
Event Monitor

Keeps the read cache coherent with the ledger and fans contract events
out to subscribers.

For every event, in order:
1. Drop duplicates (same tx hash + log index)
2. Invalidate the cache namespaces the event touches
3. Offer it to the TransactionManager for reconciliation
4. Deliver it to every subscription that asked for its kind

Delivery modes:
- subscription: streamed from the gateway; on a dropped channel the
  monitor resubscribes with exponential backoff, resuming from the last
  block it saw
- polling: used when the gateway has no event channel, or after
  event_resubscribe_attempts consecutive failures. The full snapshot is
  re-read every event_polling_interval seconds and diffed against the
  previous one; differences become synthetic events.
"""

import asyncio
import inspect
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..config import ClientConfig
from ..gateway.base import LedgerGateway, LedgerGatewayError, RawEvent
from ..gateway.decoding import DecodeError, decode_event
from ..observability import MetricsCollector, get_logger
from ..schemas import ElectionSnapshot, EventKind, LedgerEventRecord
from .cache import CANDIDATE, ELECTION, VOTER, ReadCache
from .errors import LedgerReadError
from .phase import Phase, phase_of

logger = get_logger(__name__)

_LIFECYCLE = (ELECTION, CANDIDATE, VOTER)

EVENT_INVALIDATIONS: dict[EventKind, tuple[str, ...]] = {
    EventKind.VOTE_CAST: (ELECTION, CANDIDATE, VOTER),
    EventKind.VOTER_REGISTERED: (VOTER, ELECTION),
    EventKind.CANDIDATE_ADDED: (CANDIDATE, ELECTION),
    EventKind.ELECTION_STARTED: _LIFECYCLE,
    EventKind.ELECTION_ENDED: _LIFECYCLE,
}

MODE_IDLE = "idle"
MODE_SUBSCRIPTION = "subscription"
MODE_POLLING = "polling"

_SEEN_LIMIT = 10_000
_BUFFER_LIMIT = 1_000
_STOP = object()

EventCallback = Callable[[LedgerEventRecord], Any]


class Subscription:
    """
    Handle returned by EventMonitor.subscribe().

    Iterate it to receive records, or pass on_event to be called for
    each one (sync or async). stop() ends iteration and detaches it.
    """

    def __init__(self, monitor: "EventMonitor", kinds: Iterable[EventKind],
                 on_event: Optional[EventCallback] = None):
        self.kinds = frozenset(EventKind(k) for k in kinds)
        self._monitor = monitor
        self._on_event = on_event
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=_BUFFER_LIMIT)
        self._stopped = False

    @property
    def active(self) -> bool:
        return not self._stopped

    def __aiter__(self):
        return self

    async def __anext__(self) -> LedgerEventRecord:
        if self._stopped and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _STOP:
            raise StopAsyncIteration
        return item

    async def deliver(self, record: LedgerEventRecord) -> None:
        if self._stopped or record.kind not in self.kinds:
            return

        if self._on_event is not None:
            try:
                result = self._on_event(record)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event callback failed", event=record.kind.value)

        if self._queue.full():
            self._queue.get_nowait()
            logger.warning("Subscription buffer full, dropping oldest event")
        self._queue.put_nowait(record)

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_STOP)
        self._monitor.detach(self)


class EventMonitor:
    """
    Args:
        gateway: Ledger gateway (event channel and past events)
        cache: Read cache to invalidate
        reader: ElectionReader, used for snapshots in polling mode
        tx_manager: Optional TransactionManager to reconcile
        config: Backoff and polling tuning
        metrics: Optional metrics sink
        sleep: Awaitable sleep, injectable for tests
        wall_clock: Unix seconds, for phase changes seen while polling
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        cache: ReadCache,
        reader=None,
        tx_manager=None,
        config: Optional[ClientConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._gateway = gateway
        self._cache = cache
        self._reader = reader
        self._tx_manager = tx_manager
        self._config = config or ClientConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._wall_clock = wall_clock

        self._subscriptions: list[Subscription] = []
        self._task: Optional[asyncio.Task] = None
        self._mode = MODE_IDLE
        self._stopping = False
        self._last_block: Optional[int] = None
        self._last_snapshot: Optional[ElectionSnapshot] = None
        self._last_phase: Optional[Phase] = None
        self._seen: set = set()
        self._seen_order: deque = deque()
        self._recent: deque = deque(maxlen=self._config.history_limit)

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def recent_events(self) -> list[LedgerEventRecord]:
        return list(self._recent)

    def subscribe(
        self,
        kinds: Optional[Iterable[EventKind]] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Subscription:
        """Must be called from a running event loop; starts the monitor if needed."""
        subscription = Subscription(self, kinds or EventKind.all(), on_event)
        self._subscriptions.append(subscription)
        self.start()
        return subscription

    def detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Cancel the pump and end every subscription."""
        self._stopping = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for subscription in list(self._subscriptions):
            subscription.stop()
        self._mode = MODE_IDLE
        logger.info("Event monitor stopped")

    async def get_event_history(
        self,
        kind: EventKind,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> list[LedgerEventRecord]:
        """Past events of one kind, decoded. Malformed entries are skipped."""
        raw_events = await self._gateway.get_past_events(EventKind(kind), from_block, to_block)
        records = []
        for raw in raw_events:
            try:
                records.append(decode_event(raw))
            except DecodeError as e:
                logger.warning("Skipping undecodable past event", error=str(e))
        return records

    async def process(self, raw: RawEvent) -> Optional[LedgerEventRecord]:
        """Decode and dispatch one raw event. Returns None if dropped."""
        try:
            record = decode_event(raw)
        except DecodeError as e:
            logger.warning("Dropping undecodable event", error=str(e))
            return None

        key = record.dedup_key
        if key is not None:
            if key in self._seen:
                if self._metrics is not None:
                    self._metrics.events_duplicated += 1
                logger.debug("Duplicate event suppressed", event=record.kind.value, tx_hash=record.tx_hash)
                return None
            self._remember(key)

        if record.block_number is not None:
            self._last_block = max(self._last_block or 0, record.block_number)

        await self.dispatch(record)
        return record

    async def dispatch(self, record: LedgerEventRecord) -> None:
        if self._metrics is not None:
            self._metrics.events_received += 1
        self._recent.append(record)

        namespaces = EVENT_INVALIDATIONS.get(record.kind, _LIFECYCLE)
        self._cache.invalidate_many(namespaces)

        if self._tx_manager is not None:
            self._tx_manager.reconcile(record)

        for subscription in list(self._subscriptions):
            await subscription.deliver(record)

    # ----------------------------------------------------------------
    # Pump
    # ----------------------------------------------------------------

    async def _run(self) -> None:
        if self._gateway.supports_subscriptions:
            await self._stream_with_backoff()
        if not self._stopping:
            await self._poll()

    async def _stream_with_backoff(self) -> None:
        failures = 0
        limit = self._config.event_resubscribe_attempts

        while not self._stopping:
            self._mode = MODE_SUBSCRIPTION
            try:
                async for raw in self._gateway.stream_events(EventKind.all(), from_block=self._last_block):
                    failures = 0
                    await self.process(raw)
                raise LedgerGatewayError("Event stream ended")
            except LedgerGatewayError as e:
                failures += 1
                if failures >= limit:
                    logger.warning(
                        "Event channel unavailable, falling back to polling",
                        failures=failures,
                        error=str(e),
                    )
                    return
                delay = min(
                    self._config.retry_delay * 2 ** (failures - 1),
                    self._config.max_resubscribe_delay,
                )
                if self._metrics is not None:
                    self._metrics.resubscriptions += 1
                logger.warning("Event channel dropped, resubscribing", attempt=failures, delay=delay)
                await self._sleep(delay)

    async def _poll(self) -> None:
        if self._reader is None:
            logger.error("Polling fallback needs a reader; event delivery stopped")
            self._mode = MODE_IDLE
            return

        self._mode = MODE_POLLING
        logger.info("Event monitor polling", interval=self._config.event_polling_interval)
        while not self._stopping:
            try:
                snapshot = await self._reader.get_snapshot(use_cache=False)
            except LedgerReadError as e:
                logger.warning("Polling snapshot failed", error=str(e))
            else:
                if self._last_snapshot is not None:
                    for record in self.diff(self._last_snapshot, snapshot, self._last_phase):
                        await self.dispatch(record)
                self._last_snapshot = snapshot
                self._last_phase = phase_of(snapshot.election, self._wall_clock())
            await self._sleep(self._config.event_polling_interval)

    def diff(
        self,
        previous: ElectionSnapshot,
        current: ElectionSnapshot,
        previous_phase: Optional[Phase] = None,
    ) -> list[LedgerEventRecord]:
        """Synthetic events explaining how `current` differs from `previous`."""
        received_at = datetime.now(timezone.utc)
        records: list[LedgerEventRecord] = []

        def synthetic(kind: EventKind, **fields) -> None:
            records.append(LedgerEventRecord(
                kind=kind, fields=fields, received_at=received_at, synthetic=True,
            ))

        reopened = (
            previous.election is not None and previous.election.is_finalized
            and current.election is not None and not current.election.is_finalized
        )
        if reopened or _election_key(previous) != _election_key(current):
            synthetic(EventKind.ELECTION_STARTED if current.election else EventKind.ELECTION_ENDED,
                      reason="election changed")
            return records

        known = {c.id: c for c in previous.candidates}
        for candidate in current.candidates:
            before = known.get(candidate.id)
            if before is None:
                synthetic(EventKind.CANDIDATE_ADDED, candidateID=candidate.id,
                          name=candidate.name, party=candidate.party)
            elif candidate.vote_count > before.vote_count:
                synthetic(EventKind.VOTE_CAST, candidateID=candidate.id,
                          votes=candidate.vote_count - before.vote_count)

        registered_before = previous.statistics.total_registered_voters
        registered_now = current.statistics.total_registered_voters
        if registered_now > registered_before:
            synthetic(EventKind.VOTER_REGISTERED, totalVoters=registered_now,
                      newVoters=registered_now - registered_before)

        now = self._wall_clock()
        phase_now = phase_of(current.election, now)
        phase_before = previous_phase if previous_phase is not None else phase_of(previous.election, now)
        if phase_before < Phase.VOTING <= phase_now:
            synthetic(EventKind.ELECTION_STARTED)
        if phase_before <= Phase.VOTING < phase_now:
            synthetic(EventKind.ELECTION_ENDED)
        return records

    def _remember(self, key: tuple) -> None:
        self._seen.add(key)
        self._seen_order.append(key)
        if len(self._seen_order) > _SEEN_LIMIT:
            self._seen.discard(self._seen_order.popleft())


def _election_key(snapshot: ElectionSnapshot) -> Optional[tuple]:
    e = snapshot.election
    if e is None:
        return None
    return (e.title, e.description)
