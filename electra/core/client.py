"""
Election Client

Facade that wires the gateway, cache, reader, transaction manager,
event monitor, phase tracker and integrity validator together.

Usage:
    async with ElectionClient(gateway) as client:
        phase = await client.get_phase()
        await client.vote(1, from_address=voter)

Writes are validated locally first; a ValidationError never reaches
the ledger. Permissions reported here are UX hints only.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..config import ClientConfig
from ..gateway.base import LedgerGateway, LedgerGatewayError
from ..gateway.decoding import DecodeError
from ..observability import MetricsCollector, get_logger
from ..schemas import (
    AuditExport,
    Candidate,
    ElectionInfo,
    ElectionSnapshot,
    ElectionStatistics,
    EventKind,
    IntegrityReport,
    LedgerEventRecord,
    PendingTransaction,
    SimulationResult,
    TransactionHistoryEntry,
    TransactionResult,
    UserRole,
    Voter,
    VoteRecord,
    WinnerInfo,
)
from .cache import ReadCache
from .events import EventCallback, EventMonitor, Subscription
from .integrity import IntegrityValidator
from .phase import Permissions, Phase, PhaseTracker, derive_permissions, time_info
from .reader import ElectionReader
from .transactions import TransactionManager
from .validation import (
    validate_address,
    validate_candidate_id,
    validate_candidate_name,
    validate_description,
    validate_election_timing,
    validate_manifesto,
    validate_party,
    validate_role,
    validate_title,
)

logger = get_logger(__name__)


class ElectionClient:
    """
    Args:
        gateway: Ledger gateway implementation
        config: Client tuning (defaults to ClientConfig())
        metrics: Metrics sink shared by every component
        clock: Wall clock in unix seconds, for phases and timing checks
        monotonic: Clock for cache TTLs and confirmation latency
        sleep: Awaitable sleep used for retries, backoff and polling
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        config: Optional[ClientConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or ClientConfig()
        self.gateway = gateway
        self.metrics = metrics or MetricsCollector()
        self._clock = clock

        self.cache = ReadCache(ttl=self.config.cache_ttl, clock=monotonic, metrics=self.metrics)
        self.reader = ElectionReader(gateway, self.cache, self.config, self.metrics)
        self.transactions = TransactionManager(
            gateway, self.cache, self.config, self.metrics, sleep=sleep, clock=monotonic,
        )
        self.monitor = EventMonitor(
            gateway,
            self.cache,
            reader=self.reader,
            tx_manager=self.transactions,
            config=self.config,
            metrics=self.metrics,
            sleep=sleep,
            wall_clock=clock,
        )
        self.validator = IntegrityValidator()
        self.phase_tracker = PhaseTracker()

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    async def start(self, watch_events: bool = True) -> "ElectionClient":
        if watch_events:
            self.monitor.start()
        logger.info("Election client started", watch_events=watch_events)
        return self

    async def close(self) -> None:
        await self.monitor.stop()
        await self.gateway.close()
        logger.info("Election client closed")

    async def __aenter__(self) -> "ElectionClient":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    async def get_election_info(self, use_cache: bool = True) -> Optional[ElectionInfo]:
        return await self.reader.get_election_info(use_cache)

    async def get_candidates(self, use_cache: bool = True) -> list[Candidate]:
        return await self.reader.get_all_candidates(use_cache)

    async def get_voter(self, address: str, use_cache: bool = True) -> Voter:
        return await self.reader.get_voter_info(validate_address(address), use_cache)

    async def get_user_role(self, address: str, use_cache: bool = True) -> UserRole:
        return await self.reader.get_user_role(validate_address(address), use_cache)

    async def get_winner(self, use_cache: bool = True) -> WinnerInfo:
        return await self.reader.get_current_winner(use_cache)

    async def get_statistics(self, use_cache: bool = True) -> ElectionStatistics:
        return await self.reader.get_election_statistics(use_cache)

    async def get_snapshot(self, use_cache: bool = True) -> ElectionSnapshot:
        return await self.reader.get_snapshot(use_cache)

    async def get_vote_record(self, record_id: int) -> VoteRecord:
        return await self.reader.get_vote_record(record_id)

    async def verify_vote(self, address: str, verification_hash: str) -> bool:
        return await self.reader.verify_vote(validate_address(address), verification_hash)

    # ----------------------------------------------------------------
    # Derived state
    # ----------------------------------------------------------------

    async def get_phase(self, use_cache: bool = True) -> Phase:
        info = await self.reader.get_election_info(use_cache)
        return self.phase_tracker.observe(info, self._clock())

    async def get_permissions(self, address: str, use_cache: bool = True) -> Permissions:
        address = validate_address(address)
        info, voter, role = await asyncio.gather(
            self.reader.get_election_info(use_cache),
            self.reader.get_voter_info(address, use_cache),
            self.reader.get_user_role(address, use_cache),
        )
        phase = self.phase_tracker.observe(info, self._clock())
        return derive_permissions(voter, role, phase, info)

    async def get_time_info(self) -> dict:
        info = await self.reader.get_election_info()
        return time_info(info, self._clock())

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    async def _execute(self, method: str, params: list, from_address: str,
                       options: Optional[dict] = None) -> TransactionResult:
        sender = validate_address(from_address, field="from_address")
        return await self.transactions.execute(method, params, sender, options)

    async def create_election(
        self,
        title: str,
        description: str,
        registration_deadline: int,
        start_time: int,
        end_time: int,
        from_address: str,
        options: Optional[dict] = None,
    ) -> TransactionResult:
        title = validate_title(title)
        description = validate_description(description)
        validate_election_timing(registration_deadline, start_time, end_time, self._clock())
        return await self._execute(
            "createElection",
            [title, description, int(registration_deadline), int(start_time), int(end_time)],
            from_address,
            options,
        )

    async def add_candidate(self, name: str, party: str, manifesto: str,
                            from_address: str, options: Optional[dict] = None) -> TransactionResult:
        params = [validate_candidate_name(name), validate_party(party), validate_manifesto(manifesto)]
        return await self._execute("addCandidate", params, from_address, options)

    async def deactivate_candidate(self, candidate_id: int, from_address: str,
                                   options: Optional[dict] = None) -> TransactionResult:
        return await self._execute(
            "deactivateCandidate", [validate_candidate_id(candidate_id)], from_address, options,
        )

    async def register_voter(self, voter_address: str, from_address: str,
                             options: Optional[dict] = None) -> TransactionResult:
        voter = validate_address(voter_address, field="voter_address")
        return await self._execute("registerVoter", [voter], from_address, options)

    async def self_register(self, from_address: str, options: Optional[dict] = None) -> TransactionResult:
        return await self._execute("selfRegister", [], from_address, options)

    async def vote(self, candidate_id: int, from_address: str,
                   options: Optional[dict] = None) -> TransactionResult:
        return await self._execute("vote", [validate_candidate_id(candidate_id)], from_address, options)

    async def start_voting(self, from_address: str, options: Optional[dict] = None) -> TransactionResult:
        return await self._execute("startVoting", [], from_address, options)

    async def end_voting(self, from_address: str, options: Optional[dict] = None) -> TransactionResult:
        return await self._execute("endVoting", [], from_address, options)

    async def finalize_election(self, from_address: str, options: Optional[dict] = None) -> TransactionResult:
        return await self._execute("finalizeElection", [], from_address, options)

    async def assign_role(self, user_address: str, role, from_address: str,
                          options: Optional[dict] = None) -> TransactionResult:
        user = validate_address(user_address, field="user_address")
        return await self._execute("assignRole", [user, int(validate_role(role))], from_address, options)

    async def revoke_role(self, user_address: str, from_address: str,
                          options: Optional[dict] = None) -> TransactionResult:
        user = validate_address(user_address, field="user_address")
        return await self._execute("revokeRole", [user], from_address, options)

    async def simulate(self, method: str, params: list, from_address: str) -> SimulationResult:
        sender = validate_address(from_address, field="from_address")
        return await self.transactions.simulate(method, params, sender)

    def cancel_transaction(self, tx_id: str) -> bool:
        return self.transactions.cancel(tx_id)

    def get_transaction(self, tx_id: str) -> Optional[PendingTransaction]:
        return self.transactions.get_status(tx_id)

    def get_transaction_history(self, limit: int = 10) -> list[TransactionHistoryEntry]:
        return self.transactions.get_history(limit)

    # ----------------------------------------------------------------
    # Events
    # ----------------------------------------------------------------

    def subscribe(
        self,
        kinds: Optional[Iterable[EventKind]] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Subscription:
        return self.monitor.subscribe(kinds, on_event)

    async def get_event_history(
        self,
        kind: EventKind,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> list[LedgerEventRecord]:
        return await self.monitor.get_event_history(kind, from_block, to_block)

    # ----------------------------------------------------------------
    # Audit
    # ----------------------------------------------------------------

    async def validate_integrity(self) -> IntegrityReport:
        snapshot = await self.reader.get_snapshot(use_cache=False)
        return self.validator.validate(snapshot)

    async def export_audit(self, exported_by: Optional[str] = None) -> AuditExport:
        """
        Fresh snapshot plus every known contract event, fingerprinted.

        If past events cannot be fetched, the events observed by the
        monitor in this session are exported instead.
        """
        snapshot = await self.reader.get_snapshot(use_cache=False)
        try:
            events: list[LedgerEventRecord] = []
            for kind in EventKind.all():
                events.extend(await self.monitor.get_event_history(kind))
            events.sort(key=lambda e: (e.block_number or 0, e.log_index or 0))
        except (LedgerGatewayError, DecodeError) as e:
            logger.warning("Event history unavailable, exporting session events", error=str(e))
            events = self.monitor.recent_events
        return self.validator.export_audit(snapshot, events, exported_by)

    async def system_status(self) -> dict:
        try:
            block: Optional[int] = await self.gateway.block_number()
        except LedgerGatewayError as e:
            logger.warning("Block number unavailable", error=str(e))
            block = None
        phase = self.phase_tracker.current
        return {
            "block_number": block,
            "phase": phase.label if phase is not None else None,
            "cache": self.cache.stats(),
            "event_monitor": {
                "running": self.monitor.is_running,
                "mode": self.monitor.mode,
                "subscriptions": self.monitor.subscription_count,
            },
            "outstanding_transactions": len(self.transactions.outstanding()),
            "metrics": self.metrics.get_summary(),
        }
