"""
Cached Ledger Reads

Read path: cache hit → return; miss → gateway (decoded at the boundary)
→ cache → return.

Degradation: if the gateway or the decoder fails, the last valid value
is served when the cache kept one under stale-while-revalidate;
otherwise LedgerReadError is raised. A failed decode never writes to
the cache.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ..config import ClientConfig
from ..gateway.base import LedgerGateway, LedgerGatewayError
from ..gateway.decoding import DecodeError
from ..observability import MetricsCollector, get_logger
from ..schemas import (
    ZERO_ADDRESS,
    BatchReadResult,
    BatchReadStatus,
    Candidate,
    ElectionInfo,
    ElectionSnapshot,
    ElectionStatistics,
    Role,
    UserRole,
    Voter,
    VoteRecord,
    WinnerInfo,
)
from .cache import CANDIDATE, ELECTION, ROLE, VOTER, ReadCache, cache_key
from .errors import LedgerReadError

logger = get_logger(__name__)

# Sentinel stored in the cache for "no election exists"
_NO_ELECTION = "__no_election__"

KEY_ELECTION_INFO = cache_key(ELECTION, "info")
KEY_STATISTICS = cache_key(ELECTION, "statistics")
KEY_WINNER = cache_key(ELECTION, "winner")
KEY_CANDIDATES = cache_key(CANDIDATE, "all")


def voter_key(address: str) -> str:
    return cache_key(VOTER, address.lower())


def role_key(address: str) -> str:
    return cache_key(ROLE, address.lower())


class ElectionReader:
    """Cached, typed reads over a LedgerGateway."""

    def __init__(
        self,
        gateway: LedgerGateway,
        cache: ReadCache,
        config: Optional[ClientConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._gateway = gateway
        self._cache = cache
        self._config = config or ClientConfig()
        self._metrics = metrics
        self._batch_semaphore = asyncio.Semaphore(self._config.batch_size)

    @property
    def cache(self) -> ReadCache:
        return self._cache

    async def _cached(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        use_cache: bool = True,
    ) -> Any:
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        start = time.perf_counter()
        try:
            value = await fetch()
        except (LedgerGatewayError, DecodeError, asyncio.TimeoutError) as e:
            stale = self._cache.get_stale(key)
            if stale is not None:
                logger.warning("Serving stale value after read failure", key=key, error=str(e))
                return stale
            raise LedgerReadError(key, e) from e
        finally:
            if self._metrics is not None:
                self._metrics.record_read((time.perf_counter() - start) * 1000)

        self._cache.set(key, value, stale_while_revalidate=self._config.stale_while_revalidate)
        return value

    # ----------------------------------------------------------------
    # Single reads
    # ----------------------------------------------------------------

    async def get_election_info(self, use_cache: bool = True) -> Optional[ElectionInfo]:
        async def fetch():
            info = await self._gateway.get_election_info()
            return _NO_ELECTION if info is None else info

        value = await self._cached(KEY_ELECTION_INFO, fetch, use_cache)
        return None if value == _NO_ELECTION else value

    async def get_all_candidates(self, use_cache: bool = True) -> list[Candidate]:
        return await self._cached(KEY_CANDIDATES, self._gateway.get_all_candidates, use_cache)

    async def get_candidate(self, candidate_id: int, use_cache: bool = True) -> Optional[Candidate]:
        for candidate in await self.get_all_candidates(use_cache):
            if candidate.id == candidate_id:
                return candidate
        return None

    async def get_voter_info(self, address: str, use_cache: bool = True) -> Voter:
        return await self._cached(
            voter_key(address),
            lambda: self._gateway.get_voter_info(address),
            use_cache,
        )

    async def get_user_role(self, address: str, use_cache: bool = True) -> UserRole:
        """Role lookups never fail the caller: unknown means NONE."""
        try:
            return await self._cached(
                role_key(address),
                lambda: self._gateway.get_user_role(address),
                use_cache,
            )
        except LedgerReadError as e:
            logger.warning("Role lookup failed, assuming NONE", address=address, error=str(e.cause))
            return UserRole(address=address, role=Role.NONE, is_active=False,
                            assigned_at=0, assigned_by=ZERO_ADDRESS)

    async def get_current_winner(self, use_cache: bool = True) -> WinnerInfo:
        return await self._cached(KEY_WINNER, self._gateway.get_current_winner, use_cache)

    async def get_election_statistics(self, use_cache: bool = True) -> ElectionStatistics:
        return await self._cached(KEY_STATISTICS, self._gateway.get_election_statistics, use_cache)

    async def get_vote_record(self, record_id: int) -> VoteRecord:
        """Vote records are append-only, so they never need invalidation."""
        return await self._cached(
            cache_key("record", str(record_id)),
            lambda: self._gateway.get_vote_record(record_id),
        )

    async def verify_vote(self, address: str, verification_hash: str) -> bool:
        try:
            return await self._gateway.verify_vote(address, verification_hash)
        except (LedgerGatewayError, DecodeError) as e:
            raise LedgerReadError(f"verify:{address.lower()}", e) from e

    # ----------------------------------------------------------------
    # Batched reads
    # ----------------------------------------------------------------

    async def batch_get(self, requests: list[tuple[str, tuple]]) -> list[BatchReadResult]:
        """
        Run several reads concurrently, at most batch_size at a time.

        Args:
            requests: (method_name, args) pairs naming ElectionReader methods

        Failures are reported per entry; one bad read never sinks the batch.
        """
        async def run(method: str, args: tuple) -> BatchReadResult:
            async with self._batch_semaphore:
                try:
                    data = await getattr(self, method)(*args)
                    return BatchReadResult(method=method, status=BatchReadStatus.OK, data=data)
                except (LedgerReadError, LedgerGatewayError, DecodeError) as e:
                    return BatchReadResult(method=method, status=BatchReadStatus.FAILED, error=str(e))

        return list(await asyncio.gather(*(run(m, tuple(a)) for m, a in requests)))

    async def get_snapshot(self, use_cache: bool = True) -> ElectionSnapshot:
        """
        Batch-read everything the integrity validator needs.

        Raises LedgerReadError if any part is unavailable; a partial
        snapshot would produce false integrity issues.
        """
        info, candidates, statistics, winner = await asyncio.gather(
            self.get_election_info(use_cache),
            self.get_all_candidates(use_cache),
            self.get_election_statistics(use_cache),
            self.get_current_winner(use_cache),
        )
        return ElectionSnapshot(
            election=info,
            candidates=candidates,
            statistics=statistics,
            winner=winner,
            taken_at=datetime.now(timezone.utc),
        )
