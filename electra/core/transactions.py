"""
Transaction Manager

Orchestrates one write from intent to confirmation:

    estimate gas (× buffer) → price (capped) → nonce → send → confirm
    → invalidate cache → record history

Retry policy:
- UserRejected, InsufficientFunds, LedgerRevert: never retried
- GasEstimationFailed: falls back once to the method's default gas limit
- NonceConflict: cached nonce dropped, fresh nonce fetched, retried
- NetworkTimeout / transient: retried with retry_delay * 2**attempt, up
  to max_retries total attempts; exhausted timeouts become
  TransactionTimeout carrying the last known hash

Nonce acquisition and submission are serialized per account; waiting
for confirmation is not.

A confirmation timeout marks the entry TIMED_OUT and is NOT retried:
the write may still land. reconcile() settles it from a later event.
"""

import asyncio
import time
import uuid
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ..config import ClientConfig
from ..gateway.base import LedgerGateway, LedgerGatewayError, LedgerTimeoutError
from ..observability import MetricsCollector, account_var, get_logger, tx_id_var
from ..schemas import (
    EventKind,
    LedgerEventRecord,
    PendingTransaction,
    SimulationResult,
    TransactionHistoryEntry,
    TransactionResult,
    TX_TRANSITIONS,
    TxReceipt,
    TxRequest,
    TxStatus,
)
from .cache import CANDIDATE, ELECTION, NONCE, ROLE, VOTER, ReadCache, cache_key
from .errors import (
    ErrorKind,
    LedgerRevert,
    NetworkTimeout,
    NonceConflict,
    TransactionError,
    TransactionTimeout,
    UserRejected,
    classify_error,
    revert_message,
)

logger = get_logger(__name__)

# Conservative limits used when estimation fails
DEFAULT_GAS_LIMITS: dict[str, int] = {
    "createElection": 500_000,
    "addCandidate": 400_000,
    "deactivateCandidate": 200_000,
    "registerVoter": 200_000,
    "selfRegister": 200_000,
    "vote": 200_000,
    "startVoting": 200_000,
    "endVoting": 200_000,
    "finalizeElection": 300_000,
    "assignRole": 200_000,
    "revokeRole": 200_000,
}
FALLBACK_GAS_LIMIT = 300_000

_LIFECYCLE = (ELECTION, CANDIDATE, VOTER)

# Namespaces dropped after a confirmed write, by method
INVALIDATION_FAMILIES: dict[str, tuple[str, ...]] = {
    "vote": (ELECTION, VOTER, CANDIDATE),
    "registerVoter": (VOTER, ELECTION),
    "selfRegister": (VOTER, ELECTION),
    "addCandidate": (CANDIDATE, ELECTION),
    "deactivateCandidate": (CANDIDATE, ELECTION),
    "createElection": _LIFECYCLE,
    "startVoting": _LIFECYCLE,
    "endVoting": _LIFECYCLE,
    "finalizeElection": _LIFECYCLE,
    "assignRole": (ROLE,),
    "revokeRole": (ROLE,),
}

# Event kind → (methods that emit it, field naming the sender)
_EVENT_SOURCES: dict[EventKind, tuple[frozenset, Optional[str]]] = {
    EventKind.VOTE_CAST: (frozenset({"vote"}), "voter"),
    EventKind.VOTER_REGISTERED: (frozenset({"registerVoter", "selfRegister"}), None),
    EventKind.CANDIDATE_ADDED: (frozenset({"addCandidate"}), "addedBy"),
    EventKind.ELECTION_STARTED: (frozenset({"startVoting"}), None),
    EventKind.ELECTION_ENDED: (frozenset({"endVoting"}), None),
}


def new_tx_id() -> str:
    return f"tx_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionManager:
    """
    Write orchestration with per-account nonce serialization.

    Args:
        gateway: Ledger gateway
        cache: Shared read cache (also holds short-lived nonces)
        config: Retry, gas and timeout tuning
        metrics: Optional metrics sink
        sleep: Awaitable sleep, injectable for tests
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        cache: ReadCache,
        config: Optional[ClientConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._gateway = gateway
        self._cache = cache
        self._config = config or ClientConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock

        self._locks: dict[str, asyncio.Lock] = {}
        self._transactions: "OrderedDict[str, PendingTransaction]" = OrderedDict()
        self._history: deque = deque(maxlen=self._config.history_limit)
        self._inflight: set[str] = set()
        self._cancelled: set[str] = set()

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    async def execute(
        self,
        method: str,
        params: Optional[list] = None,
        from_address: str = "",
        options: Optional[dict] = None,
    ) -> TransactionResult:
        """
        Run one write to confirmation.

        Options:
            gas: explicit gas limit (skips estimation)
            value: wei to attach
            tx_id: caller-chosen id (lets cancel() target this call)
            confirmations: block depth to wait for (default from config)

        Raises:
            TransactionError subclass on any failure
        """
        options = options or {}
        params = list(params or [])
        tx_id = options.get("tx_id") or new_tx_id()
        now = _now()
        pending = PendingTransaction(
            id=tx_id,
            method=method,
            params=params,
            from_address=from_address,
            created_at=now,
            updated_at=now,
        )

        tx_token = tx_id_var.set(tx_id)
        account_token = account_var.set(from_address)
        self._inflight.add(tx_id)
        try:
            logger.info("Executing transaction", method=method)
            try:
                pending.gas_limit = options.get("gas") or await self._estimate(pending)
                pending.gas_price = await self._gas_price()
                await self._submit(pending, value=options.get("value", 0))
            except TransactionError as e:
                self._fail_unsent(pending, e)
                raise

            receipt = await self._confirm(pending, options.get("confirmations"))
            return TransactionResult(
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
                tx_id=tx_id,
            )
        finally:
            self._inflight.discard(tx_id)
            self._cancelled.discard(tx_id)
            tx_id_var.reset(tx_token)
            account_var.reset(account_token)

    async def simulate(self, method: str, params: Optional[list], from_address: str) -> SimulationResult:
        """Estimate gas only; nothing is sent."""
        params = list(params or [])
        request = TxRequest(method=method, params=params, from_address=from_address)
        try:
            estimate = await self._gateway.estimate_gas(request)
        except (LedgerGatewayError, asyncio.TimeoutError) as e:
            error = classify_error(e, stage="estimate",
                                   max_reason_length=self._config.revert_reason_max_length)
            return SimulationResult(success=False, method=method, params=params, error=error.message)

        return SimulationResult(
            success=True,
            method=method,
            params=params,
            gas_estimate=estimate,
            gas_estimate_with_buffer=int(estimate * self._config.gas_buffer_multiplier),
        )

    def cancel(self, tx_id: str) -> bool:
        """
        Stop retrying a write. A transaction already broadcast cannot be
        recalled; cancel only prevents further attempts.
        """
        known = tx_id in self._inflight or (
            tx_id in self._transactions and self._transactions[tx_id].is_outstanding
        )
        if known:
            self._cancelled.add(tx_id)
            logger.info("Transaction cancelled", tx=tx_id)
        return known

    def get_status(self, tx_id: str) -> Optional[PendingTransaction]:
        return self._transactions.get(tx_id)

    def get_history(self, limit: int = 10) -> list[TransactionHistoryEntry]:
        """Most recent first."""
        return list(reversed(self._history))[:limit]

    def outstanding(self) -> list[PendingTransaction]:
        return [tx for tx in self._transactions.values() if tx.is_outstanding]

    def reconcile(self, event: LedgerEventRecord) -> Optional[PendingTransaction]:
        """
        Settle an outstanding entry from an observed event.

        Matches by tx hash first; for events without a hash, falls back
        to the emitting method and sender address.
        """
        match = self._match_event(event)
        if match is None:
            return None

        was_timed_out = match.status == TxStatus.TIMED_OUT
        if not self._transition(match, TxStatus.CONFIRMED, block_number=event.block_number):
            return None

        logger.info("Transaction reconciled from event", tx=match.id, event=event.kind.value)
        # A write still inside execute() is counted by its own confirmation
        if was_timed_out:
            if self._metrics is not None:
                self._metrics.tx_confirmed += 1
            self._invalidate(match.method)
            self._append_history(match, success=True)
        return match

    # ----------------------------------------------------------------
    # Pipeline stages
    # ----------------------------------------------------------------

    async def _estimate(self, pending: PendingTransaction) -> int:
        request = TxRequest(
            method=pending.method,
            params=pending.params,
            from_address=pending.from_address,
        )
        try:
            estimate = await self._gateway.estimate_gas(request)
        except (LedgerGatewayError, asyncio.TimeoutError) as e:
            error = classify_error(e, stage="estimate",
                                   max_reason_length=self._config.revert_reason_max_length)
            if not error.retryable:
                raise error from e
            fallback = DEFAULT_GAS_LIMITS.get(pending.method, FALLBACK_GAS_LIMIT)
            logger.warning(
                "Gas estimation failed, using default limit",
                kind=error.kind.value,
                gas=fallback,
            )
            return fallback

        return int(estimate * self._config.gas_buffer_multiplier)

    async def _gas_price(self) -> int:
        ceiling = self._config.max_gas_price
        try:
            price = await self._gateway.gas_price()
        except (LedgerGatewayError, asyncio.TimeoutError) as e:
            logger.warning("Gas price unavailable, using ceiling", error=str(e), gas_price=ceiling)
            return ceiling
        return min(price, ceiling)

    def _lock_for(self, address: str) -> asyncio.Lock:
        key = address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _next_nonce(self, address: str) -> int:
        key = cache_key(NONCE, address.lower())
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        return await self._gateway.transaction_count(address)

    async def _submit(self, pending: PendingTransaction, value: int = 0) -> None:
        attempts = self._config.max_retries
        last_error: Optional[TransactionError] = None
        nonce_key = cache_key(NONCE, pending.from_address.lower())

        for attempt in range(attempts):
            if pending.id in self._cancelled:
                raise UserRejected("Transaction was cancelled", raw=last_error)

            try:
                async with self._lock_for(pending.from_address):
                    nonce = await self._next_nonce(pending.from_address)
                    request = TxRequest(
                        method=pending.method,
                        params=pending.params,
                        from_address=pending.from_address,
                        gas=pending.gas_limit,
                        gas_price=pending.gas_price,
                        nonce=nonce,
                        value=value,
                    )
                    tx_hash = await self._gateway.send_transaction(request)
                    self._cache.set(nonce_key, nonce + 1, ttl=self._config.nonce_cache_ttl)
            except (LedgerGatewayError, asyncio.TimeoutError) as e:
                error = classify_error(e, stage="send",
                                       max_reason_length=self._config.revert_reason_max_length)
                last_error = error
                pending.retry_count = attempt
                if not error.retryable:
                    raise error from e
                if isinstance(error, NonceConflict):
                    self._cache.delete(nonce_key)
                logger.warning(
                    "Submission failed",
                    kind=error.kind.value,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error=error.message,
                )
                if attempt + 1 < attempts:
                    if self._metrics is not None:
                        self._metrics.tx_retried += 1
                    await self._sleep(self._config.retry_delay * 2 ** attempt)
                continue

            pending.hash = tx_hash
            pending.nonce = nonce
            pending.retry_count = attempt
            pending.updated_at = _now()
            self._transactions[pending.id] = pending
            self._trim_transactions()
            if self._metrics is not None:
                self._metrics.tx_submitted += 1
            logger.info("Transaction submitted", tx_hash=tx_hash, nonce=nonce, attempt=attempt + 1)
            return

        if isinstance(last_error, NetworkTimeout):
            raise TransactionTimeout(
                f"Transaction submission timed out after {attempts} attempts",
                raw=last_error.raw,
                tx_hash=last_error.tx_hash,
            )
        raise last_error

    async def _confirm(self, pending: PendingTransaction, confirmations: Optional[int]) -> TxReceipt:
        started = self._clock()
        timeout = self._config.confirmation_timeout

        try:
            receipt = await self._gateway.wait_for_receipt(pending.hash, timeout)
        except (LedgerGatewayError, asyncio.TimeoutError) as e:
            error = classify_error(e, stage="confirm",
                                   max_reason_length=self._config.revert_reason_max_length)
            if isinstance(error, LedgerRevert):
                self._fail_sent(pending, error)
                raise error from e
            raise self._time_out(pending, e) from e

        if pending.status == TxStatus.CONFIRMED:
            # Already settled by an event while waiting for the receipt
            pending.gas_used = receipt.gas_used
        else:
            self._transition(
                pending,
                TxStatus.MINED,
                block_number=receipt.block_number,
                gas_used=receipt.gas_used,
            )

        if not receipt.status:
            reason = receipt.revert_reason or ""
            error = LedgerRevert(
                reason,
                revert_message(reason, self._config.revert_reason_max_length),
                tx_hash=receipt.tx_hash,
            )
            self._fail_sent(pending, error)
            raise error

        depth = confirmations or self._config.confirmations
        if depth > 1:
            await self._await_depth(pending, receipt.block_number + depth - 1, started + timeout)

        if pending.status != TxStatus.CONFIRMED:
            self._transition(pending, TxStatus.CONFIRMED)
        latency_ms = (self._clock() - started) * 1000
        if self._metrics is not None:
            self._metrics.record_confirmation(latency_ms)

        self._invalidate(pending.method)
        self._append_history(pending, success=True)
        logger.info(
            "Transaction confirmed",
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        return receipt

    async def _await_depth(self, pending: PendingTransaction, target_block: int, deadline: float) -> None:
        while True:
            try:
                head = await self._gateway.block_number()
            except LedgerGatewayError as e:
                logger.warning("Block number unavailable while waiting for depth", error=str(e))
                head = -1
            if head >= target_block:
                return
            if self._clock() >= deadline:
                raise self._time_out(
                    pending, LedgerTimeoutError("Confirmation depth not reached", pending.hash)
                )
            await self._sleep(self._config.event_polling_interval)

    # ----------------------------------------------------------------
    # Bookkeeping
    # ----------------------------------------------------------------

    def _transition(self, pending: PendingTransaction, status: TxStatus, **changes) -> bool:
        if status == pending.status:
            return False
        if status not in TX_TRANSITIONS[pending.status]:
            logger.warning(
                "Ignoring invalid transaction transition",
                tx=pending.id,
                current=pending.status.value,
                requested=status.value,
            )
            return False
        for name, value in changes.items():
            if value is not None:
                setattr(pending, name, value)
        pending.status = status
        pending.updated_at = _now()
        return True

    def _time_out(self, pending: PendingTransaction, cause: BaseException) -> TransactionTimeout:
        error = TransactionTimeout(
            "Transaction not confirmed in time; it may still be mined",
            raw=cause,
            tx_hash=pending.hash,
            tx_id=pending.id,
        )
        self._transition(pending, TxStatus.TIMED_OUT, error=error.to_dict())
        if self._metrics is not None:
            self._metrics.tx_timed_out += 1
        self._append_history(pending, success=False, error=error.message)
        logger.warning("Transaction confirmation timed out", tx_hash=pending.hash)
        return error

    def _fail_sent(self, pending: PendingTransaction, error: TransactionError) -> None:
        error.tx_id = pending.id
        self._transition(pending, TxStatus.FAILED, error=error.to_dict())
        if self._metrics is not None:
            self._metrics.tx_failed += 1
        self._append_history(pending, success=False, error=error.message)
        logger.warning("Transaction failed", kind=error.kind.value, error=error.message)

    def _fail_unsent(self, pending: PendingTransaction, error: TransactionError) -> None:
        error.tx_id = pending.id
        pending.status = TxStatus.FAILED
        pending.error = error.to_dict()
        pending.updated_at = _now()
        self._transactions[pending.id] = pending
        self._trim_transactions()
        if self._metrics is not None:
            self._metrics.tx_failed += 1
        self._append_history(pending, success=False, error=error.message)
        log = logger.info if error.kind == ErrorKind.USER_REJECTED else logger.warning
        log("Transaction not sent", kind=error.kind.value, error=error.message)

    def _append_history(self, pending: PendingTransaction, success: bool, error: Optional[str] = None) -> None:
        self._history.append(TransactionHistoryEntry(
            tx_id=pending.id,
            method=pending.method,
            params=pending.params,
            hash=pending.hash,
            success=success,
            error=error,
            timestamp=_now(),
        ))

    def _trim_transactions(self) -> None:
        limit = self._config.history_limit
        while len(self._transactions) > limit:
            oldest_id = next(
                (tid for tid, tx in self._transactions.items() if not tx.is_outstanding),
                None,
            )
            if oldest_id is None:
                return
            del self._transactions[oldest_id]

    def _invalidate(self, method: str) -> None:
        namespaces = INVALIDATION_FAMILIES.get(method, (ELECTION, CANDIDATE, VOTER, ROLE))
        removed = self._cache.invalidate_many(namespaces)
        logger.debug("Invalidated after write", method=method, removed=removed)

    def _match_event(self, event: LedgerEventRecord) -> Optional[PendingTransaction]:
        candidates = self.outstanding()
        if event.tx_hash:
            wanted = event.tx_hash.lower()
            for tx in candidates:
                if tx.hash and tx.hash.lower() == wanted:
                    return tx
            return None

        methods, sender_field = _EVENT_SOURCES.get(event.kind, (frozenset(), None))
        sender = event.fields.get(sender_field) if sender_field else None
        if not sender:
            return None
        for tx in candidates:
            if tx.method in methods and tx.from_address.lower() == str(sender).lower():
                return tx
        return None

