"""
In-Memory Ledger

Deterministic simulation of the Electra contract for development,
demos and tests. It reproduces what a client can observe:

- Role checks and revert reasons
- Phase rules on registration, candidates and voting
- Per-account nonces, gas estimates and mined receipts
- Contract events, both streamed and queryable by block range

Every transaction is mined into its own block as soon as it is sent.
Estimation runs the call against a copy of the state, so a write that
would revert fails at estimate_gas just as it would against a node.

Failure injection (tests only):
    ledger.inject_failure("send_transaction", LedgerTimeoutError("slow"))
    ledger.drop_streams()

startVoting / endVoting move the election's time window so that the
time-derived phase agrees with the explicit transition.
"""

import asyncio
import copy
import hashlib
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from ..observability import get_logger
from ..schemas import EventKind, Role, TxReceipt, TxRequest, ZERO_ADDRESS
from .base import (
    LedgerConnectionError,
    LedgerGateway,
    LedgerRPCError,
    LedgerTimeoutError,
    RawEvent,
)

logger = get_logger(__name__)

MAX_CANDIDATES = 50
DEFAULT_GAS_PRICE = 20 * 10 ** 9
REVERT_CODE = 3

# Gas each write consumes when mined
GAS_COSTS: dict[str, int] = {
    "createElection": 310_000,
    "addCandidate": 180_000,
    "deactivateCandidate": 45_000,
    "registerVoter": 95_000,
    "selfRegister": 95_000,
    "vote": 120_000,
    "startVoting": 60_000,
    "endVoting": 50_000,
    "finalizeElection": 140_000,
    "assignRole": 75_000,
    "revokeRole": 40_000,
}


class _Revert(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _require(condition: bool, reason: str) -> None:
    if not condition:
        raise _Revert(reason)


@dataclass
class _ContractState:
    owner: str
    roles: dict = field(default_factory=dict)
    election: Optional[dict] = None
    voting_started: bool = False
    candidates: list = field(default_factory=list)
    voters: dict = field(default_factory=dict)
    records: list = field(default_factory=list)


class InMemoryLedger(LedgerGateway):
    """
    Contract simulation behind the LedgerGateway interface.

    Args:
        owner: System owner; starts as commissioner
        clock: Wall clock in unix seconds (injectable)
        subscriptions: Whether stream_events() is available
        gas_price: Network gas price in wei
    """

    def __init__(
        self,
        owner: str,
        clock: Callable[[], float] = time.time,
        subscriptions: bool = True,
        gas_price: int = DEFAULT_GAS_PRICE,
    ):
        self._clock = clock
        self._subscriptions = subscriptions
        self._gas_price = gas_price

        self._state = _ContractState(owner=owner)
        self._state.roles[owner.lower()] = {
            "role": Role.COMMISSIONER,
            "is_active": True,
            "assigned_at": self.now(),
            "assigned_by": owner,
        }

        self._nonces: dict[str, int] = defaultdict(int)
        self._receipts: dict[str, TxReceipt] = {}
        self._block = 0
        self._log: list[RawEvent] = []
        self._streams: list[asyncio.Queue] = []
        self._failures: dict[str, deque] = defaultdict(deque)
        self.sent: list[TxRequest] = []

    # ----------------------------------------------------------------
    # Test hooks
    # ----------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._state.owner

    def now(self) -> int:
        return int(self._clock())

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls to `operation` raise `error`."""
        for _ in range(times):
            self._failures[operation].append(error)

    def drop_streams(self, error: Optional[Exception] = None) -> None:
        """Break every open event stream."""
        for queue in list(self._streams):
            queue.put_nowait(error or LedgerConnectionError("Event channel closed"))

    def redeliver(self, index: int = -1) -> None:
        """Push an already-emitted event to open streams again."""
        event = self._log[index]
        for queue in list(self._streams):
            queue.put_nowait(event)

    @property
    def stream_count(self) -> int:
        return len(self._streams)

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.popleft()

    # ----------------------------------------------------------------
    # LedgerGateway primitives
    # ----------------------------------------------------------------

    async def call(self, method: str, *args: Any) -> Any:
        self._maybe_fail("call")
        view = getattr(self, f"_view_{method}", None)
        if view is None:
            raise LedgerRPCError(f"Unknown view {method}")
        try:
            return view(*args)
        except _Revert as e:
            raise LedgerRPCError(f"execution reverted: {e.reason}", code=REVERT_CODE,
                                 revert_reason=e.reason) from e

    async def estimate_gas(self, request: TxRequest) -> int:
        self._maybe_fail("estimate_gas")
        dry_run = copy.deepcopy(self._state)
        try:
            self._apply(dry_run, request, events=[])
        except _Revert as e:
            raise LedgerRPCError(f"execution reverted: {e.reason}", code=REVERT_CODE,
                                 revert_reason=e.reason) from e
        return GAS_COSTS.get(request.method, 100_000)

    async def gas_price(self) -> int:
        self._maybe_fail("gas_price")
        return self._gas_price

    async def transaction_count(self, address: str) -> int:
        self._maybe_fail("transaction_count")
        return self._nonces[address.lower()]

    async def send_transaction(self, request: TxRequest) -> str:
        self._maybe_fail("send_transaction")
        account = request.from_address.lower()
        expected = self._nonces[account]
        nonce = expected if request.nonce is None else request.nonce
        if nonce < expected:
            raise LedgerRPCError(f"nonce too low: next nonce {expected}, tx nonce {nonce}")
        if nonce > expected:
            raise LedgerRPCError(f"nonce too high: next nonce {expected}, tx nonce {nonce}")

        self._nonces[account] = expected + 1
        self._block += 1
        tx_hash = "0x" + hashlib.sha256(f"{account}:{nonce}:{self._block}".encode()).hexdigest()
        self.sent.append(request)

        cost = GAS_COSTS.get(request.method, 100_000)
        events: list[tuple[str, dict]] = []
        revert_reason = None
        if request.gas is not None and request.gas < cost:
            revert_reason = "out of gas"
        else:
            try:
                self._apply(self._state, request, events)
            except _Revert as e:
                revert_reason = e.reason

        if revert_reason is not None:
            events = []
            logger.debug("Simulated transaction reverted", method=request.method, reason=revert_reason)

        self._receipts[tx_hash] = TxReceipt(
            tx_hash=tx_hash,
            block_number=self._block,
            gas_used=cost if request.gas is None else min(cost, request.gas),
            status=revert_reason is None,
            revert_reason=revert_reason,
        )
        for log_index, (name, args) in enumerate(events):
            self._emit(RawEvent(
                name=name,
                args=args,
                block_number=self._block,
                tx_hash=tx_hash,
                log_index=log_index,
                block_timestamp=self.now(),
            ))
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        self._maybe_fail("wait_for_receipt")
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise LedgerTimeoutError(f"Transaction {tx_hash} not mined within {timeout}s", tx_hash)
        return receipt

    async def block_number(self) -> int:
        self._maybe_fail("block_number")
        return self._block

    def mine(self, blocks: int = 1) -> int:
        """Advance the chain without transactions."""
        self._block += blocks
        return self._block

    @property
    def supports_subscriptions(self) -> bool:
        return self._subscriptions

    async def stream_events(
        self,
        kinds: Iterable[EventKind],
        from_block: Optional[int] = None,
    ) -> AsyncIterator[RawEvent]:
        if not self._subscriptions:
            raise LedgerConnectionError("InMemoryLedger configured without subscriptions")
        self._maybe_fail("stream")

        wanted = {EventKind(k).value for k in kinds}
        queue: asyncio.Queue = asyncio.Queue()
        if from_block is not None:
            for event in self._log:
                if event.block_number >= from_block:
                    queue.put_nowait(event)
        self._streams.append(queue)
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Exception):
                    raise item
                if item.name in wanted:
                    yield item
        finally:
            if queue in self._streams:
                self._streams.remove(queue)

    async def get_past_events(
        self,
        kind: EventKind,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> list[RawEvent]:
        self._maybe_fail("get_past_events")
        kind = EventKind(kind)
        upper = self._block if to_block is None else to_block
        return [
            e for e in self._log
            if e.name == kind.value and from_block <= e.block_number <= upper
        ]

    def _emit(self, event: RawEvent) -> None:
        self._log.append(event)
        for queue in list(self._streams):
            queue.put_nowait(event)

    # ----------------------------------------------------------------
    # Contract writes
    # ----------------------------------------------------------------

    def _apply(self, state: _ContractState, request: TxRequest, events: list) -> None:
        handler = getattr(self, f"_tx_{request.method}", None)
        if handler is None:
            raise _Revert(f"Unknown method {request.method}")
        try:
            handler(state, request.from_address, events, *request.params)
        except TypeError as e:
            raise _Revert(f"Invalid arguments for {request.method}") from e

    def _role_of(self, state: _ContractState, address: str) -> Role:
        entry = state.roles.get(address.lower())
        if not entry or not entry["is_active"]:
            return Role.NONE
        return entry["role"]

    def _is_owner(self, state: _ContractState, address: str) -> bool:
        return address.lower() == state.owner.lower()

    def _require_commissioner(self, state: _ContractState, sender: str) -> None:
        _require(
            self._is_owner(state, sender) or self._role_of(state, sender) == Role.COMMISSIONER,
            "Only commissioner can perform this action",
        )

    def _require_admin(self, state: _ContractState, sender: str) -> None:
        _require(
            self._is_owner(state, sender) or self._role_of(state, sender) >= Role.ADMIN,
            "Admin access required",
        )

    def _require_election(self, state: _ContractState) -> dict:
        _require(state.election is not None, "No active election")
        _require(not state.election["is_finalized"], "Election has been finalized")
        return state.election

    def _tx_assignRole(self, state, sender, events, user, role):
        role = Role(int(role))
        _require(role != Role.NONE, "Cannot assign NONE")
        if role == Role.COMMISSIONER:
            _require(self._is_owner(state, sender), "Only owner can assign commissioner")
        else:
            _require(
                self._is_owner(state, sender) or self._role_of(state, sender) == Role.COMMISSIONER,
                "Only commissioner or owner",
            )
        state.roles[user.lower()] = {
            "role": role,
            "is_active": True,
            "assigned_at": self.now(),
            "assigned_by": sender,
        }

    def _tx_revokeRole(self, state, sender, events, user):
        _require(
            self._is_owner(state, sender) or self._role_of(state, sender) == Role.COMMISSIONER,
            "Only commissioner or owner",
        )
        _require(not self._is_owner(state, user), "Cannot revoke owner")
        _require(self._role_of(state, user) != Role.COMMISSIONER, "Cannot revoke commissioner")
        entry = state.roles.get(user.lower())
        if entry:
            entry["role"] = Role.NONE
            entry["is_active"] = False

    def _tx_createElection(self, state, sender, events, title, description,
                           registration_deadline, start_time, end_time):
        self._require_commissioner(state, sender)
        now = self.now()
        current = state.election
        if current is not None and not current["is_finalized"]:
            _require(now > current["end_time"], "Election already active")
        _require(bool(title), "Empty title")
        _require(now < registration_deadline <= start_time < end_time, "Invalid times")

        state.election = {
            "title": title,
            "description": description,
            "registration_deadline": int(registration_deadline),
            "start_time": int(start_time),
            "end_time": int(end_time),
            "is_active": True,
            "is_finalized": False,
            "winner_id": 0,
        }
        state.voting_started = False
        state.candidates = []
        state.voters = {}
        state.records = []

    def _tx_addCandidate(self, state, sender, events, name, party, manifesto=""):
        self._require_admin(state, sender)
        election = self._require_election(state)
        _require(
            not state.voting_started and self.now() < election["start_time"],
            "Voting already started",
        )
        _require(bool(name), "Empty name")
        _require(bool(party), "Empty party")
        _require(len(state.candidates) < MAX_CANDIDATES, "Max candidates reached")

        candidate_id = len(state.candidates) + 1
        state.candidates.append({
            "id": candidate_id,
            "name": name,
            "party": party,
            "manifesto": manifesto,
            "vote_count": 0,
            "is_active": True,
        })
        events.append(("CandidateAdded", {
            "candidateID": candidate_id,
            "name": name,
            "party": party,
            "addedBy": sender,
        }))

    def _tx_deactivateCandidate(self, state, sender, events, candidate_id):
        self._require_commissioner(state, sender)
        self._require_election(state)
        candidate_id = int(candidate_id)
        _require(1 <= candidate_id <= len(state.candidates), "Invalid candidate")
        state.candidates[candidate_id - 1]["is_active"] = False

    def _register(self, state, voter, events):
        election = self._require_election(state)
        _require(self.now() < election["registration_deadline"], "Registration closed")
        key = voter.lower()
        _require(key not in state.voters, "Already registered")

        voter_id = len(state.voters) + 1
        now = self.now()
        state.voters[key] = {
            "address": voter,
            "has_voted": False,
            "candidate_voted": 0,
            "voter_id": voter_id,
            "registration_time": now,
            "verification_hash": b"\x00" * 32,
        }
        events.append(("VoterRegistered", {
            "voter": voter,
            "voterID": voter_id,
            "timestamp": now,
        }))

    def _tx_registerVoter(self, state, sender, events, voter):
        self._require_admin(state, sender)
        _require(voter.lower() != ZERO_ADDRESS, "Invalid address")
        self._register(state, voter, events)

    def _tx_selfRegister(self, state, sender, events):
        self._register(state, sender, events)

    def _tx_startVoting(self, state, sender, events):
        self._require_commissioner(state, sender)
        election = self._require_election(state)
        _require(not state.voting_started, "Voting already started")
        active = [c for c in state.candidates if c["is_active"]]
        _require(len(active) >= 2, "Need at least 2 candidates")

        now = self.now()
        _require(now < election["end_time"], "Voting period has ended")
        election["registration_deadline"] = min(election["registration_deadline"], now)
        election["start_time"] = min(election["start_time"], now)
        state.voting_started = True
        events.append(("ElectionStarted", {
            "startTime": election["start_time"],
            "endTime": election["end_time"],
        }))

    def _tx_endVoting(self, state, sender, events):
        self._require_commissioner(state, sender)
        election = self._require_election(state)
        now = self.now()
        _require(
            election["start_time"] <= now <= election["end_time"],
            "Voting not active",
        )
        election["end_time"] = now - 1
        election["start_time"] = min(election["start_time"], election["end_time"])
        election["registration_deadline"] = min(
            election["registration_deadline"], election["start_time"]
        )
        election["is_active"] = False
        events.append(("ElectionEnded", {
            "endTime": election["end_time"],
            "totalVotes": len(state.records),
        }))

    def _tx_vote(self, state, sender, events, candidate_id):
        election = self._require_election(state)
        key = sender.lower()
        voter = state.voters.get(key)
        _require(voter is not None, "Not registered")
        _require(not voter["has_voted"], "Already voted")
        now = self.now()
        _require(
            election["start_time"] <= now <= election["end_time"],
            "Voting is not currently open",
        )
        candidate_id = int(candidate_id)
        _require(1 <= candidate_id <= len(state.candidates), "Invalid candidate")
        candidate = state.candidates[candidate_id - 1]
        _require(candidate["is_active"], "Candidate inactive")

        record_id = len(state.records) + 1
        digest = hashlib.sha256(f"{key}:{candidate_id}:{now}:{record_id}".encode()).digest()
        candidate["vote_count"] += 1
        voter["has_voted"] = True
        voter["candidate_voted"] = candidate_id
        voter["verification_hash"] = digest
        state.records.append({
            "voter": sender,
            "candidate_id": candidate_id,
            "timestamp": now,
            "verification_hash": digest,
        })
        events.append(("VoteCast", {
            "voter": sender,
            "candidateID": candidate_id,
            "timestamp": now,
            "voteRecordID": record_id,
        }))

    def _tx_finalizeElection(self, state, sender, events):
        self._require_commissioner(state, sender)
        election = self._require_election(state)
        _require(self.now() > election["end_time"], "Voting not ended")
        _require(len(state.records) > 0, "No votes")
        winner_id, _, _ = self._leader(state)
        election["winner_id"] = winner_id
        election["is_finalized"] = True
        election["is_active"] = False

    # ----------------------------------------------------------------
    # Contract views (raw tuples in ABI order)
    # ----------------------------------------------------------------

    def _leader(self, state: _ContractState) -> tuple[int, int, bool]:
        """(winner_id, max_votes, is_tie) over active candidates; lowest id wins ties."""
        winner_id, max_votes, tie = 0, 0, False
        for c in state.candidates:
            if not c["is_active"]:
                continue
            if c["vote_count"] > max_votes:
                winner_id, max_votes, tie = c["id"], c["vote_count"], False
            elif c["vote_count"] == max_votes and max_votes > 0:
                tie = True
        return winner_id, max_votes, tie

    def _view_getElectionInfo(self):
        e = self._state.election
        if e is None:
            return ("", "", 0, 0, 0, False, False, 0, 0, 0)
        return (
            e["title"], e["description"], e["start_time"], e["end_time"],
            e["registration_deadline"], e["is_active"], e["is_finalized"],
            len(self._state.voters), len(self._state.records), e["winner_id"],
        )

    def _view_getAllCandidates(self):
        cs = self._state.candidates
        return (
            [c["id"] for c in cs],
            [c["name"] for c in cs],
            [c["party"] for c in cs],
            [c["vote_count"] for c in cs],
            [c["is_active"] for c in cs],
            [c["manifesto"] for c in cs],
        )

    def _view_getVoterInfo(self, address):
        v = self._state.voters.get(address.lower())
        if v is None:
            return (False, False, 0, 0, 0, b"\x00" * 32)
        return (
            True, v["has_voted"], v["candidate_voted"], v["voter_id"],
            v["registration_time"], v["verification_hash"],
        )

    def _view_getUserInfo(self, address):
        entry = self._state.roles.get(address.lower())
        if entry is None:
            return (int(Role.NONE), False, 0, ZERO_ADDRESS)
        return (int(entry["role"]), entry["is_active"], entry["assigned_at"], entry["assigned_by"])

    def _view_getCurrentWinner(self):
        winner_id, max_votes, tie = self._leader(self._state)
        if winner_id == 0:
            return (0, "", "", 0, False)
        c = self._state.candidates[winner_id - 1]
        return (winner_id, c["name"], c["party"], max_votes, tie)

    def _view_getElectionStatistics(self):
        state = self._state
        registered = len(state.voters)
        votes = len(state.records)
        turnout = votes * 100 // registered if registered else 0
        finalized = bool(state.election and state.election["is_finalized"])
        return (
            registered,
            votes,
            turnout,
            sum(1 for c in state.candidates if c["is_active"]),
            len(state.candidates),
            finalized and state.election["winner_id"] > 0,
            finalized,
        )

    def _view_getVoteRecord(self, record_id):
        record_id = int(record_id)
        _require(1 <= record_id <= len(self._state.records), "Invalid record")
        r = self._state.records[record_id - 1]
        return (r["voter"], r["candidate_id"], r["timestamp"], r["verification_hash"])

    def _view_verifyVote(self, address, verification_hash):
        v = self._state.voters.get(address.lower())
        if v is None or not v["has_voted"]:
            return False
        expected = "0x" + v["verification_hash"].hex()
        given = verification_hash if isinstance(verification_hash, str) else "0x" + bytes(verification_hash).hex()
        return given.lower() == expected
