"""
Ledger Gateway Abstraction

The gateway is the only thing in the client that talks to the ledger.
It exposes:
- Raw primitives (call, estimate_gas, send_transaction, ...) that each
  implementation provides
- Typed reads built on those primitives, decoded at this boundary
- An event channel (optional) and past-event queries

Raw failures surface as LedgerRPCError / LedgerConnectionError /
LedgerTimeoutError. Classification into the client error taxonomy
happens in electra.core.errors, not here.

Implementations:
- InMemoryLedger: deterministic contract simulation (development/testing)
- Web3Gateway: deployed contract over JSON-RPC via web3.py
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Optional

from ..schemas import (
    Candidate,
    ElectionInfo,
    ElectionStatistics,
    EventKind,
    TxReceipt,
    TxRequest,
    UserRole,
    Voter,
    VoteRecord,
    WinnerInfo,
)
from .decoding import (
    decode_candidates,
    decode_election_info,
    decode_statistics,
    decode_user_role,
    decode_vote_record,
    decode_voter,
    decode_winner,
)


class LedgerGatewayError(Exception):
    """Base exception for raw gateway failures."""
    pass


class LedgerRPCError(LedgerGatewayError):
    """
    The node answered, but with an error.

    Attributes:
        code: JSON-RPC / EIP-1193 error code when known (4001 = user rejected)
        data: Provider-specific payload (often the ABI-encoded revert data)
        revert_reason: Decoded Error(string) reason when the provider gave one
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        revert_reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.revert_reason = revert_reason


class LedgerConnectionError(LedgerGatewayError):
    """The node could not be reached or the event channel dropped."""
    pass


class LedgerTimeoutError(LedgerGatewayError):
    """A call or receipt wait exceeded its deadline."""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


@dataclass
class RawEvent:
    """A contract log entry before decoding."""
    name: str
    args: dict = field(default_factory=dict)
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    log_index: Optional[int] = None
    block_timestamp: Optional[int] = None


class LedgerGateway(ABC):
    """
    Abstract boundary over the Electra contract.

    All methods are coroutines; none of them block the event loop.
    """

    # ----------------------------------------------------------------
    # Raw primitives
    # ----------------------------------------------------------------

    @abstractmethod
    async def call(self, method: str, *args: Any) -> Any:
        """Execute a read-only contract call and return the raw result."""
        ...

    @abstractmethod
    async def estimate_gas(self, request: TxRequest) -> int:
        """Estimate gas for a write. Raises LedgerRPCError on revert."""
        ...

    @abstractmethod
    async def gas_price(self) -> int:
        """Current network gas price in wei."""
        ...

    @abstractmethod
    async def transaction_count(self, address: str) -> int:
        """Next nonce for the account, counting pending transactions."""
        ...

    @abstractmethod
    async def send_transaction(self, request: TxRequest) -> str:
        """Broadcast a write and return its hash."""
        ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TxReceipt:
        """Wait for the write to be mined. Raises LedgerTimeoutError."""
        ...

    @abstractmethod
    async def block_number(self) -> int:
        ...

    @property
    def supports_subscriptions(self) -> bool:
        """Whether stream_events() is available on this gateway."""
        return False

    def stream_events(
        self,
        kinds: Iterable[EventKind],
        from_block: Optional[int] = None,
    ) -> AsyncIterator[RawEvent]:
        """
        Yield contract events as they arrive.

        Raises LedgerConnectionError when the channel drops; the caller
        decides whether to resubscribe.
        """
        raise LedgerConnectionError(f"{type(self).__name__} has no event channel")

    @abstractmethod
    async def get_past_events(
        self,
        kind: EventKind,
        from_block: int = 0,
        to_block: Optional[int] = None,
    ) -> list[RawEvent]:
        ...

    async def close(self) -> None:
        """Release provider resources."""
        return None

    # ----------------------------------------------------------------
    # Typed reads (decoded at the boundary)
    # ----------------------------------------------------------------

    async def get_election_info(self) -> Optional[ElectionInfo]:
        return decode_election_info(await self.call("getElectionInfo"))

    async def get_all_candidates(self) -> list[Candidate]:
        return decode_candidates(await self.call("getAllCandidates"))

    async def get_voter_info(self, address: str) -> Voter:
        return decode_voter(address, await self.call("getVoterInfo", address))

    async def get_user_role(self, address: str) -> UserRole:
        return decode_user_role(address, await self.call("getUserInfo", address))

    async def get_current_winner(self) -> WinnerInfo:
        return decode_winner(await self.call("getCurrentWinner"))

    async def get_election_statistics(self) -> ElectionStatistics:
        return decode_statistics(await self.call("getElectionStatistics"))

    async def get_vote_record(self, record_id: int) -> VoteRecord:
        return decode_vote_record(record_id, await self.call("getVoteRecord", record_id))

    async def verify_vote(self, address: str, verification_hash: str) -> bool:
        return bool(await self.call("verifyVote", address, verification_hash))
