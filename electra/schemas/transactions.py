"""
Transaction Bookkeeping Schemas

Local, advisory records of writes this client has attempted.
The ledger decides what actually happened; these only track what
we asked for and what we have observed so far.

State machine:

    SUBMITTED ──► MINED ──► CONFIRMED
        │           │
        ├───────────┴──► FAILED
        └──► TIMED_OUT ──► CONFIRMED   (late event reconciliation)
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TxStatus(str, Enum):
    SUBMITTED = "submitted"
    MINED = "mined"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (TxStatus.CONFIRMED, TxStatus.FAILED)


# Allowed forward transitions
TX_TRANSITIONS: dict[TxStatus, frozenset] = {
    TxStatus.SUBMITTED: frozenset({TxStatus.MINED, TxStatus.CONFIRMED, TxStatus.FAILED, TxStatus.TIMED_OUT}),
    TxStatus.MINED: frozenset({TxStatus.CONFIRMED, TxStatus.FAILED, TxStatus.TIMED_OUT}),
    TxStatus.TIMED_OUT: frozenset({TxStatus.MINED, TxStatus.CONFIRMED, TxStatus.FAILED}),
    TxStatus.CONFIRMED: frozenset(),
    TxStatus.FAILED: frozenset(),
}


class TxRequest(BaseModel):
    """Everything the gateway needs to broadcast one contract call."""
    method: str
    params: list[Any] = Field(default_factory=list)
    from_address: str
    gas: Optional[int] = None
    gas_price: Optional[int] = None
    nonce: Optional[int] = None
    value: int = 0


class TxReceipt(BaseModel):
    """Mined receipt as reported by the ledger."""
    tx_hash: str
    block_number: int
    gas_used: int
    status: bool = Field(..., description="False when the call reverted on-chain")
    revert_reason: Optional[str] = None


class PendingTransaction(BaseModel):
    """Bookkeeping for one execute() invocation."""
    id: str
    method: str
    params: list[Any] = Field(default_factory=list)
    from_address: str
    status: TxStatus = TxStatus.SUBMITTED
    hash: Optional[str] = None
    nonce: Optional[int] = None
    retry_count: int = 0
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_outstanding(self) -> bool:
        """Still waiting for the ledger to tell us the outcome."""
        return self.status in (TxStatus.SUBMITTED, TxStatus.MINED, TxStatus.TIMED_OUT)


class TransactionResult(BaseModel):
    """What execute() returns on success."""
    success: bool = True
    tx_hash: str
    block_number: int
    gas_used: int
    tx_id: str


class TransactionHistoryEntry(BaseModel):
    tx_id: str
    method: str
    params: list[Any] = Field(default_factory=list)
    hash: Optional[str] = None
    success: bool
    error: Optional[str] = None
    timestamp: datetime


class SimulationResult(BaseModel):
    """Gas-only dry run of a write."""
    success: bool
    method: str
    params: list[Any] = Field(default_factory=list)
    gas_estimate: Optional[int] = None
    gas_estimate_with_buffer: Optional[int] = None
    error: Optional[str] = None
