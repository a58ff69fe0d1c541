# Typed schemas for the Electra client
# Everything that crosses the gateway boundary is one of these.

from .election import (
    ZERO_ADDRESS,
    Role,
    ElectionInfo,
    Candidate,
    Voter,
    UserRole,
    VoteRecord,
    WinnerInfo,
    ElectionStatistics,
    ElectionSnapshot,
    BatchReadResult,
    BatchReadStatus,
)
from .events import EventKind, LedgerEventRecord
from .integrity import IssueType, IntegrityIssue, IntegrityReport, AuditExport
from .transactions import (
    TxStatus,
    TX_TRANSITIONS,
    TxRequest,
    TxReceipt,
    PendingTransaction,
    TransactionResult,
    TransactionHistoryEntry,
    SimulationResult,
)

__all__ = [
    # Election entities
    "ZERO_ADDRESS",
    "Role",
    "ElectionInfo",
    "Candidate",
    "Voter",
    "UserRole",
    "VoteRecord",
    "WinnerInfo",
    "ElectionStatistics",
    "ElectionSnapshot",
    "BatchReadResult",
    "BatchReadStatus",
    # Events
    "EventKind",
    "LedgerEventRecord",
    # Integrity
    "IssueType",
    "IntegrityIssue",
    "IntegrityReport",
    "AuditExport",
    # Transactions
    "TxStatus",
    "TX_TRANSITIONS",
    "TxRequest",
    "TxReceipt",
    "PendingTransaction",
    "TransactionResult",
    "TransactionHistoryEntry",
    "SimulationResult",
]
