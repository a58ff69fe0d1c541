"""
Client Error Taxonomy

Every write-path failure reaches the caller as a TransactionError
subclass that can be rendered as {kind, message, raw}.

Terminal (never retried):
- UserRejected        signer declined
- InsufficientFunds   account cannot pay for gas
- LedgerRevert        contract rejected the call (business rule)
- ValidationError     local pre-flight check, never reached the ledger

Retried:
- GasEstimationFailed once, with a conservative default gas limit
- NonceConflict       with a freshly fetched nonce
- NetworkTimeout      per retry policy, then TransactionTimeout
- TransientError      anything else the node throws at us
"""

import asyncio
import re
from enum import Enum
from typing import Any, Optional

from ..gateway.base import (
    LedgerConnectionError,
    LedgerGatewayError,
    LedgerTimeoutError,
)
from ..gateway.decoding import DecodeError


class ElectraError(Exception):
    """Base exception for client errors."""
    pass


class LedgerReadError(ElectraError):
    """A read failed and no stale value was available to serve."""

    def __init__(self, key: str, cause: Exception):
        super().__init__(f"Read of {key!r} failed: {cause}")
        self.key = key
        self.cause = cause


class ErrorKind(str, Enum):
    USER_REJECTED = "USER_REJECTED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    GAS_ESTIMATION_FAILED = "GAS_ESTIMATION_FAILED"
    NONCE_CONFLICT = "NONCE_CONFLICT"
    LEDGER_REVERT = "LEDGER_REVERT"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    VALIDATION = "VALIDATION"
    TRANSIENT = "TRANSIENT"


class TransactionError(ElectraError):
    """Normalized write-path failure."""

    kind: ErrorKind = ErrorKind.TRANSIENT
    retryable: bool = True

    def __init__(
        self,
        message: str,
        raw: Any = None,
        tx_hash: Optional[str] = None,
        tx_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.raw = raw
        self.tx_hash = tx_hash
        self.tx_id = tx_id

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "raw": None if self.raw is None else str(self.raw),
        }


class TransientError(TransactionError):
    kind = ErrorKind.TRANSIENT


class UserRejected(TransactionError):
    kind = ErrorKind.USER_REJECTED
    retryable = False


class InsufficientFunds(TransactionError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
    retryable = False


class GasEstimationFailed(TransactionError):
    kind = ErrorKind.GAS_ESTIMATION_FAILED


class NonceConflict(TransactionError):
    kind = ErrorKind.NONCE_CONFLICT


class NetworkTimeout(TransactionError):
    kind = ErrorKind.NETWORK_TIMEOUT


class TransactionTimeout(TransactionError):
    """
    Raised after retries are exhausted on timeouts, or when the
    confirmation wait expires. The write may still land; tx_hash is
    the last hash we know of.
    """
    kind = ErrorKind.TRANSACTION_TIMEOUT
    retryable = False


class ValidationError(TransactionError):
    """Local pre-flight rejection. Never reaches the ledger."""
    kind = ErrorKind.VALIDATION
    retryable = False

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class LedgerRevert(TransactionError):
    kind = ErrorKind.LEDGER_REVERT
    retryable = False

    def __init__(self, reason: str, message: Optional[str] = None, raw: Any = None,
                 tx_hash: Optional[str] = None):
        super().__init__(message or reason or "Transaction reverted", raw=raw, tx_hash=tx_hash)
        self.reason = reason


# Contract revert reasons → what a person should read.
REVERT_MESSAGES: dict[str, str] = {
    "Already voted": "You have already cast your vote",
    "You have already voted": "You have already cast your vote",
    "Not registered": "You must register to vote first",
    "You are not registered to vote": "You must register to vote first",
    "Already registered": "This address is already registered to vote",
    "Registration closed": "Voter registration has closed",
    "Registration deadline has passed": "Voter registration has closed",
    "Invalid candidate": "Selected candidate is invalid",
    "Invalid candidate ID": "Selected candidate is invalid",
    "Candidate inactive": "Selected candidate is no longer active",
    "Voting is not currently open": "Voting is not currently active",
    "Voting not active": "Voting is not currently active",
    "Voting already started": "Voting has already started",
    "Voting not ended": "Voting has not ended yet",
    "No votes": "Cannot finalize an election without votes",
    "Need at least 2 candidates": "At least two candidates are required to start voting",
    "Max candidates reached": "The maximum number of candidates has been reached",
    "Empty name": "Candidate name is required",
    "Empty party": "Party name is required",
    "Empty title": "Election title is required",
    "Invalid times": "Election times are not in order",
    "Election already active": "An election is already in progress",
    "Election has been finalized": "The election has already been finalized",
    "No active election": "No election is currently active",
    "Only commissioner can perform this action": "Unauthorized: Commissioner access required",
    "Only commissioner or owner": "Unauthorized: Commissioner access required",
    "Only owner can assign commissioner": "Unauthorized: Owner access required",
    "Only system owner can perform this action": "Unauthorized: Owner access required",
    "Admin access required": "Unauthorized: Admin access required",
    "Cannot assign NONE": "A role must be selected",
    "Cannot revoke owner": "The system owner's role cannot be revoked",
    "Cannot revoke commissioner": "A commissioner's role cannot be revoked",
    "System is currently paused": "System is temporarily paused",
}

_REVERT_PATTERN = re.compile(r"revert(?:ed)?(?::|\s)\s*(.+)", re.IGNORECASE | re.DOTALL)
_USER_REJECTED_CODE = 4001


def extract_revert_reason(message: str) -> Optional[str]:
    """'execution reverted: Already voted' → 'Already voted'; '' when no reason given."""
    lowered = message.lower()
    if "revert" not in lowered:
        return None
    match = _REVERT_PATTERN.search(message)
    if not match:
        return ""
    return match.group(1).strip().strip("'\"")


def revert_message(reason: str, max_length: int = 120) -> str:
    """Map a revert reason to a user-facing message; unmapped reasons pass through truncated."""
    if not reason:
        return "Transaction failed - check requirements"
    if reason in REVERT_MESSAGES:
        return REVERT_MESSAGES[reason]
    lowered = reason.lower()
    for pattern, message in REVERT_MESSAGES.items():
        if pattern.lower() in lowered:
            return message
    if len(reason) > max_length:
        return reason[: max_length - 3].rstrip() + "..."
    return reason


def classify_error(
    error: BaseException,
    stage: str = "send",
    max_reason_length: int = 120,
) -> TransactionError:
    """
    Normalize any failure raised on the write path.

    Args:
        error: What the gateway (or asyncio) raised
        stage: "estimate", "send" or "confirm"; gas wording only means
            estimation failure when it happens during estimation
        max_reason_length: Truncation bound for unmapped revert reasons
    """
    if isinstance(error, TransactionError):
        return error

    if isinstance(error, (LedgerTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return NetworkTimeout(
            str(error) or "Ledger request timed out",
            raw=error,
            tx_hash=getattr(error, "tx_hash", None),
        )

    if isinstance(error, LedgerConnectionError):
        return NetworkTimeout(str(error) or "Ledger connection lost", raw=error)

    if isinstance(error, DecodeError):
        return TransientError(str(error), raw=error)

    message = getattr(error, "message", None) or str(error)
    lowered = message.lower()
    code = getattr(error, "code", None)

    if code == _USER_REJECTED_CODE or "user denied" in lowered or "user rejected" in lowered:
        return UserRejected("Transaction was cancelled by user", raw=error)

    if "insufficient funds" in lowered:
        return InsufficientFunds("Insufficient funds to complete transaction", raw=error)

    if (
        "nonce too low" in lowered
        or "nonce too high" in lowered
        or "replacement transaction underpriced" in lowered
        or "already known" in lowered
        or ("nonce" in lowered and "conflict" in lowered)
    ):
        return NonceConflict("Transaction nonce conflict - retrying with a fresh nonce", raw=error)

    reason = getattr(error, "revert_reason", None)
    if reason is None:
        reason = extract_revert_reason(message)
    if reason is not None:
        return LedgerRevert(reason, revert_message(reason, max_reason_length), raw=error)

    if stage == "estimate" and "gas" in lowered:
        return GasEstimationFailed("Gas estimation failed", raw=error)

    if "timeout" in lowered or "timed out" in lowered:
        return NetworkTimeout(message, raw=error)

    if isinstance(error, LedgerGatewayError):
        return TransientError(message, raw=error)

    return TransientError(message or type(error).__name__, raw=error)
