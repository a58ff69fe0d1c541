# Core client services
from .cache import ReadCache, CacheEntry, cache_key
from .errors import (
    ElectraError,
    LedgerReadError,
    ErrorKind,
    TransactionError,
    TransientError,
    UserRejected,
    InsufficientFunds,
    GasEstimationFailed,
    NonceConflict,
    LedgerRevert,
    NetworkTimeout,
    TransactionTimeout,
    ValidationError,
    classify_error,
)
from .hasher import AuditHasher, CanonicalSerializationError
from .phase import (
    Phase,
    Permissions,
    PhaseTracker,
    phase_of,
    derive_permissions,
    time_info,
)
from .reader import ElectionReader
from .transactions import TransactionManager
from .events import EventMonitor, Subscription
from .integrity import IntegrityValidator, verify_export
from .client import ElectionClient

__all__ = [
    "ReadCache",
    "CacheEntry",
    "cache_key",
    "ElectraError",
    "LedgerReadError",
    "ErrorKind",
    "TransactionError",
    "TransientError",
    "UserRejected",
    "InsufficientFunds",
    "GasEstimationFailed",
    "NonceConflict",
    "LedgerRevert",
    "NetworkTimeout",
    "TransactionTimeout",
    "ValidationError",
    "classify_error",
    "AuditHasher",
    "CanonicalSerializationError",
    "Phase",
    "Permissions",
    "PhaseTracker",
    "phase_of",
    "derive_permissions",
    "time_info",
    "ElectionReader",
    "TransactionManager",
    "EventMonitor",
    "Subscription",
    "IntegrityValidator",
    "verify_export",
    "ElectionClient",
]
