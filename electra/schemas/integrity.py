"""
Integrity Audit Schemas

Results of checking a snapshot for internal consistency, and the
export document handed to auditors.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .election import ElectionSnapshot
from .events import LedgerEventRecord


class IssueType(str, Enum):
    VOTE_COUNT_MISMATCH = "VOTE_COUNT_MISMATCH"
    TURNOUT_CALCULATION_ERROR = "TURNOUT_CALCULATION_ERROR"
    WINNER_MISMATCH = "WINNER_MISMATCH"


class IntegrityIssue(BaseModel):
    type: IssueType
    message: str
    expected: Any = None
    actual: Any = None


class IntegrityReport(BaseModel):
    is_valid: bool
    issues: list[IntegrityIssue] = Field(default_factory=list)
    checked_at: datetime

    def issue_types(self) -> list[str]:
        return [issue.type.value for issue in self.issues]


class AuditExport(BaseModel):
    """
    Self-describing audit document.

    `fingerprint` is the canonical SHA-256 of everything except the
    fingerprint itself; `event_chain` links each event to the previous.
    """
    exported_at: datetime
    exported_by: Optional[str] = None
    snapshot: ElectionSnapshot
    integrity: IntegrityReport
    events: list[LedgerEventRecord] = Field(default_factory=list)
    event_chain: list[str] = Field(default_factory=list)
    fingerprint: str = ""
