"""
Election Entity Schemas

Typed views of what the ledger holds. Raw contract tuples are decoded
into these models at the gateway boundary and nothing untyped travels
further into the client.

The ledger is authoritative. These are read models, never the truth.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Role(IntEnum):
    """
    On-chain role ladder. Ordered: a higher value implies the
    privileges of the lower ones for admin checks.
    """
    NONE = 0
    VOTER = 1
    OBSERVER = 2
    ADMIN = 3
    COMMISSIONER = 4

    @classmethod
    def from_value(cls, value) -> "Role":
        """Accept an int, a numeric string or a role name."""
        if isinstance(value, Role):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.upper()]
            except KeyError:
                return cls.NONE
        try:
            return cls(int(value))
        except ValueError:
            return cls.NONE


class ElectionInfo(BaseModel):
    """
    The single election record.

    Created once via createElection; mutated only by phase-transition
    writes; immutable after is_finalized except for reads.
    """
    title: str
    description: str = ""
    registration_deadline: int = Field(
        ...,
        ge=0,
        description="Unix seconds; registration closes at this instant"
    )
    start_time: int = Field(..., ge=0, description="Unix seconds; voting window opens")
    end_time: int = Field(..., ge=0, description="Unix seconds; voting window closes (inclusive)")
    is_active: bool = True
    is_finalized: bool = False
    total_voters: int = Field(default=0, ge=0)
    total_votes: int = Field(default=0, ge=0)
    winner_id: int = Field(default=0, ge=0, description="0 until finalized")

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Student Council 2024",
                "description": "Annual student council election",
                "registration_deadline": 1717200000,
                "start_time": 1717203600,
                "end_time": 1717290000,
                "is_active": True,
                "is_finalized": False,
                "total_voters": 3,
                "total_votes": 2,
                "winner_id": 0,
            }
        }


class Candidate(BaseModel):
    """A candidate. Soft-deactivated candidates keep their record and votes."""
    id: int = Field(..., ge=1, description="Stable 1-based identifier")
    name: str
    party: str
    manifesto: str = ""
    vote_count: int = Field(default=0, ge=0)
    is_active: bool = True


class Voter(BaseModel):
    """
    Registration and participation state of one address.

    has_voted / candidate_voted are set exactly once and never revert.
    """
    address: str
    is_registered: bool = False
    has_voted: bool = False
    candidate_voted: int = 0
    voter_id: int = 0
    registration_time: int = 0
    verification_hash: Optional[str] = None


class UserRole(BaseModel):
    """Role assignment of one address."""
    address: str
    role: Role = Role.NONE
    is_active: bool = False
    assigned_at: int = 0
    assigned_by: str = ZERO_ADDRESS

    @property
    def effective_role(self) -> Role:
        """Inactive assignments confer nothing."""
        return self.role if self.is_active else Role.NONE


class VoteRecord(BaseModel):
    """Append-only audit entry; one per successful vote."""
    id: int = Field(..., ge=1)
    voter: str
    candidate_id: int
    timestamp: int
    verification_hash: str


class WinnerInfo(BaseModel):
    """Current leader as reported by getCurrentWinner."""
    winner_id: int = 0
    winner_name: str = ""
    winner_party: str = ""
    max_votes: int = 0
    is_tie: bool = False


class ElectionStatistics(BaseModel):
    """Aggregates as reported by getElectionStatistics."""
    total_registered_voters: int = 0
    total_votes_cast: int = 0
    voter_turnout_percentage: int = 0
    active_candidates: int = 0
    total_candidates_count: int = 0
    has_winner: bool = False
    election_complete: bool = False


class ElectionSnapshot(BaseModel):
    """
    Everything needed to audit the election at one moment.

    Assembled by batch-reading the ledger; used by the integrity
    validator and the polling fallback.
    """
    election: Optional[ElectionInfo] = None
    candidates: list[Candidate] = Field(default_factory=list)
    statistics: ElectionStatistics = Field(default_factory=ElectionStatistics)
    winner: WinnerInfo = Field(default_factory=WinnerInfo)
    taken_at: datetime


class BatchReadStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class BatchReadResult(BaseModel):
    """Outcome of one read inside a batch; failures do not sink the batch."""
    method: str
    status: BatchReadStatus
    data: Any = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == BatchReadStatus.OK
