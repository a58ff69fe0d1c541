"""
Ledger Event Schema

Events emitted by the contract, as delivered to subscribers.

Each record:
- Names its kind
- Carries decoded fields (numeric strings already converted)
- Knows when the block was produced and when we received it
- Is identified by (tx_hash, log_index) for duplicate suppression
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    """
    All contract events the client consumes.
    You can add more later, never remove.
    """
    VOTE_CAST = "VoteCast"
    VOTER_REGISTERED = "VoterRegistered"
    CANDIDATE_ADDED = "CandidateAdded"
    ELECTION_STARTED = "ElectionStarted"
    ELECTION_ENDED = "ElectionEnded"

    @classmethod
    def all(cls) -> list["EventKind"]:
        return list(cls)


class LedgerEventRecord(BaseModel):
    """
    Typed event record delivered to subscribers.

    `synthetic` records are produced by the polling fallback from a
    snapshot diff; they have no tx hash or log index.
    """
    kind: EventKind
    fields: dict[str, Any] = Field(default_factory=dict)
    block_timestamp: Optional[int] = Field(
        default=None,
        description="Unix seconds of the block, when the ledger reports it"
    )
    received_at: datetime
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None
    log_index: Optional[int] = None
    synthetic: bool = False

    @property
    def dedup_key(self) -> Optional[tuple]:
        """Identity of the underlying log entry, if it has one."""
        if self.tx_hash is None or self.log_index is None:
            return None
        return (self.tx_hash.lower(), self.log_index)

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "VoteCast",
                "fields": {
                    "voter": "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
                    "candidateID": 1,
                    "timestamp": 1717204000,
                    "voteRecordID": 1,
                },
                "block_timestamp": 1717204000,
                "received_at": "2024-06-01T01:06:41Z",
                "block_number": 42,
                "tx_hash": "0x9f...",
                "log_index": 0,
                "synthetic": False,
            }
        }
