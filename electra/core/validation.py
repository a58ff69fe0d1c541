"""
Pre-flight Input Validation

Cheap local checks run before a write is estimated or sent. A failure
raises ValidationError and nothing reaches the ledger. These rules are
stricter than the contract's; the contract remains the authority.
"""

import re
from typing import Optional

from ..schemas import ZERO_ADDRESS, Role
from .errors import ValidationError

MAX_CANDIDATE_ID = 1000
MIN_VOTING_SECONDS = 60 * 60
MAX_VOTING_SECONDS = 30 * 24 * 60 * 60

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_CANDIDATE_NAME_RE = re.compile(r"^[a-zA-Z\s'\-.]+$")
_PARTY_NAME_RE = re.compile(r"^[a-zA-Z0-9\s'\-.()&]+$")


def _text(value, field: str, label: str, min_len: int, max_len: int,
          pattern: Optional[re.Pattern] = None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required", field=field)
    text = value.strip()
    if len(text) < min_len:
        raise ValidationError(f"{label} must be at least {min_len} characters", field=field)
    if len(text) > max_len:
        raise ValidationError(f"{label} must be less than {max_len} characters", field=field)
    if pattern is not None and not pattern.match(text):
        raise ValidationError(f"{label} contains invalid characters", field=field)
    return text


def validate_address(address, field: str = "address") -> str:
    if not isinstance(address, str) or not address.strip():
        raise ValidationError("Address is required", field=field)
    text = address.strip()
    if text == ZERO_ADDRESS:
        raise ValidationError("Cannot use zero address", field=field)
    if not _ADDRESS_RE.match(text):
        raise ValidationError("Invalid Ethereum address format", field=field)
    return text


def validate_candidate_id(candidate_id) -> int:
    if isinstance(candidate_id, bool):
        raise ValidationError("Candidate ID must be a number", field="candidate_id")
    try:
        value = int(candidate_id)
    except (TypeError, ValueError):
        raise ValidationError("Candidate ID must be a number", field="candidate_id")
    if value <= 0:
        raise ValidationError("Candidate ID must be positive", field="candidate_id")
    if value > MAX_CANDIDATE_ID:
        raise ValidationError("Invalid candidate ID", field="candidate_id")
    return value


def validate_candidate_name(name) -> str:
    return _text(name, "name", "Candidate name", 2, 100, _CANDIDATE_NAME_RE)


def validate_party(party) -> str:
    return _text(party, "party", "Party name", 2, 150, _PARTY_NAME_RE)


def validate_manifesto(manifesto) -> str:
    return _text(manifesto, "manifesto", "Manifesto", 10, 2000)


def validate_title(title) -> str:
    return _text(title, "title", "Election title", 5, 200)


def validate_description(description) -> str:
    return _text(description, "description", "Election description", 10, 1000)


def validate_election_timing(
    registration_deadline: int,
    start_time: int,
    end_time: int,
    now: float,
) -> None:
    if registration_deadline <= now:
        raise ValidationError(
            "Registration deadline must be in the future", field="registration_deadline"
        )
    if start_time <= registration_deadline:
        raise ValidationError(
            "Voting must start after registration deadline", field="start_time"
        )
    if end_time <= start_time:
        raise ValidationError("Voting end time must be after start time", field="end_time")

    duration = end_time - start_time
    if duration < MIN_VOTING_SECONDS:
        raise ValidationError("Voting period must be at least 1 hour", field="end_time")
    if duration > MAX_VOTING_SECONDS:
        raise ValidationError("Voting period cannot exceed 30 days", field="end_time")


def validate_role(role) -> Role:
    parsed = Role.from_value(role)
    if parsed == Role.NONE:
        raise ValidationError("A role must be selected", field="role")
    return parsed
