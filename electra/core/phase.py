"""
Election Phase State Machine

Phase is derived, never stored:

    SETUP < REGISTRATION < PREPARATION < VOTING < ENDED < FINALIZED

Rules (evaluated against ledger fields and wall-clock time):
- No election                                → SETUP
- is_finalized                               → FINALIZED (overrides time)
- now < registration_deadline                → REGISTRATION
- registration_deadline <= now < start_time  → PREPARATION
- start_time <= now <= end_time              → VOTING
- now > end_time                             → ENDED

Permissions mirror the contract's checks for UX only. The ledger
enforces them; a permission here is a hint, never an authorization.
"""

from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Optional

from ..observability import get_logger
from ..schemas import ElectionInfo, Role, UserRole, Voter

logger = get_logger(__name__)


class Phase(IntEnum):
    SETUP = 0
    REGISTRATION = 1
    PREPARATION = 2
    VOTING = 3
    ENDED = 4
    FINALIZED = 5

    @property
    def label(self) -> str:
        return self.name.lower()


# Phases during which candidates may still be added
CANDIDATE_PHASES = frozenset({Phase.SETUP, Phase.REGISTRATION, Phase.PREPARATION})


def phase_of(info: Optional[ElectionInfo], now: float) -> Phase:
    """Derive the phase of the election at time `now` (unix seconds)."""
    if info is None:
        return Phase.SETUP
    if info.is_finalized:
        return Phase.FINALIZED
    if now < info.registration_deadline:
        return Phase.REGISTRATION
    if now < info.start_time:
        return Phase.PREPARATION
    if now <= info.end_time:
        return Phase.VOTING
    return Phase.ENDED


@dataclass(frozen=True)
class Permissions:
    """What the UI should offer to one address right now."""
    phase: Phase
    is_registered: bool = False
    has_voted: bool = False
    is_admin: bool = False
    is_commissioner: bool = False
    can_register: bool = False
    can_vote: bool = False
    can_add_candidate: bool = False
    can_start_voting: bool = False
    can_end_voting: bool = False
    can_finalize: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.label
        return data


def derive_permissions(
    voter: Optional[Voter],
    role: Optional[UserRole],
    phase: Phase,
    info: Optional[ElectionInfo] = None,
) -> Permissions:
    """
    Pure permission derivation.

    Args:
        voter: Voter record for the address (None = unknown/unregistered)
        role: Role assignment (None = NONE); inactive roles count as NONE
        phase: Current phase from phase_of()
        info: Election record, for the finalization flag
    """
    is_registered = bool(voter and voter.is_registered)
    has_voted = bool(voter and voter.has_voted)
    effective = role.effective_role if role is not None else Role.NONE
    is_admin = effective >= Role.ADMIN
    is_commissioner = effective == Role.COMMISSIONER
    is_finalized = bool(info and info.is_finalized) or phase == Phase.FINALIZED

    return Permissions(
        phase=phase,
        is_registered=is_registered,
        has_voted=has_voted,
        is_admin=is_admin,
        is_commissioner=is_commissioner,
        can_register=phase == Phase.REGISTRATION and not is_registered,
        can_vote=is_registered and not has_voted and phase == Phase.VOTING,
        can_add_candidate=is_admin and phase in CANDIDATE_PHASES,
        can_start_voting=is_commissioner and phase == Phase.PREPARATION,
        can_end_voting=is_commissioner and phase == Phase.VOTING,
        can_finalize=is_commissioner and phase == Phase.ENDED and not is_finalized,
    )


def time_info(info: Optional[ElectionInfo], now: float) -> dict:
    """Seconds remaining until each boundary (0 once passed)."""
    if info is None:
        return {}

    def remaining(ts: int) -> int:
        return max(0, int(ts - now))

    return {
        "registration_time_remaining": remaining(info.registration_deadline),
        "time_until_start": remaining(info.start_time),
        "voting_time_remaining": remaining(info.end_time),
        "is_registration_open": now < info.registration_deadline,
        "is_voting_active": phase_of(info, now) == Phase.VOTING,
    }


class PhaseTracker:
    """
    Remembers the highest phase observed and refuses regressions.

    A regression (e.g. a stale cached read after a fresh one) is logged
    and the higher phase is kept. FINALIZED is accepted only once ENDED
    has been seen or when the ledger reports is_finalized itself.
    A new election resets the tracker: a different title or description,
    or an unfinalized read after FINALIZED. Start/end transitions move
    the times of the same election and do not.
    """

    def __init__(self):
        self._current: Optional[Phase] = None
        self._election_key: Optional[tuple] = None

    @property
    def current(self) -> Optional[Phase]:
        return self._current

    def reset(self) -> None:
        self._current = None
        self._election_key = None

    def observe(self, info: Optional[ElectionInfo], now: float) -> Phase:
        key = None
        if info is not None:
            key = (info.title, info.description)
        # A finalized election never reopens, so an unfinalized one is new
        # even when it reuses the title and description
        reopened = (
            self._current == Phase.FINALIZED
            and info is not None
            and not info.is_finalized
        )
        if key != self._election_key or reopened:
            self._current = None
            self._election_key = key

        derived = phase_of(info, now)
        return self.advance(derived, ledger_finalized=bool(info and info.is_finalized))

    def advance(self, phase: Phase, ledger_finalized: bool = False) -> Phase:
        current = self._current

        if current is None:
            self._current = phase
            return phase

        if phase < current:
            logger.warning(
                "Ignoring phase regression",
                current=current.label,
                observed=phase.label,
            )
            return current

        if phase == Phase.FINALIZED and current != Phase.ENDED and not ledger_finalized:
            logger.warning(
                "Ignoring finalization outside ENDED",
                current=current.label,
            )
            return current

        if phase != current:
            logger.info("Election phase advanced", previous=current.label, phase=phase.label)
        self._current = phase
        return phase
