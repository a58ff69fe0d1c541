"""
Integrity Validator

Pure consistency checks over one ElectionSnapshot. Nothing here reads
the ledger or mutates state; the validator is safe to use as a test
oracle.

Checks:
- VOTE_COUNT_MISMATCH: sum of candidate votes != reported votes cast
- TURNOUT_CALCULATION_ERROR: reported turnout more than 1 point away
  from floor(votes * 100 / registered) (0 when nobody is registered)
- WINNER_MISMATCH: with votes cast, the declared winner is not the
  top active candidate and no tie is flagged
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from ..observability import get_logger
from ..schemas import (
    AuditExport,
    ElectionSnapshot,
    IntegrityIssue,
    IntegrityReport,
    IssueType,
    LedgerEventRecord,
)
from .hasher import AuditHasher

logger = get_logger(__name__)

TURNOUT_TOLERANCE = 1


def expected_turnout(votes_cast: int, registered: int) -> int:
    if registered <= 0:
        return 0
    return votes_cast * 100 // registered


class IntegrityValidator:

    def validate(self, snapshot: ElectionSnapshot) -> IntegrityReport:
        issues: list[IntegrityIssue] = []
        stats = snapshot.statistics

        counted = sum(c.vote_count for c in snapshot.candidates)
        if counted != stats.total_votes_cast:
            issues.append(IntegrityIssue(
                type=IssueType.VOTE_COUNT_MISMATCH,
                message="Candidate vote counts do not add up to total votes cast",
                expected=stats.total_votes_cast,
                actual=counted,
            ))

        turnout = expected_turnout(stats.total_votes_cast, stats.total_registered_voters)
        if abs(stats.voter_turnout_percentage - turnout) > TURNOUT_TOLERANCE:
            issues.append(IntegrityIssue(
                type=IssueType.TURNOUT_CALCULATION_ERROR,
                message="Reported turnout does not match votes cast and registered voters",
                expected=turnout,
                actual=stats.voter_turnout_percentage,
            ))

        if stats.total_votes_cast > 0 and not snapshot.winner.is_tie:
            leader = self._leader(snapshot)
            if leader is not None and leader != snapshot.winner.winner_id:
                issues.append(IntegrityIssue(
                    type=IssueType.WINNER_MISMATCH,
                    message="Declared winner is not the candidate with the most votes",
                    expected=leader,
                    actual=snapshot.winner.winner_id,
                ))

        report = IntegrityReport(
            is_valid=not issues,
            issues=issues,
            checked_at=datetime.now(timezone.utc),
        )
        if issues:
            logger.warning("Integrity check failed", issues=report.issue_types())
        return report

    @staticmethod
    def _leader(snapshot: ElectionSnapshot) -> Optional[int]:
        active = [c for c in snapshot.candidates if c.is_active]
        if not active:
            return None
        # Lowest id wins an untied maximum; ties are flagged by the ledger
        return max(active, key=lambda c: (c.vote_count, -c.id)).id

    def export_audit(
        self,
        snapshot: ElectionSnapshot,
        events: Optional[Iterable[LedgerEventRecord]] = None,
        exported_by: Optional[str] = None,
    ) -> AuditExport:
        """
        Build a fingerprinted audit document.

        Re-running the export over the same snapshot and events yields
        the same fingerprint; read, export and check times are not
        hashed.
        """
        events = list(events or [])
        report = self.validate(snapshot)
        export = AuditExport(
            exported_at=datetime.now(timezone.utc),
            exported_by=exported_by,
            snapshot=snapshot,
            integrity=report,
            events=events,
            event_chain=AuditHasher.chain(_event_identity(e) for e in events),
        )
        export.fingerprint = fingerprint(export)
        logger.info("Audit exported", events=len(events), fingerprint=export.fingerprint)
        return export


def _event_identity(event: LedgerEventRecord) -> dict:
    return event.model_dump(mode="python", exclude={"received_at"})


# Timestamps that vary between exports of the same ledger state
_UNHASHED = {
    "fingerprint": True,
    "exported_at": True,
    "snapshot": {"taken_at"},
    "integrity": {"checked_at"},
    "events": {"__all__": {"received_at"}},
}


def fingerprint(export: AuditExport) -> str:
    return AuditHasher.hash_data(export.model_dump(mode="python", exclude=_UNHASHED))


def verify_export(export: AuditExport) -> bool:
    """True when the export's events and content still match its chain and fingerprint."""
    links = AuditHasher.chain(_event_identity(e) for e in export.events)
    if links != export.event_chain:
        return False
    return AuditHasher.verify(
        export.model_dump(mode="python", exclude=_UNHASHED),
        export.fingerprint,
    )
