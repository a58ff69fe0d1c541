"""
Tests for snapshot integrity checks and audit fingerprints.

The hasher tests are the ground truth for audit exports: if any of
them changes, previously exported fingerprints stop verifying.
"""

from datetime import datetime, timedelta, timezone

import pytest

from electra.core import AuditHasher, CanonicalSerializationError, IntegrityValidator, verify_export
from electra.core.integrity import expected_turnout, fingerprint
from electra.schemas import (
    AuditExport,
    Candidate,
    ElectionInfo,
    ElectionSnapshot,
    ElectionStatistics,
    EventKind,
    IssueType,
    LedgerEventRecord,
    WinnerInfo,
)

from conftest import VOTER_1, VOTER_2


def make_snapshot(votes=(3, 1), registered=5, turnout=None, total=None,
                  winner_id=1, is_tie=False, inactive=()) -> ElectionSnapshot:
    candidates = [
        Candidate(id=i + 1, name=f"Candidate {i + 1}", party="Unity Party",
                  vote_count=v, is_active=(i + 1) not in inactive)
        for i, v in enumerate(votes)
    ]
    total = sum(votes) if total is None else total
    if turnout is None:
        turnout = expected_turnout(total, registered)
    return ElectionSnapshot(
        election=ElectionInfo(
            title="General Election",
            description="Student council",
            registration_deadline=1_000,
            start_time=2_000,
            end_time=3_000,
            total_voters=registered,
            total_votes=total,
        ),
        candidates=candidates,
        statistics=ElectionStatistics(
            total_registered_voters=registered,
            total_votes_cast=total,
            voter_turnout_percentage=turnout,
            active_candidates=len(votes) - len(inactive),
            total_candidates_count=len(votes),
        ),
        winner=WinnerInfo(winner_id=winner_id, max_votes=max(votes, default=0), is_tie=is_tie),
        taken_at=datetime.now(timezone.utc),
    )


def make_events() -> list[LedgerEventRecord]:
    now = datetime.now(timezone.utc)
    return [
        LedgerEventRecord(
            kind=EventKind.VOTE_CAST,
            fields={"voter": voter, "candidateID": candidate, "voteRecordID": i + 1},
            received_at=now,
            block_number=10 + i,
            tx_hash=f"0x{i:064x}",
            log_index=0,
        )
        for i, (voter, candidate) in enumerate([(VOTER_1, 1), (VOTER_2, 2)])
    ]


class TestHasher:

    def test_deterministic_hash(self):
        data = {"name": "test", "value": 42}
        assert AuditHasher.hash_data(data) == AuditHasher.hash_data(data)

    def test_hash_is_hex_sha256(self):
        digest = AuditHasher.hash_data({"a": 1})
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_sorted_keys(self):
        assert AuditHasher.hash_data({"b": 2, "a": 1}) == AuditHasher.hash_data({"a": 1, "b": 2})

    def test_recursively_sorted_keys(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert AuditHasher.hash_data(data1) == AuditHasher.hash_data(data2)

    def test_nulls_omitted(self):
        assert AuditHasher.canonicalize({"a": 1, "b": None}) == AuditHasher.canonicalize({"a": 1})

    def test_empty_values_preserved(self):
        assert AuditHasher.canonicalize({"a": ""}) != AuditHasher.canonicalize({"a": None})
        assert AuditHasher.canonicalize({"a": []}) != AuditHasher.canonicalize({})

    def test_version_marker(self):
        assert AuditHasher.canonicalize({}) == '{"__canon_v":1}'

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            AuditHasher.canonicalize({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        other_time = datetime(2024, 1, 1, 17, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        assert AuditHasher.hash_data({"t": utc_time}) == AuditHasher.hash_data({"t": other_time})

    def test_datetime_includes_microseconds(self):
        dt1 = datetime(2024, 1, 1, 12, 0, 0, 0, tzinfo=timezone.utc)
        dt2 = datetime(2024, 1, 1, 12, 0, 0, 1, tzinfo=timezone.utc)
        assert AuditHasher.hash_data({"t": dt1}) != AuditHasher.hash_data({"t": dt2})

    def test_floats_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            AuditHasher.canonicalize({"turnout": 66.6})

    def test_enums_use_value(self):
        assert AuditHasher.canonicalize({"k": EventKind.VOTE_CAST}) == \
            AuditHasher.canonicalize({"k": "VoteCast"})

    def test_models_are_accepted(self):
        candidate = Candidate(id=1, name="Alice", party="Unity")
        assert AuditHasher.hash_data(candidate) == AuditHasher.hash_data(candidate.model_dump())

    def test_verify(self):
        digest = AuditHasher.hash_data({"a": 1})
        assert AuditHasher.verify({"a": 1}, digest)
        assert AuditHasher.verify({"a": 1}, digest.upper())
        assert not AuditHasher.verify({"a": 2}, digest)
        assert not AuditHasher.verify({"a": 1.5}, digest)


class TestEventChain:

    def test_empty(self):
        assert AuditHasher.chain([]) == []

    def test_links_depend_on_predecessors(self):
        a, b, c = {"n": 1}, {"n": 2}, {"n": 3}
        links = AuditHasher.chain([a, b, c])
        assert links[0] == AuditHasher.chain_link(a)
        assert links[1] == AuditHasher.chain_link(b, links[0])
        assert AuditHasher.chain([a, c, b])[1:] != links[1:]

    def test_appending_keeps_earlier_links(self):
        entries = [{"n": i} for i in range(3)]
        assert AuditHasher.chain(entries + [{"n": 3}])[:3] == AuditHasher.chain(entries)


class TestIntegrityValidator:

    @pytest.fixture
    def validator(self):
        return IntegrityValidator()

    def test_consistent_snapshot(self, validator):
        report = validator.validate(make_snapshot())
        assert report.is_valid
        assert report.issues == []

    def test_vote_count_mismatch(self, validator):
        report = validator.validate(make_snapshot(votes=(3, 1), total=5, turnout=100))
        assert report.issue_types() == ["VOTE_COUNT_MISMATCH"]
        issue = report.issues[0]
        assert (issue.expected, issue.actual) == (5, 4)

    @pytest.mark.parametrize("reported,valid", [(80, True), (79, True), (81, True), (78, False), (82, False)])
    def test_turnout_tolerance(self, validator, reported, valid):
        # 4 of 5 registered voted: 80%
        report = validator.validate(make_snapshot(turnout=reported))
        assert report.is_valid is valid
        if not valid:
            assert report.issues[0].type == IssueType.TURNOUT_CALCULATION_ERROR

    def test_turnout_without_registrations(self, validator):
        assert expected_turnout(0, 0) == 0
        report = validator.validate(make_snapshot(votes=(0, 0), registered=0, turnout=0, winner_id=0))
        assert report.is_valid

    def test_turnout_rounds_down(self):
        assert expected_turnout(2, 3) == 66

    def test_winner_mismatch(self, validator):
        report = validator.validate(make_snapshot(votes=(3, 1), winner_id=2))
        assert report.issue_types() == ["WINNER_MISMATCH"]
        assert report.issues[0].expected == 1

    def test_tie_skips_winner_check(self, validator):
        assert validator.validate(make_snapshot(votes=(2, 2), winner_id=2, is_tie=True)).is_valid

    def test_no_votes_skips_winner_check(self, validator):
        assert validator.validate(make_snapshot(votes=(0, 0), winner_id=0)).is_valid

    def test_inactive_candidates_cannot_lead(self, validator):
        snapshot = make_snapshot(votes=(5, 1, 0), registered=6, winner_id=2, inactive=(1,))
        assert validator.validate(snapshot).is_valid

    def test_lowest_id_leads_equal_counts(self, validator):
        report = validator.validate(make_snapshot(votes=(1, 2, 2), winner_id=3))
        assert report.issues[0].type == IssueType.WINNER_MISMATCH
        assert report.issues[0].expected == 2

    def test_multiple_issues(self, validator):
        report = validator.validate(make_snapshot(votes=(3, 1), total=6, turnout=10, winner_id=2))
        assert set(report.issue_types()) == {
            "VOTE_COUNT_MISMATCH", "TURNOUT_CALCULATION_ERROR", "WINNER_MISMATCH",
        }


class TestAuditExport:

    @pytest.fixture
    def validator(self):
        return IntegrityValidator()

    def test_fingerprint_ignores_read_times(self, validator):
        first = validator.export_audit(make_snapshot(), make_events(), exported_by="auditor")
        second = validator.export_audit(make_snapshot(), make_events(), exported_by="auditor")
        assert first.exported_at <= second.exported_at
        assert first.fingerprint == second.fingerprint
        assert first.event_chain == second.event_chain

    def test_fingerprint_tracks_content(self, validator):
        first = validator.export_audit(make_snapshot(votes=(3, 1)), make_events())
        second = validator.export_audit(make_snapshot(votes=(2, 2), is_tie=True), make_events())
        assert first.fingerprint != second.fingerprint

    def test_export_carries_integrity_report(self, validator):
        export = validator.export_audit(make_snapshot(winner_id=2))
        assert not export.integrity.is_valid
        assert export.events == []
        assert export.event_chain == []

    def test_verify_untouched_export(self, validator):
        export = validator.export_audit(make_snapshot(), make_events())
        assert len(export.event_chain) == 2
        assert export.fingerprint == fingerprint(export)
        assert verify_export(export)

    def test_verify_after_json_round_trip(self, validator):
        export = validator.export_audit(make_snapshot(), make_events(), exported_by="cli")
        restored = AuditExport.model_validate_json(export.model_dump_json())
        assert verify_export(restored)

    def test_tampered_tally_detected(self, validator):
        export = validator.export_audit(make_snapshot(), make_events())
        export.snapshot.candidates[1].vote_count += 1
        assert not verify_export(export)

    def test_dropped_event_detected(self, validator):
        export = validator.export_audit(make_snapshot(), make_events())
        export.events.pop(0)
        assert not verify_export(export)

    def test_edited_event_detected(self, validator):
        export = validator.export_audit(make_snapshot(), make_events())
        export.events[1].fields["candidateID"] = 1
        assert not verify_export(export)

    def test_reordered_events_detected(self, validator):
        export = validator.export_audit(make_snapshot(), make_events())
        export.events.reverse()
        assert not verify_export(export)

    def test_forged_fingerprint_detected(self, validator):
        export = validator.export_audit(make_snapshot(), make_events())
        export.fingerprint = "0" * 64
        assert not verify_export(export)
