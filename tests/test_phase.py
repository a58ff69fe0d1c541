"""Tests for phase derivation, permissions and the phase tracker."""

import pytest

from electra.core import Phase, PhaseTracker, derive_permissions, phase_of, time_info
from electra.schemas import ElectionInfo, Role, UserRole, Voter

from conftest import VOTER_1

REG = 1_000
START = 2_000
END = 3_000


def make_info(**overrides) -> ElectionInfo:
    data = dict(
        title="General Election",
        description="Student council",
        registration_deadline=REG,
        start_time=START,
        end_time=END,
    )
    data.update(overrides)
    return ElectionInfo(**data)


def make_role(role: Role, active: bool = True) -> UserRole:
    return UserRole(address=VOTER_1, role=role, is_active=active)


class TestPhaseOf:

    def test_no_election_is_setup(self):
        assert phase_of(None, 0) == Phase.SETUP

    @pytest.mark.parametrize("now,expected", [
        (REG - 1, Phase.REGISTRATION),
        (REG, Phase.PREPARATION),
        (START - 1, Phase.PREPARATION),
        (START, Phase.VOTING),
        (END, Phase.VOTING),
        (END + 1, Phase.ENDED),
    ])
    def test_boundaries(self, now, expected):
        assert phase_of(make_info(), now) == expected

    def test_finalized_overrides_time(self):
        assert phase_of(make_info(is_finalized=True), START) == Phase.FINALIZED

    def test_label(self):
        assert Phase.VOTING.label == "voting"


class TestPermissions:

    def test_unregistered_voter_during_registration(self):
        perms = derive_permissions(None, None, Phase.REGISTRATION)
        assert perms.can_register
        assert not perms.can_vote
        assert not perms.can_add_candidate

    def test_registered_voter_can_vote_once(self):
        voter = Voter(address=VOTER_1, is_registered=True)
        assert derive_permissions(voter, None, Phase.VOTING).can_vote

        voted = Voter(address=VOTER_1, is_registered=True, has_voted=True)
        perms = derive_permissions(voted, None, Phase.VOTING)
        assert not perms.can_vote
        assert perms.has_voted

    def test_admin_adds_candidates_before_voting(self):
        role = make_role(Role.ADMIN)
        assert derive_permissions(None, role, Phase.PREPARATION).can_add_candidate
        assert not derive_permissions(None, role, Phase.VOTING).can_add_candidate
        assert not derive_permissions(None, role, Phase.PREPARATION).can_start_voting

    def test_commissioner_lifecycle_actions(self):
        role = make_role(Role.COMMISSIONER)
        assert derive_permissions(None, role, Phase.PREPARATION).can_start_voting
        assert derive_permissions(None, role, Phase.VOTING).can_end_voting
        assert derive_permissions(None, role, Phase.ENDED).can_finalize
        assert not derive_permissions(None, role, Phase.FINALIZED).can_finalize

    def test_inactive_role_confers_nothing(self):
        role = make_role(Role.COMMISSIONER, active=False)
        perms = derive_permissions(None, role, Phase.PREPARATION)
        assert not perms.is_admin
        assert not perms.can_start_voting

    def test_to_dict_uses_phase_label(self):
        data = derive_permissions(None, None, Phase.ENDED).to_dict()
        assert data["phase"] == "ended"
        assert data["can_vote"] is False


class TestTimeInfo:

    def test_remaining_seconds(self):
        data = time_info(make_info(), REG - 10)
        assert data["registration_time_remaining"] == 10
        assert data["time_until_start"] == START - REG + 10
        assert data["is_registration_open"] is True
        assert data["is_voting_active"] is False

    def test_passed_boundaries_are_zero(self):
        data = time_info(make_info(), END + 100)
        assert data["voting_time_remaining"] == 0
        assert data["registration_time_remaining"] == 0

    def test_no_election(self):
        assert time_info(None, 0) == {}


class TestPhaseTracker:

    def test_advances_forward(self):
        tracker = PhaseTracker()
        info = make_info()
        assert tracker.observe(info, REG - 1) == Phase.REGISTRATION
        assert tracker.observe(info, START) == Phase.VOTING
        assert tracker.current == Phase.VOTING

    def test_refuses_regression(self):
        tracker = PhaseTracker()
        info = make_info()
        tracker.observe(info, END + 1)
        assert tracker.observe(info, START) == Phase.ENDED

    def test_stale_read_after_time_change_does_not_regress(self):
        tracker = PhaseTracker()
        # Voting started early: the ledger moved the start time back
        started = make_info(registration_deadline=500, start_time=500)
        assert tracker.observe(started, 600) == Phase.VOTING

        stale = make_info()
        assert tracker.observe(stale, 600) == Phase.VOTING

    def test_finalized_only_after_ended(self):
        tracker = PhaseTracker()
        tracker.advance(Phase.VOTING)
        assert tracker.advance(Phase.FINALIZED) == Phase.VOTING
        tracker.advance(Phase.ENDED)
        assert tracker.advance(Phase.FINALIZED) == Phase.FINALIZED

    def test_ledger_finalization_is_accepted(self):
        tracker = PhaseTracker()
        tracker.observe(make_info(), START)
        finalized = make_info(is_finalized=True)
        assert tracker.observe(finalized, START) == Phase.FINALIZED

    def test_new_election_resets(self):
        tracker = PhaseTracker()
        tracker.observe(make_info(is_finalized=True), END + 1)
        second = make_info(title="By-election", registration_deadline=END + 100,
                           start_time=END + 200, end_time=END + 300)
        assert tracker.observe(second, END + 2) == Phase.REGISTRATION

    def test_reused_title_after_finalization_resets(self):
        tracker = PhaseTracker()
        tracker.observe(make_info(is_finalized=True), END + 1)
        again = make_info(registration_deadline=END + 100, start_time=END + 200, end_time=END + 300)
        assert tracker.observe(again, END + 2) == Phase.REGISTRATION
