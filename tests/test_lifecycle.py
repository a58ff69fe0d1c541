"""
End-to-end election lifecycle against the in-memory ledger.

Demonstrates the complete flow:
1. Create an election and add candidates
2. Register voters (by an admin and by self-registration)
3. Vote, including a rejected double vote
4. End and finalize
5. Validate integrity and verify the audit export
"""

import asyncio

import pytest

from electra.core import LedgerRevert, Phase, verify_export
from electra.schemas import EventKind

from conftest import (
    ADMIN,
    DAY,
    HOUR,
    OWNER,
    STRANGER,
    VOTER_1,
    VOTER_2,
    VOTER_3,
    make_client,
    open_election,
    wait_until,
)


class TestElectionLifecycle:

    def test_full_election(self, client, ledger, clock):
        async def scenario():
            await client.start()
            await wait_until(lambda: ledger.stream_count == 1)
            seen = client.subscribe()
            phases = [await client.get_phase()]

            await client.assign_role(ADMIN, "admin", from_address=OWNER)
            now = int(clock())
            await client.create_election(
                "General Election 2024", "Election of the student council",
                now + HOUR, now + 2 * HOUR, now + DAY, from_address=OWNER,
            )
            phases.append(await client.get_phase())

            await client.add_candidate("Alice Smith", "Unity Party", "A manifesto for everyone", from_address=ADMIN)
            await client.add_candidate("Bob Jones", "Reform Party", "A manifesto for everyone", from_address=ADMIN)
            await client.register_voter(VOTER_1, from_address=ADMIN)
            await client.register_voter(VOTER_3, from_address=ADMIN)
            await client.self_register(from_address=VOTER_2)
            before_voting = await client.get_permissions(VOTER_1)

            clock.advance(2 * HOUR)
            phases.append(await client.get_phase())
            can_vote = (await client.get_permissions(VOTER_1)).can_vote

            await client.vote(1, from_address=VOTER_1)
            leader = await client.get_winner()

            await client.vote(2, from_address=VOTER_2)
            tied = await client.get_winner()
            stats = await client.get_statistics()

            sent = len(ledger.sent)
            with pytest.raises(LedgerRevert) as double_vote:
                await client.vote(2, from_address=VOTER_1)
            assert len(ledger.sent) == sent
            after_voting = await client.get_permissions(VOTER_1)

            voter_1 = await client.get_voter(VOTER_1)
            receipt_ok = await client.verify_vote(VOTER_1, voter_1.verification_hash)
            receipt_wrong = await client.verify_vote(VOTER_2, voter_1.verification_hash)

            await client.end_voting(from_address=OWNER)
            phases.append(await client.get_phase())
            await client.finalize_election(from_address=OWNER)
            phases.append(await client.get_phase())
            info = await client.get_election_info()

            report = await client.validate_integrity()
            export = await client.export_audit(exported_by="auditor")

            await wait_until(lambda: len(client.monitor.recent_events) == 8)
            await client.close()
            observed = [event async for event in seen]

            return dict(
                phases=phases, before_voting=before_voting, can_vote=can_vote,
                leader=leader, tied=tied, stats=stats, double_vote=double_vote.value,
                after_voting=after_voting, receipt_ok=receipt_ok, receipt_wrong=receipt_wrong,
                info=info, report=report, export=export, observed=observed,
            )

        r = asyncio.run(scenario())

        assert r["phases"] == [
            Phase.SETUP, Phase.REGISTRATION, Phase.VOTING, Phase.ENDED, Phase.FINALIZED,
        ]
        assert r["before_voting"].is_registered
        assert not r["before_voting"].can_vote
        assert r["can_vote"]

        assert r["leader"].winner_id == 1
        assert not r["leader"].is_tie
        assert r["tied"].is_tie
        assert r["tied"].max_votes == 1
        assert r["stats"].total_votes_cast == 2
        assert r["stats"].total_registered_voters == 3
        assert r["stats"].voter_turnout_percentage == 66

        assert r["double_vote"].reason == "Already voted"
        assert r["double_vote"].message == "You have already cast your vote"
        assert r["after_voting"].has_voted
        assert not r["after_voting"].can_vote

        assert r["receipt_ok"] is True
        assert r["receipt_wrong"] is False

        assert r["info"].is_finalized
        assert r["info"].winner_id == 1

        assert r["report"].is_valid
        export = r["export"]
        assert export.exported_by == "auditor"
        assert export.integrity.is_valid
        assert [e.kind for e in export.events].count(EventKind.VOTE_CAST) == 2
        assert len(export.event_chain) == len(export.events) == 8
        assert verify_export(export)

        kinds = [e.kind for e in r["observed"]]
        assert kinds.count(EventKind.CANDIDATE_ADDED) == 2
        assert kinds.count(EventKind.VOTER_REGISTERED) == 3
        assert kinds.count(EventKind.VOTE_CAST) == 2
        assert kinds[-1] == EventKind.ELECTION_ENDED

    def test_transaction_history_covers_every_write(self, client, clock):
        async def scenario():
            await open_election(client, clock, voters=[VOTER_1])
            await client.start_voting(from_address=OWNER)
            await client.vote(1, from_address=VOTER_1)

        asyncio.run(scenario())
        history = client.get_transaction_history(limit=10)
        assert [h.method for h in history] == [
            "vote", "startVoting", "registerVoter", "addCandidate", "addCandidate", "createElection",
        ]
        assert all(h.success for h in history)
        assert client.transactions.outstanding() == []

    def test_context_manager_runs_monitor(self, ledger, clock):
        async def scenario():
            async with make_client(ledger, clock) as client:
                running = client.monitor.is_running
                status = await client.system_status()
            return running, status, client.monitor.is_running

        running, status, after = asyncio.run(scenario())
        assert running
        assert not after
        assert status["block_number"] == 0
        assert status["event_monitor"]["running"]
        assert status["outstanding_transactions"] == 0


class TestLedgerRules:
    """Contract rules surface as LedgerReverts with readable messages."""

    def test_stranger_cannot_add_candidates(self, client, ledger, clock):
        async def scenario():
            await open_election(client, clock)
            sent = len(ledger.sent)
            with pytest.raises(LedgerRevert) as exc:
                await client.add_candidate("Eve Black", "Shadow Party", "Trust me, honestly", from_address=STRANGER)
            return sent, exc.value

        sent, error = asyncio.run(scenario())
        assert error.message == "Unauthorized: Admin access required"
        assert len(ledger.sent) == sent

    def test_registration_closes_at_deadline(self, client, clock):
        async def scenario():
            await open_election(client, clock)
            clock.advance(HOUR)
            with pytest.raises(LedgerRevert) as exc:
                await client.register_voter(VOTER_1, from_address=OWNER)
            return exc.value, await client.get_permissions(VOTER_1)

        error, perms = asyncio.run(scenario())
        assert error.message == "Voter registration has closed"
        assert perms.phase == Phase.PREPARATION
        assert not perms.can_register

    def test_voting_needs_two_candidates(self, client, clock):
        async def scenario():
            await open_election(client, clock, candidates=[("Alice Smith", "Unity Party")])
            with pytest.raises(LedgerRevert) as exc:
                await client.start_voting(from_address=OWNER)
            return exc.value

        error = asyncio.run(scenario())
        assert error.reason == "Need at least 2 candidates"

    def test_explicit_start_opens_voting_early(self, client, clock):
        async def scenario():
            await open_election(client, clock, voters=[VOTER_1])
            await client.start_voting(from_address=OWNER)
            return await client.get_phase(), await client.get_permissions(VOTER_1)

        phase, perms = asyncio.run(scenario())
        assert phase == Phase.VOTING
        assert perms.can_vote

    def test_inactive_candidate_cannot_receive_votes(self, client, clock):
        async def scenario():
            await open_election(client, clock, voters=[VOTER_1], candidates=[
                ("Alice Smith", "Unity Party"),
                ("Bob Jones", "Reform Party"),
                ("Carol White", "Green Party"),
            ])
            await client.deactivate_candidate(3, from_address=OWNER)
            await client.start_voting(from_address=OWNER)
            with pytest.raises(LedgerRevert) as exc:
                await client.vote(3, from_address=VOTER_1)
            stats = await client.get_statistics()
            return exc.value, stats

        error, stats = asyncio.run(scenario())
        assert error.message == "Selected candidate is no longer active"
        assert stats.active_candidates == 2
        assert stats.total_candidates_count == 3

    def test_finalize_requires_votes(self, client, clock):
        async def scenario():
            await open_election(client, clock, voters=[VOTER_1])
            await client.start_voting(from_address=OWNER)
            await client.end_voting(from_address=OWNER)
            with pytest.raises(LedgerRevert) as exc:
                await client.finalize_election(from_address=OWNER)
            return exc.value, await client.get_phase()

        error, phase = asyncio.run(scenario())
        assert error.message == "Cannot finalize an election without votes"
        assert phase == Phase.ENDED

    def test_new_election_after_finalization(self, client, clock):
        async def scenario():
            await open_election(client, clock, voters=[VOTER_1])
            await client.start_voting(from_address=OWNER)
            await client.vote(1, from_address=VOTER_1)
            await client.end_voting(from_address=OWNER)
            await client.finalize_election(from_address=OWNER)
            assert await client.get_phase() == Phase.FINALIZED

            now = int(clock())
            await client.create_election(
                "By-election 2024", "Vacancy on the student council",
                now + HOUR, now + 2 * HOUR, now + DAY, from_address=OWNER,
            )
            return await client.get_phase(), await client.get_voter(VOTER_1)

        phase, voter = asyncio.run(scenario())
        assert phase == Phase.REGISTRATION
        assert not voter.is_registered

    def test_new_election_reusing_title_after_finalization(self, client, clock):
        async def scenario():
            await open_election(client, clock, voters=[VOTER_1])
            await client.start_voting(from_address=OWNER)
            await client.vote(1, from_address=VOTER_1)
            await client.end_voting(from_address=OWNER)
            await client.finalize_election(from_address=OWNER)
            assert await client.get_phase() == Phase.FINALIZED

            await open_election(client, clock)
            info = await client.get_election_info()
            return info, await client.get_phase(), await client.get_permissions(VOTER_2)

        info, phase, permissions = asyncio.run(scenario())
        assert info.title == "General Election 2024"
        assert info.is_finalized is False
        assert phase == Phase.REGISTRATION
        assert permissions.can_register
