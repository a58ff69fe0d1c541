"""
Demonstration: Complete Election Lifecycle

This example runs a small student council election against the
in-memory ledger, from creation to a verified audit export.

Run with: python -m examples.demo_lifecycle
"""

import asyncio
import time

from electra.core import ElectionClient, LedgerRevert, verify_export
from electra.gateway import InMemoryLedger
from electra.schemas import EventKind

COMMISSIONER = "0x" + "a1" * 20
ADMIN = "0x" + "b2" * 20
VOTERS = ["0x" + "c3" * 20, "0x" + "d4" * 20, "0x" + "e5" * 20]

HOUR = 60 * 60


class DemoClock:
    """Wall clock that can be fast-forwarded between steps."""

    def __init__(self):
        self.offset = 0

    def __call__(self) -> float:
        return time.time() + self.offset

    def skip(self, seconds: int) -> None:
        self.offset += seconds


def banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


async def main():
    banner("Electra - Election Lifecycle Demonstration")
    print()

    clock = DemoClock()
    ledger = InMemoryLedger(owner=COMMISSIONER, clock=clock)
    client = ElectionClient(ledger, clock=clock)
    await client.start()

    votes_seen = []
    client.subscribe([EventKind.VOTE_CAST], on_event=votes_seen.append)

    print(f"Commissioner: {COMMISSIONER}")
    print(f"Phase: {(await client.get_phase()).label}")
    print()

    # ================================================================
    # STEP 1: ELECTION CREATED
    # ================================================================
    banner("STEP 1: ELECTION CREATED")

    await client.assign_role(ADMIN, "admin", from_address=COMMISSIONER)
    now = int(clock())
    result = await client.create_election(
        "Student Council 2024",
        "Annual election of the student council president",
        registration_deadline=now + HOUR,
        start_time=now + 2 * HOUR,
        end_time=now + 26 * HOUR,
        from_address=COMMISSIONER,
    )

    print("[OK] Election created")
    print(f"   Tx: {result.tx_hash[:18]}...")
    print(f"   Block: {result.block_number}")
    print(f"   Phase: {(await client.get_phase()).label}")
    print()

    # ================================================================
    # STEP 2: CANDIDATES AND VOTERS
    # ================================================================
    banner("STEP 2: CANDIDATES AND VOTERS")

    for name, party, manifesto in [
        ("Alice Smith", "Unity Party", "Longer library hours and a quiet study floor"),
        ("Bob Jones", "Reform Party", "A student voice on every faculty committee"),
    ]:
        await client.add_candidate(name, party, manifesto, from_address=ADMIN)
        print(f"[OK] Candidate added: {name} ({party})")

    for voter in VOTERS[:2]:
        await client.register_voter(voter, from_address=ADMIN)
        print(f"[OK] Voter registered by admin: {voter[:10]}...")
    await client.self_register(from_address=VOTERS[2])
    print(f"[OK] Voter self-registered: {VOTERS[2][:10]}...")

    stats = await client.get_statistics()
    print(f"   Registered voters: {stats.total_registered_voters}")
    print()

    # ================================================================
    # STEP 3: VOTING
    # ================================================================
    banner("STEP 3: VOTING")

    clock.skip(2 * HOUR)
    print(f"Phase: {(await client.get_phase()).label}")

    for voter, candidate_id in zip(VOTERS, [1, 2, 1]):
        result = await client.vote(candidate_id, from_address=voter)
        print(f"[OK] {voter[:10]}... voted for candidate #{candidate_id} (block {result.block_number})")

    try:
        await client.vote(2, from_address=VOTERS[0])
    except LedgerRevert as e:
        print(f"[REJECTED] Second vote: {e.message}")

    voter = await client.get_voter(VOTERS[0])
    receipt_ok = await client.verify_vote(VOTERS[0], voter.verification_hash)
    print(f"   Vote receipt verified: {'[YES]' if receipt_ok else '[NO]'}")
    print()

    # ================================================================
    # STEP 4: CLOSE AND FINALIZE
    # ================================================================
    banner("STEP 4: CLOSE AND FINALIZE")

    await client.end_voting(from_address=COMMISSIONER)
    print(f"[OK] Voting ended - phase: {(await client.get_phase()).label}")
    await client.finalize_election(from_address=COMMISSIONER)
    print(f"[OK] Election finalized - phase: {(await client.get_phase()).label}")

    winner = await client.get_winner()
    stats = await client.get_statistics()
    print(f"   Winner: {winner.winner_name} ({winner.winner_party}) with {winner.max_votes} votes")
    print(f"   Turnout: {stats.voter_turnout_percentage}%")
    print()

    # ================================================================
    # VERIFICATION
    # ================================================================
    banner("VERIFICATION")

    report = await client.validate_integrity()
    print(f"Integrity: {'[VALID]' if report.is_valid else '[ISSUES] ' + ', '.join(report.issue_types())}")

    export = await client.export_audit(exported_by="demo")
    print(f"Audit events: {len(export.events)}")
    print(f"Fingerprint: {export.fingerprint[:32]}...")
    print(f"Export verified: {'[YES]' if verify_export(export) else '[NO]'}")

    export.snapshot.candidates[1].vote_count += 1
    print(f"Tampered export verified: {'[YES]' if verify_export(export) else '[NO]'}")
    print()

    # ================================================================
    # TRANSACTION HISTORY
    # ================================================================
    banner("TRANSACTION HISTORY")

    for entry in reversed(client.get_transaction_history(limit=20)):
        status = "ok" if entry.success else "failed"
        print(f"  {entry.timestamp.strftime('%H:%M:%S')} | {entry.method:<18} | {status}")

    await client.close()
    print()
    print(f"Vote events observed live: {len(votes_seen)}")
    banner("DEMONSTRATION COMPLETE")


if __name__ == "__main__":
    asyncio.run(main())
