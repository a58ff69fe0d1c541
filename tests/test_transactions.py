"""
Tests for the transaction manager.

Covers gas pricing, retry policy, nonce handling, the transaction state
machine and reconciliation of timed-out writes.
"""

import asyncio

import pytest

from electra.config import GWEI, ClientConfig
from electra.core import (
    InsufficientFunds,
    LedgerRevert,
    TransactionTimeout,
    UserRejected,
)
from electra.core.transactions import DEFAULT_GAS_LIMITS, new_tx_id
from electra.gateway import InMemoryLedger, LedgerRPCError, LedgerTimeoutError
from electra.gateway.memory import GAS_COSTS
from electra.observability import MetricsCollector
from electra.schemas import EventKind, TxStatus

from conftest import (
    OWNER,
    VOTER_1,
    VOTER_2,
    FakeSleep,
    make_client,
    open_election,
)


async def start_voting(client, clock, voters=(VOTER_1, VOTER_2)):
    await open_election(client, clock, voters=voters)
    await client.start_voting(from_address=OWNER)


class TestGas:

    def test_estimate_is_buffered(self, client, ledger, clock):
        async def scenario():
            await start_voting(client, clock)
            return await client.vote(1, from_address=VOTER_1)

        result = asyncio.run(scenario())
        tx = client.get_transaction(result.tx_id)
        assert tx.gas_limit == int(GAS_COSTS["vote"] * 1.2)
        assert ledger.sent[-1].gas == tx.gas_limit

    def test_gas_price_is_capped(self, clock):
        ledger = InMemoryLedger(owner=OWNER, clock=clock, gas_price=100 * GWEI)
        client = make_client(ledger, clock, config=ClientConfig(max_gas_price=50 * GWEI))

        asyncio.run(open_election(client, clock))
        assert {tx.gas_price for tx in ledger.sent} == {50 * GWEI}

    def test_gas_price_below_cap_is_used(self, client, ledger, clock):
        asyncio.run(open_election(client, clock))
        assert ledger.sent[0].gas_price == 20 * GWEI

    def test_gas_price_failure_uses_ceiling(self, client, ledger, clock):
        ledger.inject_failure("gas_price", LedgerRPCError("method not available"))
        asyncio.run(open_election(client, clock))
        assert ledger.sent[0].gas_price == client.config.max_gas_price

    def test_estimation_failure_falls_back_to_default_limit(self, client, ledger, clock):
        async def scenario():
            await start_voting(client, clock)
            ledger.inject_failure("estimate_gas", LedgerRPCError("gas required exceeds allowance"))
            return await client.vote(2, from_address=VOTER_1)

        result = asyncio.run(scenario())
        assert client.get_transaction(result.tx_id).gas_limit == DEFAULT_GAS_LIMITS["vote"]

    def test_explicit_gas_skips_estimation(self, client, ledger, clock):
        async def scenario():
            await start_voting(client, clock)
            ledger.inject_failure("estimate_gas", LedgerRPCError("should not be called"))
            return await client.vote(1, from_address=VOTER_1, options={"gas": 150_000})

        result = asyncio.run(scenario())
        assert ledger.sent[-1].gas == 150_000
        assert result.gas_used == GAS_COSTS["vote"]

    def test_simulate(self, client, clock):
        async def scenario():
            await start_voting(client, clock)
            ok = await client.simulate("vote", [1], VOTER_1)
            await client.vote(1, from_address=VOTER_1)
            again = await client.simulate("vote", [1], VOTER_1)
            return ok, again

        ok, again = asyncio.run(scenario())
        assert ok.success
        assert ok.gas_estimate == GAS_COSTS["vote"]
        assert ok.gas_estimate_with_buffer == int(GAS_COSTS["vote"] * 1.2)
        assert not again.success
        assert again.error == "You have already cast your vote"


class TestRetryPolicy:

    def test_revert_is_not_retried(self, client, ledger, clock, sleeper):
        async def scenario():
            await start_voting(client, clock)
            await client.vote(1, from_address=VOTER_1)
            sent = len(ledger.sent)
            with pytest.raises(LedgerRevert) as exc:
                await client.vote(2, from_address=VOTER_1)
            return sent, exc.value

        sent_before, error = asyncio.run(scenario())
        assert error.reason == "Already voted"
        assert error.message == "You have already cast your vote"
        assert len(ledger.sent) == sent_before
        assert sleeper.calls == []

        tx = client.get_transaction(error.tx_id)
        assert tx.status == TxStatus.FAILED
        assert tx.error["kind"] == "LEDGER_REVERT"

        latest = client.get_transaction_history(1)[0]
        assert not latest.success
        assert latest.error == "You have already cast your vote"

    def test_insufficient_funds_is_not_retried(self, client, ledger, clock, sleeper):
        ledger.inject_failure("send_transaction", LedgerRPCError("insufficient funds for gas * price + value"))
        with pytest.raises(InsufficientFunds):
            asyncio.run(open_election(client, clock))
        assert sleeper.calls == []
        assert ledger.sent == []

    def test_user_rejection_is_not_retried(self, client, ledger, clock, sleeper):
        ledger.inject_failure("send_transaction", LedgerRPCError("User denied transaction signature", code=4001))
        with pytest.raises(UserRejected):
            asyncio.run(open_election(client, clock))
        assert sleeper.calls == []

    def test_transient_failures_retry_with_backoff(self, client, ledger, clock, sleeper):
        ledger.inject_failure("send_transaction", LedgerTimeoutError("slow node"), times=2)
        asyncio.run(open_election(client, clock))

        first = client.get_transaction_history(10)[-1]
        assert first.success
        assert sleeper.calls == [1.0, 2.0]
        assert client.get_transaction(first.tx_id).retry_count == 2

    def test_exhausted_timeouts_raise_transaction_timeout(self, ledger, clock, sleeper):
        metrics = MetricsCollector()
        client = make_client(ledger, clock, sleeper, config=ClientConfig(max_retries=3), metrics=metrics)
        ledger.inject_failure("send_transaction", LedgerTimeoutError("slow node"), times=3)

        with pytest.raises(TransactionTimeout):
            asyncio.run(open_election(client, clock))
        assert sleeper.calls == [1.0, 2.0]
        assert metrics.tx_retried == 2
        assert metrics.tx_failed == 1
        assert ledger.sent == []

    def test_nonce_conflict_refetches_nonce(self, client, ledger, clock, sleeper):
        # A stale cached nonce from an earlier session
        client.cache.set(f"nonce:{OWNER.lower()}", 7)
        asyncio.run(open_election(client, clock))

        first = client.get_transaction_history(10)[-1]
        tx = client.get_transaction(first.tx_id)
        assert tx.status == TxStatus.CONFIRMED
        assert tx.nonce == 0
        assert tx.retry_count == 1
        assert sleeper.calls == [1.0]

    def test_cancel_stops_retries(self, ledger, clock):
        # Cancel while the first retry is backing off
        sleeper = FakeSleep(on_sleep=lambda _: client.cancel_transaction("tx_mine"))
        client = make_client(ledger, clock, sleeper)
        ledger.inject_failure("send_transaction", LedgerTimeoutError("slow node"), times=3)

        async def scenario():
            now = int(clock())
            await client.create_election(
                "General Election 2024", "Election of the student council",
                now + 3600, now + 7200, now + 86400,
                from_address=OWNER, options={"tx_id": "tx_mine"},
            )

        with pytest.raises(UserRejected, match="cancelled"):
            asyncio.run(scenario())
        assert client.get_transaction("tx_mine").status == TxStatus.FAILED
        assert ledger.sent == []

    def test_cancel_unknown_transaction(self, client):
        assert client.cancel_transaction("tx_unknown") is False


class TestNonces:

    def test_concurrent_writes_get_distinct_nonces(self, clock):
        class SlowLedger(InMemoryLedger):
            async def transaction_count(self, address):
                await asyncio.sleep(0)
                return await super().transaction_count(address)

            async def send_transaction(self, request):
                await asyncio.sleep(0)
                return await super().send_transaction(request)

        ledger = SlowLedger(owner=OWNER, clock=clock)
        client = make_client(ledger, clock)
        voters = ["0x" + f"{i:02x}" * 20 for i in range(1, 6)]

        async def scenario():
            await open_election(client, clock)
            return await asyncio.gather(*(
                client.register_voter(v, from_address=OWNER) for v in voters
            ))

        results = asyncio.run(scenario())
        assert all(r.success for r in results)

        nonces = [tx.nonce for tx in ledger.sent if tx.method == "registerVoter"]
        assert sorted(nonces) == list(range(3, 8))

    def test_nonces_are_per_account(self, client, ledger, clock):
        async def scenario():
            await start_voting(client, clock)
            await client.vote(1, from_address=VOTER_1)
            await client.vote(2, from_address=VOTER_2)

        asyncio.run(scenario())
        votes = [tx for tx in ledger.sent if tx.method == "vote"]
        assert [tx.nonce for tx in votes] == [0, 0]


class TestConfirmation:

    def test_confirmed_write_records_history(self, client, clock):
        async def scenario():
            await start_voting(client, clock)
            return await client.vote(1, from_address=VOTER_1)

        result = asyncio.run(scenario())
        assert result.success
        tx = client.get_transaction(result.tx_id)
        assert tx.status == TxStatus.CONFIRMED
        assert tx.block_number == result.block_number

        history = client.get_transaction_history(2)
        assert history[0].method == "vote"
        assert history[0].hash == result.tx_hash
        assert history[1].method == "startVoting"

    def test_reverted_receipt_marks_failed(self, client, ledger, clock):
        async def scenario():
            await start_voting(client, clock)
            with pytest.raises(LedgerRevert) as exc:
                await client.vote(1, from_address=VOTER_1, options={"gas": 1_000})
            return exc.value

        error = asyncio.run(scenario())
        assert error.reason == "out of gas"
        tx = client.get_transaction(error.tx_id)
        assert tx.status == TxStatus.FAILED
        assert tx.hash is not None

    def test_receipt_timeout_then_reconcile(self, ledger, clock):
        metrics = MetricsCollector()
        client = make_client(ledger, clock, metrics=metrics)

        async def scenario():
            await start_voting(client, clock)
            before = await client.get_candidates()
            ledger.inject_failure("wait_for_receipt", LedgerTimeoutError("no receipt yet"))
            with pytest.raises(TransactionTimeout) as exc:
                await client.vote(1, from_address=VOTER_1)
            error = exc.value
            timed_out = client.get_transaction(error.tx_id).status

            for raw in await ledger.get_past_events(EventKind.VOTE_CAST):
                await client.monitor.process(raw)
            after = await client.get_candidates()
            return error, timed_out, before, after

        error, timed_out, before, after = asyncio.run(scenario())
        assert error.tx_hash is not None
        assert timed_out == TxStatus.TIMED_OUT
        assert metrics.tx_timed_out == 1

        tx = client.get_transaction(error.tx_id)
        assert tx.status == TxStatus.CONFIRMED
        assert client.get_transaction_history(1)[0].success
        assert before[0].vote_count == 0
        assert after[0].vote_count == 1

    def test_event_before_receipt_counts_one_confirmation(self, ledger, clock):
        metrics = MetricsCollector()
        client = make_client(ledger, clock, metrics=metrics)
        wait_for_receipt = ledger.wait_for_receipt

        async def event_first(tx_hash, timeout):
            for raw in await ledger.get_past_events(EventKind.VOTE_CAST):
                await client.monitor.process(raw)
            return await wait_for_receipt(tx_hash, timeout)

        async def scenario():
            await start_voting(client, clock)
            confirmed = metrics.tx_confirmed
            ledger.wait_for_receipt = event_first
            result = await client.vote(1, from_address=VOTER_1)
            return result, confirmed

        result, confirmed_before = asyncio.run(scenario())
        tx = client.get_transaction(result.tx_id)
        assert tx.status == TxStatus.CONFIRMED
        assert tx.gas_used == result.gas_used
        assert metrics.tx_confirmed == confirmed_before + 1
        assert [entry.method for entry in client.get_transaction_history(1)] == ["vote"]

    def test_timed_out_write_is_not_resent(self, client, ledger, clock, sleeper):
        async def scenario():
            await start_voting(client, clock)
            sent = len(ledger.sent)
            ledger.inject_failure("wait_for_receipt", LedgerTimeoutError("no receipt yet"))
            with pytest.raises(TransactionTimeout):
                await client.vote(1, from_address=VOTER_1)
            return sent

        sent_before = asyncio.run(scenario())
        assert len(ledger.sent) == sent_before + 1
        assert sleeper.calls == []

    def test_waits_for_confirmation_depth(self, ledger, clock):
        sleeper = FakeSleep(on_sleep=lambda _: ledger.mine())
        client = make_client(ledger, clock, sleeper)

        async def scenario():
            await open_election(client, clock)
            return await client.add_candidate(
                "Carol White", "Green Party", "Clean air for all",
                from_address=OWNER, options={"confirmations": 3},
            )

        result = asyncio.run(scenario())
        assert client.get_transaction(result.tx_id).status == TxStatus.CONFIRMED
        assert sleeper.calls == [client.config.event_polling_interval] * 2

    def test_outstanding_and_history_limit(self, client, clock):
        asyncio.run(open_election(client, clock))
        assert client.transactions.outstanding() == []
        assert len(client.get_transaction_history(2)) == 2
        assert len(client.get_transaction_history(100)) == 3


class TestCacheInvalidation:

    KEYS = ("election_summary", "candidate_list", "voter_count", "role_summary")

    def cached_after(self, client, write) -> dict:
        async def scenario():
            for key in self.KEYS:
                client.cache.set(key, "cached")
            await write()
            return {key: client.cache.get(key) for key in self.KEYS}

        return asyncio.run(scenario())

    def test_vote_drops_election_voter_and_candidate_keys(self, client, clock):
        asyncio.run(start_voting(client, clock))
        cached = self.cached_after(client, lambda: client.vote(1, from_address=VOTER_1))
        assert cached == {
            "election_summary": None,
            "candidate_list": None,
            "voter_count": None,
            "role_summary": "cached",
        }

    def test_registration_keeps_candidate_keys(self, client, clock):
        asyncio.run(open_election(client, clock))
        cached = self.cached_after(
            client, lambda: client.register_voter(VOTER_1, from_address=OWNER),
        )
        assert cached == {
            "election_summary": None,
            "candidate_list": "cached",
            "voter_count": None,
            "role_summary": "cached",
        }

    def test_role_change_only_drops_role_keys(self, client, clock):
        asyncio.run(open_election(client, clock))
        cached = self.cached_after(
            client, lambda: client.assign_role(VOTER_2, "admin", from_address=OWNER),
        )
        assert cached == {
            "election_summary": "cached",
            "candidate_list": "cached",
            "voter_count": "cached",
            "role_summary": None,
        }


class TestTxIds:

    def test_format(self):
        tx_id = new_tx_id()
        prefix, millis, suffix = tx_id.split("_")
        assert prefix == "tx"
        assert millis.isdigit()
        assert len(suffix) == 9
