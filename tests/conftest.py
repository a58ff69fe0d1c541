"""
Shared fixtures for the Electra client tests.

Everything runs against the InMemoryLedger with a fake clock: time only
moves when a test advances it, and retries/backoff never really sleep.
"""

import asyncio

import pytest

from electra.config import ClientConfig
from electra.core import ElectionClient
from electra.gateway import InMemoryLedger

OWNER = "0x" + "a1" * 20
ADMIN = "0x" + "b2" * 20
VOTER_1 = "0x" + "c3" * 20
VOTER_2 = "0x" + "d4" * 20
VOTER_3 = "0x" + "e5" * 20
STRANGER = "0x" + "f6" * 20

GENESIS = 1_717_200_000
HOUR = 60 * 60
DAY = 24 * HOUR


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = GENESIS):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeSleep:
    """Records requested delays and yields to the loop instead of waiting."""

    def __init__(self, on_sleep=None):
        self.calls: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, max_turns: int = 200) -> bool:
    """Yield to the loop until predicate() holds."""
    for _ in range(max_turns):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def make_client(ledger, clock, sleep=None, config=None, metrics=None) -> ElectionClient:
    return ElectionClient(
        ledger,
        config=config or ClientConfig(),
        metrics=metrics,
        clock=clock,
        monotonic=clock,
        sleep=sleep or FakeSleep(),
    )


async def open_election(client, clock, candidates=None, voters=()):
    """
    Create an election, add candidates and register voters.

    Leaves the election in REGISTRATION.
    """
    now = int(clock())
    await client.create_election(
        "General Election 2024",
        "Election of the student council",
        now + HOUR,
        now + 2 * HOUR,
        now + DAY,
        from_address=OWNER,
    )
    for name, party in candidates or [("Alice Smith", "Unity Party"), ("Bob Jones", "Reform Party")]:
        await client.add_candidate(name, party, "A manifesto for everyone", from_address=OWNER)
    for voter in voters:
        await client.register_voter(voter, from_address=OWNER)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return FakeSleep()


@pytest.fixture
def ledger(clock):
    return InMemoryLedger(owner=OWNER, clock=clock)


@pytest.fixture
def client(ledger, clock, sleeper):
    return make_client(ledger, clock, sleeper)
