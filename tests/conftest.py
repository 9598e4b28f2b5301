import asyncio

import pytest

from cardclash.core.config import GameConfig
from cardclash.services.characters import fill_hand
from cardclash.shared.models import ArbiterOutcome, Character, Judgment, PlayerIdentity
from cardclash.shared.store.memory import MemoryBackend

ALICE = PlayerIdentity("alice", "Alice")
BOB = PlayerIdentity("bob", "Bob")

GOKU = Character(id=246, name="Goku", image="goku.jpg", description="Saiyan")
NARUTO = Character(id=17, name="Naruto Uzumaki", image="naruto.jpg", description="Ninja")


class FakeCharacterSource:
    """Stands in for the Jikan-backed source; always deals the same hand."""

    def __init__(self, cards=None):
        self.cards = list(cards or [GOKU, NARUTO])
        self.requests = []

    async def fetch_characters(self, count=5):
        self.requests.append(count)
        return fill_hand(self.cards, count)

    async def warm_cache(self, count=20):
        pass

    async def close(self):
        pass


class ScriptedArbiter:
    """Returns queued outcomes in order, then ``default`` forever."""

    def __init__(self, *outcomes, default=ArbiterOutcome.FIRST):
        self.outcomes = list(outcomes)
        self.default = default
        self.calls = []

    async def judge(self, first, second):
        self.calls.append((first.name, second.name))
        await asyncio.sleep(0)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        return Judgment(outcome=outcome, explanation=f"{outcome.value} wins")


async def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll ``predicate`` until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture()
def config():
    return GameConfig(
        matchmaking_timeout=2.0,
        result_display_delay=0.05,
        play_again_delay=0.01,
    )


@pytest.fixture()
def backend():
    return MemoryBackend()


@pytest.fixture()
async def stores(backend):
    clients = [backend.connect(ALICE.id), backend.connect(BOB.id)]
    yield clients
    for client in clients:
        await client.close()


@pytest.fixture()
def characters():
    return FakeCharacterSource()


@pytest.fixture()
def arbiter():
    return ScriptedArbiter()
