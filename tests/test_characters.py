import random

import httpx

from cardclash.services.characters import (
    ATTEMPTS_PER_SLOT,
    CharacterSource,
    fallback_character,
    fill_hand,
    parse_character,
)
from cardclash.shared.cache import CharacterCache


def jikan_payload(char_id):
    return {
        "data": {
            "mal_id": char_id,
            "name": f"Character {char_id}",
            "images": {"jpg": {"image_url": f"https://cdn.example/{char_id}.jpg"}},
            "about": f"About {char_id}",
        }
    }


def char_id_of(request):
    return int(request.url.path.rsplit("/", 1)[-1])


def make_source(handler, cache=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CharacterSource(
        base_url="https://jikan.test/v4",
        cache=cache or CharacterCache(),
        client=client,
        rng=random.Random(7),
        request_pause=0,
    )


def test_parse_character():
    character = parse_character(jikan_payload(42))
    assert character.id == 42
    assert character.name == "Character 42"
    assert character.image == "https://cdn.example/42.jpg"
    assert character.description == "About 42"
    assert parse_character({"data": {}}) is None


def test_fallback_roster_is_positional():
    assert [fallback_character(i).name for i in range(6)] == [
        "Goku",
        "Naruto Uzumaki",
        "Luffy",
        "Ichigo Kurosaki",
        "Edward Elric",
        "Goku",
    ]
    assert fallback_character(3).id == "fallback_3"


def test_fill_hand_pads_and_trims():
    cards = [fallback_character(9)] * 7
    assert len(fill_hand(cards, 5)) == 5
    assert [c.id for c in fill_hand([], 2)] == ["fallback_0", "fallback_1"]


async def test_fetch_characters_from_catalog():
    seen = []

    def handler(request):
        seen.append(char_id_of(request))
        return httpx.Response(200, json=jikan_payload(char_id_of(request)))

    source = make_source(handler)
    cards = await source.fetch_characters(5)

    assert len(cards) == 5
    assert len(set(seen)) == 5
    assert all(1 <= i <= 50000 for i in seen)
    assert [c.name for c in cards] == [f"Character {i}" for i in seen]


async def test_three_found_out_of_five_appends_two_fallbacks():
    found = []

    def handler(request):
        if len(found) < 3:
            found.append(char_id_of(request))
            return httpx.Response(200, json=jikan_payload(found[-1]))
        return httpx.Response(404)

    source = make_source(handler)
    cards = await source.fetch_characters(5)

    assert len(cards) == 5
    assert [c.name for c in cards[:3]] == [f"Character {i}" for i in found]
    assert [c.id for c in cards[3:]] == ["fallback_3", "fallback_4"]
    assert [c.name for c in cards[3:]] == ["Ichigo Kurosaki", "Edward Elric"]


async def test_network_errors_never_raise():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("unreachable", request=request)

    source = make_source(handler)
    cards = await source.fetch_characters(2)

    assert [c.id for c in cards] == ["fallback_0", "fallback_1"]
    assert 0 < len(calls) <= 2 * ATTEMPTS_PER_SLOT


async def test_missing_ids_are_cached_as_misses():
    def handler(request):
        return httpx.Response(404)

    cache = CharacterCache()
    source = make_source(handler, cache)
    await source.fetch_characters(1)

    assert len(cache.characters()) == 0
    assert all(cache.get(key) is None for key in list(cache._cache))


async def test_warm_cache_serves_later_hands():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=jikan_payload(char_id_of(request)))

    source = make_source(handler)
    await source.warm_cache(8)
    assert source.cache.size == 8

    calls.clear()
    cards = await source.fetch_characters(5)
    assert len(cards) == 5
    assert calls == []
