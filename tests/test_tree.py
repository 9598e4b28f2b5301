from cardclash.shared.store.tree import flatten, get_in, normalize, set_in, touches, unflatten


def test_normalize_drops_none_and_empty_containers():
    assert normalize({"a": None, "b": {}, "c": {"d": None}, "e": 1}) == {"e": 1}
    assert normalize({}) is None
    assert normalize([None, None]) is None


def test_set_in_prunes_emptied_parents():
    tree = {}
    set_in(tree, ["rooms", "r1", "players", "alice"], {"score": 1})
    set_in(tree, ["rooms", "r1", "players", "alice"], None)
    assert tree == {}


def test_set_in_removing_missing_path_is_noop():
    tree = {"a": 1}
    set_in(tree, ["b", "c"], None)
    assert tree == {"a": 1}


def test_set_in_descends_into_lists():
    tree = {"cards": ["x", "y"]}
    set_in(tree, ["cards", "1"], "z")
    assert get_in(tree, ["cards", "1"]) == "z"
    assert get_in(tree, ["cards", "0"]) == "x"


def test_touches_ancestor_self_and_descendant():
    assert touches("gameRooms/r1/players/alice/score", "gameRooms/r1")
    assert touches("gameRooms/r1", "gameRooms/r1")
    assert touches("gameRooms", "gameRooms/r1/gameState")
    assert not touches("gameRooms/r2", "gameRooms/r1")
    assert not touches("matchmaking/alice", "pairings/alice")


def test_flatten_and_unflatten_preserve_lists_and_maps():
    value = {"players": {"alice": {"score": 1.5}}, "cards": [{"name": "Goku"}, {"name": "Luffy"}]}
    rows = flatten("gameRooms/r1", value)

    assert ("gameRooms/r1/cards/1/name", "Luffy") in rows
    assert unflatten("gameRooms/r1", rows) == value


def test_unflatten_keeps_sparse_numeric_keys_as_map():
    rows = [("r/resolutions/1/winner", "alice"), ("r/resolutions/2/winner", "tie")]
    assert unflatten("r/resolutions", rows) == {"1": {"winner": "alice"}, "2": {"winner": "tie"}}
