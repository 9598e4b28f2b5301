"""Pure helpers for the JSON tree kept by every store backend.

Absence and emptiness are the same thing in the tree: writing ``None``,
``{}`` or ``[]`` removes the node, and parents left empty are pruned.
"""

from __future__ import annotations

import copy
from typing import Any

from cardclash.shared.paths import split


def normalize(value: Any) -> Any:
    """Deep-copy ``value`` dropping ``None`` members and empty containers."""
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            item = normalize(item)
            if item is not None:
                out[str(key)] = item
        return out or None
    if isinstance(value, (list, tuple)):
        items = [normalize(item) for item in value]
        return items if any(item is not None for item in items) else None
    return copy.deepcopy(value)


def get_in(tree: dict[str, Any], parts: list[str]) -> Any:
    node: Any = tree
    for part in parts:
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
        if node is None:
            return None
    return node


def set_in(tree: dict[str, Any], parts: list[str], value: Any) -> None:
    """Write ``value`` at ``parts`` (non-empty), pruning emptied parents."""
    if not parts:
        raise ValueError("cannot replace the tree root")
    value = normalize(value)

    trail: list[tuple[dict[str, Any], str]] = []
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if isinstance(child, list):
            child = {str(i): item for i, item in enumerate(child) if item is not None}
            node[part] = child
        elif not isinstance(child, dict):
            if value is None:
                return
            child = {}
            node[part] = child
        trail.append((node, part))
        node = child

    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = value

    for parent, key in reversed(trail):
        if parent[key]:
            break
        del parent[key]


def touches(changed: str, watched: str) -> bool:
    """Whether a write at ``changed`` can alter the subtree at ``watched``."""
    a, b = split(changed), split(watched)
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


def flatten(path: str, value: Any) -> list[tuple[str, Any]]:
    """Leaf rows ``(path, scalar)`` for a subtree; lists use index keys."""
    value = normalize(value)
    if value is None:
        return []
    if isinstance(value, dict):
        items = list(value.items())
    elif isinstance(value, list):
        items = [(str(i), item) for i, item in enumerate(value)]
    else:
        return [(path, value)]
    rows: list[tuple[str, Any]] = []
    for key, item in items:
        rows.extend(flatten(f"{path}/{key}" if path else key, item))
    return rows


def _listify(node: Any) -> Any:
    if not isinstance(node, dict):
        return node
    node = {key: _listify(item) for key, item in node.items()}
    keys = list(node)
    if keys and all(k.isdigit() for k in keys):
        indexes = sorted(int(k) for k in keys)
        if indexes == list(range(len(indexes))):
            return [node[str(i)] for i in indexes]
    return node


def unflatten(base: str, rows: list[tuple[str, Any]]) -> Any:
    """Rebuild the subtree at ``base`` from leaf rows.

    Dicts keyed ``0..n-1`` come back as lists, the same way a list was
    flattened.
    """
    base_parts = split(base)
    root: dict[str, Any] = {}
    scalar: Any = None
    for path, value in rows:
        rel = split(path)[len(base_parts):]
        if not rel:
            scalar = value
            continue
        node = root
        for part in rel[:-1]:
            node = node.setdefault(part, {})
        node[rel[-1]] = value
    if scalar is not None:
        return scalar
    return _listify(root) if root else None
