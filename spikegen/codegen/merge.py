"""Greedy classification of entities into merged groups.

Items are taken from the back of the input one at a time. Each joins the first
open class (in creation order) whose archetype, the class's first item,
accepts it; otherwise it becomes the archetype of a new class. Items are only
ever compared against archetypes, so the predicate need not be symmetric or
transitive. The cost is O(n * k) for k classes and no item is ever moved once
placed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from spikegen.core.types import Role

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")
M = TypeVar("M")


def merge_groups(items: Sequence[T], can_merge: Callable[[T, T], bool]) -> list[list[T]]:
    """Partition ``items`` into classes under ``can_merge(archetype, item)``.

    Never fails: an empty input gives no classes and a predicate that is never
    true gives one class per item.
    """
    unmerged = list(items)
    proto_groups: list[list[T]] = []
    while unmerged:
        item = unmerged.pop()
        for proto in proto_groups:
            if can_merge(proto[0], item):
                proto.append(item)
                break
        else:
            proto_groups.append([item])
    return proto_groups


def create_merged_groups(
    store: Sequence[E],
    role: Role,
    filter_fn: Callable[[E], bool],
    can_merge: Callable[[E, E], bool],
    factory: Callable[..., M],
    *factory_args: Any,
) -> list[M]:
    """Filter ``store``, classify the survivors and build one merged group per class.

    Classes are built from indices into ``store``; ``factory`` is called as
    ``factory(index, role, store, member_indices, *factory_args)``.
    """
    candidates = [i for i, entity in enumerate(store) if filter_fn(entity)]
    classes = merge_groups(candidates, lambda a, b: can_merge(store[a], store[b]))

    merged = [
        factory(i, role, store, tuple(members), *factory_args)
        for i, members in enumerate(classes)
    ]
    logger.debug("Merged %d %s groups into %d", len(candidates), role.value, len(merged))
    return merged
