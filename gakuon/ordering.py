"""
Due-card ordering.

Mirrors Anki's own display-order options:

1. Partition the due set into learning, review and new buckets
2. Sort learning and review with the review sort order
3. Gather new cards with the new card order
4. Concatenate the buckets with the queue order (or shuffle for mixed)

Every non-random order ends with the card id as the final key, so two
calls with the same input always agree. Random orders draw from the
supplied random.Random, which makes them reproducible under a seed.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from typing import Any

from loguru import logger

from gakuon.models import Item, NewCardOrder, QueueBucket, QueueOrder, ReviewSortOrder

SortKey = Callable[[Item], Any]

QUEUE_SEQUENCES: dict[QueueOrder, tuple[QueueBucket, ...]] = {
    QueueOrder.LEARNING_REVIEW_NEW: (QueueBucket.LEARNING, QueueBucket.REVIEW, QueueBucket.NEW),
    QueueOrder.REVIEW_LEARNING_NEW: (QueueBucket.REVIEW, QueueBucket.LEARNING, QueueBucket.NEW),
    QueueOrder.NEW_LEARNING_REVIEW: (QueueBucket.NEW, QueueBucket.LEARNING, QueueBucket.REVIEW),
    QueueOrder.MIXED: (QueueBucket.LEARNING, QueueBucket.REVIEW, QueueBucket.NEW),
}


def partition(items: Sequence[Item]) -> dict[QueueBucket, list[Item]]:
    """Split items by queue bucket, keeping input order within each bucket."""
    buckets: dict[QueueBucket, list[Item]] = {bucket: [] for bucket in QueueBucket}
    for item in items:
        buckets[item.queue].append(item)
    return buckets


def relative_overdueness(item: Item, today: int) -> float:
    """(today - due) / interval; intervals below one day count as one."""
    return (today - item.due) / max(item.interval_days, 1)


def _random_ranks(keys: Sequence[Any], rng: random.Random) -> dict[Any, float]:
    """One random rank per distinct key, so siblings sort together."""
    return {key: rng.random() for key in dict.fromkeys(keys)}


def sort_reviews(
    items: Sequence[Item],
    order: ReviewSortOrder,
    rng: random.Random,
    today: int | None = None,
) -> list[Item]:
    """
    Sort a learning or review bucket.

    Args:
        items: Cards from one bucket
        order: Review sort order
        rng: Source for random tie-breaks
        today: Current day in the same unit as Item.due. Defaults to
            the latest due value in the bucket, which every due card
            has reached.

    Returns:
        New sorted list
    """
    if not items:
        return []

    if order is ReviewSortOrder.DUE_DATE_RANDOM:
        tie = {item.id: rng.random() for item in items}
        key: SortKey = lambda item: (item.due, tie[item.id])
    elif order is ReviewSortOrder.DUE_DATE_DECK:
        key = lambda item: (item.due, item.deck_name, item.id)
    elif order is ReviewSortOrder.DECK_DUE_DATE:
        key = lambda item: (item.deck_name, item.due, item.id)
    elif order is ReviewSortOrder.ASCENDING_INTERVALS:
        key = lambda item: (item.interval_days, item.id)
    elif order is ReviewSortOrder.DESCENDING_INTERVALS:
        key = lambda item: (-item.interval_days, item.id)
    elif order is ReviewSortOrder.ASCENDING_EASE:
        key = lambda item: (item.ease_factor, item.id)
    elif order is ReviewSortOrder.DESCENDING_EASE:
        key = lambda item: (-item.ease_factor, item.id)
    elif order is ReviewSortOrder.RELATIVE_OVERDUENESS:
        reference = today if today is not None else max(item.due for item in items)
        # Equal overdueness: the shorter interval is the more fragile card
        key = lambda item: (
            -relative_overdueness(item, reference),
            item.interval_days,
            item.id,
        )
    else:
        raise ValueError(f"Unsupported review sort order: {order}")

    return sorted(items, key=key)


def gather_new(items: Sequence[Item], order: NewCardOrder, rng: random.Random) -> list[Item]:
    """Sort the new bucket. For new cards, Item.due is the queue position."""
    if not items:
        return []

    if order is NewCardOrder.DECK:
        key: SortKey = lambda item: (item.deck_name, item.due, item.id)
    elif order is NewCardOrder.DECK_RANDOM_NOTES:
        ranks = _random_ranks([item.note_id for item in items], rng)
        key = lambda item: (item.deck_name, ranks[item.note_id], item.id)
    elif order is NewCardOrder.ASCENDING_POSITION:
        key = lambda item: (item.due, item.id)
    elif order is NewCardOrder.DESCENDING_POSITION:
        key = lambda item: (-item.due, item.id)
    elif order is NewCardOrder.RANDOM_NOTES:
        ranks = _random_ranks([item.note_id for item in items], rng)
        key = lambda item: (ranks[item.note_id], item.id)
    elif order is NewCardOrder.RANDOM_CARDS:
        shuffled = list(items)
        rng.shuffle(shuffled)
        return shuffled
    else:
        raise ValueError(f"Unsupported new card order: {order}")

    return sorted(items, key=key)


def order_items(
    items: Sequence[Item],
    queue_order: QueueOrder = QueueOrder.LEARNING_REVIEW_NEW,
    review_order: ReviewSortOrder = ReviewSortOrder.DUE_DATE_RANDOM,
    new_order: NewCardOrder = NewCardOrder.DECK,
    rng: random.Random | None = None,
    today: int | None = None,
) -> list[Item]:
    """
    Order a due set for presentation.

    The result is a permutation of the input: nothing is dropped or
    duplicated.

    Args:
        items: Due cards in any order
        queue_order: How the buckets are concatenated
        review_order: Sort for learning and review buckets
        new_order: Gather order for new cards
        rng: Random source for the random axes (default: fresh Random)
        today: Anki day number for relative overdueness of review
            cards. Learning cards are due by timestamp and always use
            their own bucket as reference.

    Returns:
        Ordered list of cards
    """
    rng = rng or random.Random()
    buckets = partition(items)

    ordered = {
        QueueBucket.LEARNING: sort_reviews(buckets[QueueBucket.LEARNING], review_order, rng),
        QueueBucket.REVIEW: sort_reviews(buckets[QueueBucket.REVIEW], review_order, rng, today),
        QueueBucket.NEW: gather_new(buckets[QueueBucket.NEW], new_order, rng),
    }

    result: list[Item] = []
    for bucket in QUEUE_SEQUENCES[queue_order]:
        result.extend(ordered[bucket])

    if queue_order is QueueOrder.MIXED:
        rng.shuffle(result)

    logger.debug(
        "Ordered {} cards: {} learning, {} review, {} new ({}, {}, {})",
        len(result),
        len(ordered[QueueBucket.LEARNING]),
        len(ordered[QueueBucket.REVIEW]),
        len(ordered[QueueBucket.NEW]),
        queue_order.value,
        review_order.value,
        new_order.value,
    )
    return result
