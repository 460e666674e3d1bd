"""
Unit tests for due-card ordering.

Covers partition completeness, bucket concatenation, each review sort
order and each new card gather order.
"""

import random
from collections import Counter

import pytest

from gakuon.models import NewCardOrder, QueueBucket, QueueOrder, ReviewSortOrder
from gakuon.ordering import (
    gather_new,
    order_items,
    partition,
    relative_overdueness,
    sort_reviews,
)


@pytest.fixture
def mixed_items(make_item):
    """Cards from all three buckets in scrambled order."""
    return [
        make_item(1, queue=QueueBucket.NEW, due=5),
        make_item(2, queue=QueueBucket.REVIEW, due=100, interval=10),
        make_item(3, queue=QueueBucket.LEARNING, due=90),
        make_item(4, queue=QueueBucket.NEW, due=1),
        make_item(5, queue=QueueBucket.REVIEW, due=95, interval=3),
        make_item(6, queue=QueueBucket.LEARNING, due=80),
        make_item(7, queue=QueueBucket.REVIEW, due=100, interval=2),
    ]


class TestPartition:
    """Tests for bucket partitioning."""

    def test_every_item_lands_in_its_bucket(self, mixed_items):
        """Each item should appear once, in the bucket of its queue."""
        buckets = partition(mixed_items)

        assert [item.id for item in buckets[QueueBucket.NEW]] == [1, 4]
        assert [item.id for item in buckets[QueueBucket.LEARNING]] == [3, 6]
        assert [item.id for item in buckets[QueueBucket.REVIEW]] == [2, 5, 7]

    def test_empty_input(self):
        """Empty input should give three empty buckets."""
        buckets = partition([])
        assert set(buckets) == set(QueueBucket)
        assert all(not items for items in buckets.values())


class TestOrderItems:
    """Tests for the full ordering policy."""

    @pytest.mark.parametrize("queue_order", list(QueueOrder))
    @pytest.mark.parametrize("review_order", list(ReviewSortOrder))
    def test_output_is_a_permutation(self, mixed_items, queue_order, review_order):
        """Ordering should never drop or duplicate cards."""
        result = order_items(
            mixed_items,
            queue_order,
            review_order,
            NewCardOrder.RANDOM_CARDS,
            rng=random.Random(7),
        )

        assert len(result) == len(mixed_items)
        assert Counter(item.id for item in result) == Counter(item.id for item in mixed_items)

    def test_learning_review_new_bucket_order(self, mixed_items):
        """All learning cards precede review cards, which precede new cards."""
        result = order_items(mixed_items, QueueOrder.LEARNING_REVIEW_NEW, rng=random.Random(1))
        queues = [item.queue for item in result]

        assert queues == [QueueBucket.LEARNING] * 2 + [QueueBucket.REVIEW] * 3 + [QueueBucket.NEW] * 2

    def test_review_learning_new_bucket_order(self, mixed_items):
        result = order_items(mixed_items, QueueOrder.REVIEW_LEARNING_NEW, rng=random.Random(1))
        queues = [item.queue for item in result]

        assert queues == [QueueBucket.REVIEW] * 3 + [QueueBucket.LEARNING] * 2 + [QueueBucket.NEW] * 2

    def test_new_learning_review_bucket_order(self, mixed_items):
        result = order_items(mixed_items, QueueOrder.NEW_LEARNING_REVIEW, rng=random.Random(1))
        queues = [item.queue for item in result]

        assert queues == [QueueBucket.NEW] * 2 + [QueueBucket.LEARNING] * 2 + [QueueBucket.REVIEW] * 3

    def test_mixed_is_reproducible_with_seed(self, mixed_items):
        """The mixed shuffle should follow the supplied random source."""
        first = order_items(mixed_items, QueueOrder.MIXED, rng=random.Random(42))
        second = order_items(mixed_items, QueueOrder.MIXED, rng=random.Random(42))

        assert [item.id for item in first] == [item.id for item in second]

    def test_input_order_does_not_matter(self, mixed_items):
        """Deterministic orders give the same result for any input order."""
        shuffled = list(reversed(mixed_items))
        kwargs = dict(
            queue_order=QueueOrder.LEARNING_REVIEW_NEW,
            review_order=ReviewSortOrder.DUE_DATE_DECK,
            new_order=NewCardOrder.ASCENDING_POSITION,
        )

        assert [item.id for item in order_items(mixed_items, **kwargs)] == [
            item.id for item in order_items(shuffled, **kwargs)
        ]

    def test_empty_input(self):
        assert order_items([]) == []


class TestSortReviews:
    """Tests for the learning/review sort orders."""

    def test_relative_overdueness_prefers_short_interval(self, make_item):
        """Same due day: the card with the shorter interval is more overdue."""
        long_interval = make_item(1, due=100, interval=10)
        short_interval = make_item(2, due=100, interval=2)

        result = sort_reviews(
            [long_interval, short_interval],
            ReviewSortOrder.RELATIVE_OVERDUENESS,
            random.Random(0),
            today=110,
        )

        assert [item.id for item in result] == [2, 1]

    def test_relative_overdueness_without_reference_day(self, make_item):
        """Without today, the shorter interval still comes first on equal due days."""
        result = sort_reviews(
            [make_item(1, due=100, interval=10), make_item(2, due=100, interval=2)],
            ReviewSortOrder.RELATIVE_OVERDUENESS,
            random.Random(0),
        )

        assert [item.id for item in result] == [2, 1]

    def test_relative_overdueness_value(self, make_item):
        assert relative_overdueness(make_item(1, due=100, interval=4), today=108) == 2.0
        assert relative_overdueness(make_item(2, due=100, interval=0), today=103) == 3.0

    def test_due_date_random_sorts_by_due(self, make_item):
        items = [make_item(1, due=30), make_item(2, due=10), make_item(3, due=20)]
        result = sort_reviews(items, ReviewSortOrder.DUE_DATE_RANDOM, random.Random(3))

        assert [item.due for item in result] == [10, 20, 30]

    def test_due_date_deck_breaks_ties_by_deck(self, make_item):
        items = [
            make_item(1, due=10, deck="B"),
            make_item(2, due=10, deck="A"),
            make_item(3, due=5, deck="C"),
        ]
        result = sort_reviews(items, ReviewSortOrder.DUE_DATE_DECK, random.Random(0))

        assert [item.id for item in result] == [3, 2, 1]

    def test_deck_due_date(self, make_item):
        items = [
            make_item(1, due=5, deck="B"),
            make_item(2, due=10, deck="A"),
            make_item(3, due=1, deck="A"),
        ]
        result = sort_reviews(items, ReviewSortOrder.DECK_DUE_DATE, random.Random(0))

        assert [item.id for item in result] == [3, 2, 1]

    @pytest.mark.parametrize(
        "order,expected",
        [
            (ReviewSortOrder.ASCENDING_INTERVALS, [2, 3, 1]),
            (ReviewSortOrder.DESCENDING_INTERVALS, [1, 3, 2]),
        ],
    )
    def test_interval_orders(self, make_item, order, expected):
        items = [make_item(1, interval=30), make_item(2, interval=1), make_item(3, interval=7)]
        result = sort_reviews(items, order, random.Random(0))

        assert [item.id for item in result] == expected

    @pytest.mark.parametrize(
        "order,expected",
        [
            (ReviewSortOrder.ASCENDING_EASE, [2, 3, 1]),
            (ReviewSortOrder.DESCENDING_EASE, [1, 3, 2]),
        ],
    )
    def test_ease_orders(self, make_item, order, expected):
        items = [
            make_item(1, ease_factor=2.8),
            make_item(2, ease_factor=1.3),
            make_item(3, ease_factor=2.5),
        ]
        result = sort_reviews(items, order, random.Random(0))

        assert [item.id for item in result] == expected


class TestGatherNew:
    """Tests for the new card gather orders."""

    def test_deck_order(self, make_item):
        items = [
            make_item(1, queue=QueueBucket.NEW, due=2, deck="B"),
            make_item(2, queue=QueueBucket.NEW, due=9, deck="A"),
            make_item(3, queue=QueueBucket.NEW, due=3, deck="A"),
        ]
        result = gather_new(items, NewCardOrder.DECK, random.Random(0))

        assert [item.id for item in result] == [3, 2, 1]

    @pytest.mark.parametrize(
        "order,expected",
        [
            (NewCardOrder.ASCENDING_POSITION, [2, 3, 1]),
            (NewCardOrder.DESCENDING_POSITION, [1, 3, 2]),
        ],
    )
    def test_position_orders(self, make_item, order, expected):
        items = [
            make_item(1, queue=QueueBucket.NEW, due=9),
            make_item(2, queue=QueueBucket.NEW, due=1),
            make_item(3, queue=QueueBucket.NEW, due=4),
        ]
        result = gather_new(items, order, random.Random(0))

        assert [item.id for item in result] == expected

    def test_random_notes_keeps_siblings_together(self, make_item):
        """Cards of the same note should be adjacent after a random-notes gather."""
        items = [
            make_item(1, queue=QueueBucket.NEW, note_id=10),
            make_item(2, queue=QueueBucket.NEW, note_id=20),
            make_item(3, queue=QueueBucket.NEW, note_id=10),
            make_item(4, queue=QueueBucket.NEW, note_id=30),
            make_item(5, queue=QueueBucket.NEW, note_id=20),
        ]
        result = gather_new(items, NewCardOrder.RANDOM_NOTES, random.Random(11))
        notes = [item.note_id for item in result]

        for note in (10, 20, 30):
            positions = [index for index, value in enumerate(notes) if value == note]
            assert positions == list(range(positions[0], positions[0] + len(positions)))

    def test_random_cards_is_a_shuffle(self, make_item):
        items = [make_item(card_id, queue=QueueBucket.NEW) for card_id in range(10)]
        result = gather_new(items, NewCardOrder.RANDOM_CARDS, random.Random(5))

        assert sorted(item.id for item in result) == list(range(10))
        assert result is not items
