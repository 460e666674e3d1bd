"""
Domain models shared across the review pipeline.

Items are read-only snapshots of Anki cards taken when a session pulls
its due set. Generated content travels as a GenerationResult and is
persisted per card as a versioned CardMetadata record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

METADATA_SCHEMA_VERSION = 1


class QueueBucket(str, Enum):
    """Scheduling bucket assigned by Anki."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"


class QueueOrder(str, Enum):
    """Order in which the three buckets are concatenated."""

    LEARNING_REVIEW_NEW = "learning_review_new"
    REVIEW_LEARNING_NEW = "review_learning_new"
    NEW_LEARNING_REVIEW = "new_learning_review"
    MIXED = "mixed"


class ReviewSortOrder(str, Enum):
    """Sort order applied to the learning and review buckets."""

    DUE_DATE_RANDOM = "due_date_random"
    DUE_DATE_DECK = "due_date_deck"
    DECK_DUE_DATE = "deck_due_date"
    ASCENDING_INTERVALS = "ascending_intervals"
    DESCENDING_INTERVALS = "descending_intervals"
    ASCENDING_EASE = "ascending_ease"
    DESCENDING_EASE = "descending_ease"
    RELATIVE_OVERDUENESS = "relative_overdueness"


class NewCardOrder(str, Enum):
    """Gather order applied to the new bucket."""

    DECK = "deck"
    DECK_RANDOM_NOTES = "deck_random_notes"
    ASCENDING_POSITION = "ascending_position"
    DESCENDING_POSITION = "descending_position"
    RANDOM_NOTES = "random_notes"
    RANDOM_CARDS = "random_cards"


@dataclass(frozen=True)
class Item:
    """A single due card as fetched from Anki."""

    id: int
    deck_name: str
    queue: QueueBucket
    due: int
    interval_days: int = 0
    ease_factor: float = 0.0
    fields: dict[str, str] = field(default_factory=dict, hash=False)
    note_id: int = 0
    model_name: str = ""
    reps: int = 0
    lapses: int = 0


class CardMetadata(BaseModel):
    """Generated content persisted alongside a card."""

    schema_version: int = METADATA_SCHEMA_VERSION
    generated_at: datetime
    content: dict[str, str] = Field(default_factory=dict)
    audio: dict[str, str] = Field(default_factory=dict)


@dataclass
class GenerationResult:
    """Content for one card plus media references for its audio fields."""

    content: dict[str, str]
    audio_refs: dict[str, str] = field(default_factory=dict)
    is_new_content: bool = False
    generated_at: datetime | None = None
