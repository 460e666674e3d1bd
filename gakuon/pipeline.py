"""
Prefetch pipeline for a review session.

Keeps content generation running for a window of upcoming cards while
the current one is being reviewed. Entries are handed out strictly in
session order: take() returns the head entry even if a later card's
generation finished first, and the consumer waits on that entry.

Cards whose deck has no matching content spec are skipped when they
enter the window and reported through on_skip; they are never queued.

Navigation never cancels generation. Work for cards dropped from the
queue by rewind() runs to completion and lands in the cache.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from loguru import logger

from gakuon.config import DeckConfig, find_deck_config
from gakuon.models import GenerationResult, Item
from gakuon.services.content_manager import ContentManager

DEFAULT_PREFETCH_WINDOW = 2

SkipCallback = Callable[[int, Item, str], None]


@dataclass
class PrefetchEntry:
    """A card in the prefetch queue with its pending generation."""

    index: int
    item: Item
    deck: DeckConfig
    task: asyncio.Task[GenerationResult]

    async def result(self) -> GenerationResult:
        """Wait for the card's content without cancelling it if the wait is cancelled."""
        return await asyncio.shield(self.task)


class PrefetchPipeline:
    """Bounded in-order queue of cards with content generation in flight."""

    def __init__(
        self,
        items: Sequence[Item],
        decks: list[DeckConfig],
        content_manager: ContentManager,
        window: int = DEFAULT_PREFETCH_WINDOW,
        on_skip: SkipCallback | None = None,
    ) -> None:
        if window < 1:
            raise ValueError("prefetch window must be at least 1")
        self.items = list(items)
        self.decks = decks
        self.content_manager = content_manager
        self.window = window
        self.on_skip = on_skip

        self._queue: deque[PrefetchEntry] = deque()
        self._next_index = 0
        self._skipped: set[int] = set()
        self._tasks: set[asyncio.Task[GenerationResult]] = set()

    def __len__(self) -> int:
        return len(self.items)

    @property
    def skipped(self) -> frozenset[int]:
        return frozenset(self._skipped)

    @property
    def queued(self) -> list[int]:
        """Indices currently waiting in the queue, head first."""
        return [entry.index for entry in self._queue]

    def ensure_filled(self, cursor: int) -> None:
        """Start generation for every not-yet-scheduled index in [cursor, cursor + window)."""
        limit = min(cursor + self.window, len(self.items))
        while self._next_index < limit:
            index = self._next_index
            self._next_index += 1
            self._schedule(index)

    def _schedule(self, index: int) -> None:
        if index in self._skipped:
            return
        item = self.items[index]
        deck = find_deck_config(item.deck_name, self.decks)
        if deck is None:
            self.skip(index, f"No configuration found for deck: {item.deck_name}")
            return
        error = deck.configuration_error()
        if error is not None:
            self.skip(index, str(error))
            return

        logger.debug("Prefetching card {} (index {})", item.id, index)
        task = asyncio.create_task(
            self.content_manager.get_or_generate(item, deck),
            name=f"prefetch-{item.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        self._queue.append(PrefetchEntry(index=index, item=item, deck=deck, task=task))

    def skip(self, index: int, reason: str) -> None:
        """Exclude an index from the session and report it once."""
        if index in self._skipped:
            return
        self._skipped.add(index)
        item = self.items[index]
        logger.warning("Skipping card {}: {}", item.id, reason)
        if self.on_skip is not None:
            self.on_skip(index, item, reason)

    def _task_done(self, task: asyncio.Task[GenerationResult]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Generation task {} failed: {}", task.get_name(), task.exception())

    def take(self) -> PrefetchEntry | None:
        """
        Pop the next card in session order, or None when the list is exhausted.

        The returned entry may still be generating; await entry.result().
        Taking an entry extends the window past it.
        """
        while not self._queue and self._next_index < len(self.items):
            self._schedule(self._next_index)
            self._next_index += 1

        if not self._queue:
            return None

        entry = self._queue.popleft()
        self.ensure_filled(entry.index + 1)
        return entry

    def rewind(self, index: int) -> None:
        """Restart the queue at index; queued work is dropped, not cancelled."""
        if not 0 <= index < len(self.items):
            raise IndexError(f"rewind index {index} outside 0..{len(self.items) - 1}")
        logger.debug("Rewinding prefetch queue to index {}", index)
        self._queue.clear()
        self._next_index = index
        self.ensure_filled(index)

    async def aclose(self) -> None:
        """Cancel outstanding generation at the end of a session."""
        self._queue.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
