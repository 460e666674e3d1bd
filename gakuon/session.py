"""
Review session controller.

A ReviewSession presents an ordered list of due cards one at a time and
reacts to user actions. Actions arrive on a single typed channel
(submit()) and are consumed by one loop; whatever is left unconsumed
when a card is left behind is discarded, so an action can never reach
the wrong card.

Presentation is reported as SessionEvents, either through on_event
callbacks or the events() async iterator. The controller never prints.

Card lifecycle:

    Idle -> Presenting -> AwaitingAction -> (Playing | Regenerating)
         -> Presenting(next) ... -> Completed | Terminated

Generation failures are reported and leave the card in place; the user
can regenerate, move on, or quit. Losing AnkiConnect entirely is not
recoverable and propagates out of run().
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Callable, Container, Coroutine, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from gakuon.config import CardOrderConfig, DeckConfig
from gakuon.errors import AnkiConnectError, ConfigurationError, ContentGenerationError
from gakuon.models import GenerationResult, Item, NewCardOrder, QueueOrder, ReviewSortOrder
from gakuon.pipeline import DEFAULT_PREFETCH_WINDOW, PrefetchEntry, PrefetchPipeline
from gakuon.services.content_manager import ContentManager, is_content_valid


class ReviewStore(Protocol):
    async def answer_card(self, card_id: int, ease: int) -> bool: ...


class DueItemSource(ReviewStore, Protocol):
    async def get_due_items(
        self,
        deck_name: str,
        queue_order: QueueOrder = ...,
        review_order: ReviewSortOrder = ...,
        new_order: NewCardOrder = ...,
        rng: random.Random | None = None,
    ) -> list[Item]: ...


class Player(Protocol):
    async def play(self, reference: str) -> bool: ...

    def stop(self) -> None: ...


# ========================================
# Actions
# ========================================


class ActionKind(str, Enum):
    PLAY_ALL = "play_all"
    PLAY_PRIMARY = "play_primary"
    STOP = "stop"
    NEXT = "next"
    PREVIOUS = "previous"
    RATE = "rate"
    REGENERATE = "regenerate"
    QUIT = "quit"


@dataclass(frozen=True)
class Action:
    """A discrete user action; only RATE carries an ease (1-4)."""

    kind: ActionKind
    ease: int | None = None

    def __post_init__(self) -> None:
        if self.kind is ActionKind.RATE:
            if self.ease not in (1, 2, 3, 4):
                raise ValueError(f"ease must be between 1 and 4, got {self.ease}")
        elif self.ease is not None:
            raise ValueError(f"{self.kind.value} does not take an ease")

    @classmethod
    def rate(cls, ease: int) -> Action:
        return cls(ActionKind.RATE, ease)


PLAY_ALL = Action(ActionKind.PLAY_ALL)
PLAY_PRIMARY = Action(ActionKind.PLAY_PRIMARY)
STOP = Action(ActionKind.STOP)
NEXT = Action(ActionKind.NEXT)
PREVIOUS = Action(ActionKind.PREVIOUS)
REGENERATE = Action(ActionKind.REGENERATE)
QUIT = Action(ActionKind.QUIT)


# ========================================
# Events and state
# ========================================


class EventKind(str, Enum):
    SESSION_STARTED = "session_started"
    CARD_SKIPPED = "card_skipped"
    CARD_LOADING = "card_loading"
    CARD_PRESENTED = "card_presented"
    REGENERATING = "regenerating"
    PLAYING = "playing"
    CARD_RATED = "card_rated"
    RATING_FAILED = "rating_failed"
    GENERATION_FAILED = "generation_failed"
    NOTICE = "notice"
    SESSION_FINISHED = "session_finished"


@dataclass
class SessionEvent:
    """Something the presentation layer should show."""

    kind: EventKind
    index: int | None = None
    total: int = 0
    item: Item | None = None
    deck: DeckConfig | None = None
    result: GenerationResult | None = None
    message: str = ""
    ease: int | None = None
    audio_field: str | None = None


EventListener = Callable[[SessionEvent], None]


class SessionStatus(str, Enum):
    IDLE = "idle"
    PRESENTING = "presenting"
    AWAITING_ACTION = "awaiting_action"
    PLAYING = "playing"
    REGENERATING = "regenerating"
    TERMINATED = "terminated"
    COMPLETED = "completed"


class SessionOutcome(str, Enum):
    COMPLETED = "completed"
    QUIT = "quit"


@dataclass
class CardState:
    """Per-card flags; is_complete stops playback between tracks."""

    is_complete: bool = False
    current_audio_index: int | None = None
    is_regenerating: bool = False


def advance(cursor: int, step: int, total: int, skipped: Container[int] = ()) -> int | None:
    """
    Next presentable index from cursor in the direction of step.

    Skipped indices are walked over. Returns None when nothing is
    presentable in that direction.
    """
    index = cursor + step
    while 0 <= index < total:
        if index not in skipped:
            return index
        index += step
    return None


class ReviewSession:
    """Drives one review pass over an ordered list of due cards."""

    def __init__(
        self,
        items: Sequence[Item],
        decks: list[DeckConfig],
        anki: ReviewStore,
        content_manager: ContentManager,
        player: Player,
        *,
        window: int = DEFAULT_PREFETCH_WINDOW,
        autoplay: bool = True,
        on_event: EventListener | None = None,
    ) -> None:
        self.items = list(items)
        self.anki = anki
        self.content_manager = content_manager
        self.player = player
        self.autoplay = autoplay
        self.pipeline = PrefetchPipeline(
            self.items,
            decks,
            content_manager,
            window=window,
            on_skip=self._on_skip,
        )

        self.status = SessionStatus.IDLE
        self.cursor: int | None = None
        self.card: CardState | None = None
        self.result: GenerationResult | None = None

        self._actions: asyncio.Queue[Action] = asyncio.Queue()
        self._listeners: list[EventListener] = [on_event] if on_event else []
        self._playback: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def total(self) -> int:
        return len(self.items)

    # ========================================
    # Input and output channels
    # ========================================

    def submit(self, action: Action) -> None:
        """Queue an action for the current card. Call from the event loop thread."""
        self._actions.put_nowait(action)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Stream events until the session finishes."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self.subscribe(queue.put_nowait)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.kind is EventKind.SESSION_FINISHED:
                    return
        finally:
            self._listeners.remove(queue.put_nowait)

    def _emit(self, kind: EventKind, entry: PrefetchEntry | None = None, **fields: Any) -> None:
        event = SessionEvent(kind=kind, total=self.total, **fields)
        if entry is not None:
            event.index = entry.index
            event.item = entry.item
            event.deck = entry.deck
        for listener in list(self._listeners):
            listener(event)

    def _on_skip(self, index: int, item: Item, reason: str) -> None:
        self._emit(EventKind.CARD_SKIPPED, index=index, item=item, message=reason)

    # ========================================
    # Main loop
    # ========================================

    async def run(self) -> SessionOutcome:
        """
        Review every card in order until the list is exhausted or the user quits.

        Raises:
            AnkiUnavailableError: If AnkiConnect stops responding
        """
        if self.status is not SessionStatus.IDLE:
            raise RuntimeError("a review session can only run once")

        logger.info("Starting review session with {} cards", self.total)
        self._emit(EventKind.SESSION_STARTED)
        outcome: SessionOutcome | None = None
        try:
            entry = self.pipeline.take()
            while entry is not None:
                step = await self._review(entry)
                if step is None:
                    outcome = SessionOutcome.QUIT
                    break

                target = advance(entry.index, step, self.total, self.pipeline.skipped)
                if step < 0 and target is not None:
                    self.pipeline.rewind(target)
                entry = self.pipeline.take()
            else:
                outcome = SessionOutcome.COMPLETED
        finally:
            await self._shutdown()
            self.status = (
                SessionStatus.COMPLETED
                if outcome is SessionOutcome.COMPLETED
                else SessionStatus.TERMINATED
            )
            self._emit(
                EventKind.SESSION_FINISHED,
                message=outcome.value if outcome else "error",
            )

        logger.info("Review session finished: {}", outcome.value)
        return outcome

    async def _review(self, entry: PrefetchEntry) -> int | None:
        """
        Present one card and handle actions until it is left.

        Returns:
            Cursor step (+1 or -1), or None to quit
        """
        self._drain_actions()
        self.cursor = entry.index
        self.card = card = CardState()
        self.result = None
        self.status = SessionStatus.PRESENTING
        self._emit(EventKind.CARD_LOADING, entry)

        work: asyncio.Task[GenerationResult] | None = self._spawn(
            self._load(entry), f"load-{entry.item.id}"
        )
        next_action: asyncio.Task[Action] | None = None
        try:
            while True:
                if next_action is None:
                    next_action = asyncio.create_task(self._actions.get())
                waiting: set[asyncio.Task[Any]] = {next_action}
                if work is not None:
                    waiting.add(work)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if work is not None and work in done:
                    finished, work = work, None
                    card.is_regenerating = False
                    try:
                        result = finished.result()
                    except ConfigurationError as exc:
                        self.pipeline.skip(entry.index, str(exc))
                        card.is_complete = True
                        return 1
                    except (ContentGenerationError, AnkiConnectError) as exc:
                        self.status = SessionStatus.AWAITING_ACTION
                        self._emit(EventKind.GENERATION_FAILED, entry, message=str(exc))
                    else:
                        self._present(entry, card, result)

                if next_action not in done:
                    continue
                action = next_action.result()
                next_action = None
                logger.debug("Card {} action: {}", entry.item.id, action)

                if action.kind is ActionKind.REGENERATE:
                    if work is not None:
                        self._emit(EventKind.NOTICE, entry, message="Content is still being generated")
                    else:
                        work = self._regenerate(entry, card)
                    continue

                step = await self._handle(action, entry, card)
                if step != 0:
                    return step
        finally:
            if next_action is not None:
                next_action.cancel()

    async def _handle(self, action: Action, entry: PrefetchEntry, card: CardState) -> int | None:
        """Apply an action to the current card; 0 means stay."""
        kind = action.kind

        if kind is ActionKind.QUIT:
            card.is_complete = True
            self._stop_playback()
            logger.info("Session quit at card {}/{}", entry.index + 1, self.total)
            return None

        if kind is ActionKind.NEXT:
            card.is_complete = True
            self._stop_playback()
            return 1

        if kind is ActionKind.PREVIOUS:
            if advance(entry.index, -1, self.total, self.pipeline.skipped) is None:
                self._emit(EventKind.NOTICE, entry, message="Already at the first card")
                return 0
            card.is_complete = True
            self._stop_playback()
            return -1

        if kind is ActionKind.STOP:
            self._stop_playback()
            return 0

        if kind in (ActionKind.PLAY_ALL, ActionKind.PLAY_PRIMARY):
            if self.result is None:
                self._emit(EventKind.NOTICE, entry, message="No audio to play yet")
                return 0
            self._start_playback(entry, card, primary_only=kind is ActionKind.PLAY_PRIMARY)
            return 0

        if kind is ActionKind.RATE:
            return await self._rate(entry, card, action.ease)

        return 0

    async def _rate(self, entry: PrefetchEntry, card: CardState, ease: int) -> int:
        answered = await self.anki.answer_card(entry.item.id, ease)
        if not answered:
            logger.warning("Card {} was not answered; it may no longer be due", entry.item.id)
            self._emit(
                EventKind.RATING_FAILED,
                entry,
                ease=ease,
                message="Could not answer this card; it may have been reviewed elsewhere",
            )
            return 0

        card.is_complete = True
        self._stop_playback()
        self._emit(EventKind.CARD_RATED, entry, ease=ease)
        return 1

    # ========================================
    # Content
    # ========================================

    async def _load(self, entry: PrefetchEntry) -> GenerationResult:
        result = await entry.result()
        if is_content_valid(result.content, entry.deck):
            return result

        logger.info("Cached content for card {} is incomplete, regenerating", entry.item.id)
        self._emit(
            EventKind.REGENERATING,
            entry,
            message="Invalid cached content detected, regenerating...",
        )
        return await self.content_manager.get_or_generate(
            entry.item, entry.deck, force_regenerate=True
        )

    def _regenerate(self, entry: PrefetchEntry, card: CardState) -> asyncio.Task[GenerationResult]:
        card.is_regenerating = True
        self._stop_playback()
        self.status = SessionStatus.REGENERATING
        self._emit(EventKind.REGENERATING, entry, message="Regenerating content...")
        return self._spawn(
            self.content_manager.get_or_generate(entry.item, entry.deck, force_regenerate=True),
            f"regenerate-{entry.item.id}",
        )

    def _present(self, entry: PrefetchEntry, card: CardState, result: GenerationResult) -> None:
        self.result = result
        self.status = SessionStatus.AWAITING_ACTION
        self._emit(EventKind.CARD_PRESENTED, entry, result=result)
        if self.autoplay:
            self._start_playback(entry, card, primary_only=False)

    # ========================================
    # Playback
    # ========================================

    def _start_playback(self, entry: PrefetchEntry, card: CardState, primary_only: bool) -> None:
        self._stop_playback()
        refs = [
            (field, self.result.audio_refs[field])
            for field in entry.deck.audio_fields
            if field in self.result.audio_refs
        ]
        if primary_only:
            refs = refs[:1]
        if refs:
            self._playback = self._spawn(self._play(entry, card, refs), f"play-{entry.item.id}")

    async def _play(self, entry: PrefetchEntry, card: CardState, refs: list[tuple[str, str]]) -> None:
        self.status = SessionStatus.PLAYING
        try:
            for position, (field, reference) in enumerate(refs):
                if card.is_complete:
                    break
                card.current_audio_index = position
                self._emit(EventKind.PLAYING, entry, audio_field=field)
                await self.player.play(reference)
        finally:
            if self.status is SessionStatus.PLAYING:
                self.status = SessionStatus.AWAITING_ACTION

    def _stop_playback(self) -> None:
        task, self._playback = self._playback, None
        if task is not None and not task.done():
            task.cancel()
        self.player.stop()

    # ========================================
    # Task bookkeeping
    # ========================================

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Task {} failed: {}", task.get_name(), task.exception())

    def _drain_actions(self) -> None:
        while not self._actions.empty():
            self._actions.get_nowait()

    async def _shutdown(self) -> None:
        self._stop_playback()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.pipeline.aclose()


async def start_session(
    deck_name: str,
    *,
    anki: DueItemSource,
    content_manager: ContentManager,
    player: Player,
    decks: list[DeckConfig],
    card_order: CardOrderConfig | None = None,
    window: int = DEFAULT_PREFETCH_WINDOW,
    on_event: EventListener | None = None,
    rng: random.Random | None = None,
) -> ReviewSession:
    """Fetch and order a deck's due cards and build a session over them."""
    order = card_order or CardOrderConfig()
    items = await anki.get_due_items(
        deck_name,
        order.queue_order,
        order.review_order,
        order.new_card_order,
        rng=rng,
    )
    return ReviewSession(
        items,
        decks,
        anki,
        content_manager,
        player,
        window=window,
        on_event=on_event,
    )
