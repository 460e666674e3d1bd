"""
AnkiConnect client for gakuon.

Async HTTP wrapper around the AnkiConnect API for:
- Listing due cards and fetching their fields and scheduling data
- Answering cards with an ease rating
- Storing generated audio and per-card metadata in the media folder

Based on AnkiConnect API v6.

Per-card metadata lives in a JSON media file named _gakuon_<cardId>.json
rather than in a note field, so storing it never changes what Anki
displays. Media names with a leading underscore are kept by Anki's
"Check Media" even though no note references them.
"""

from __future__ import annotations

import base64
import random
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from gakuon.errors import AnkiConnectError, AnkiUnavailableError
from gakuon.models import (
    METADATA_SCHEMA_VERSION,
    CardMetadata,
    Item,
    NewCardOrder,
    QueueBucket,
    QueueOrder,
    ReviewSortOrder,
)
from gakuon.ordering import order_items

API_VERSION = 6
DEFAULT_TIMEOUT = 30.0
# Connection-level retries only; AnkiConnect actions such as answerCards
# must never be sent twice.
DEFAULT_CONNECT_RETRIES = 2
# Upper bound for the day-number search in current_day()
MAX_OVERDUE_DAYS = 1 << 16

# Anki queue codes -> bucket. Day-learning and preview cards are
# reviewed like learning cards.
QUEUE_BUCKETS: dict[int, QueueBucket] = {
    0: QueueBucket.NEW,
    1: QueueBucket.LEARNING,
    2: QueueBucket.REVIEW,
    3: QueueBucket.LEARNING,
    4: QueueBucket.LEARNING,
}


class AnkiClient:
    """
    Async wrapper around the AnkiConnect API.

    AnkiConnect must be installed in Anki and listening (default port 8765).
    See: https://foosoft.net/projects/anki-connect/
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8765",
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_CONNECT_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize AnkiConnect client.

        Args:
            base_url: AnkiConnect URL
            timeout: Request timeout in seconds
            retries: Connection attempts retried before giving up
            transport: Custom transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport or httpx.AsyncHTTPTransport(retries=retries),
        )

        logger.debug(
            "Initialized AnkiConnect client: url={}, timeout={}s, retries={}",
            self.base_url,
            self.timeout,
            retries,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AnkiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ========================================
    # Core API Methods
    # ========================================

    async def _invoke(self, action: str, params: dict[str, Any] | None = None) -> Any:
        """
        Invoke an AnkiConnect API action.

        Args:
            action: AnkiConnect action name (e.g., "version", "findCards")
            params: Action parameters

        Returns:
            Result from AnkiConnect API

        Raises:
            AnkiConnectError: If AnkiConnect returns an error
            AnkiUnavailableError: If the HTTP request fails
        """
        payload = {
            "action": action,
            "version": API_VERSION,
            "params": params or {},
        }

        # Truncate large params for logging to avoid verbose output
        log_params: dict[str, Any] = {}
        for key, value in (params or {}).items():
            if isinstance(value, list) and len(value) > 10:
                log_params[key] = f"[{len(value)} items]"
            elif key == "data":
                log_params[key] = f"<{len(value)} base64 chars>"
            else:
                log_params[key] = value
        logger.debug("AnkiConnect request: action={}, params={}", action, log_params)

        try:
            response = await self._client.post(self.base_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AnkiUnavailableError(
                f"AnkiConnect request '{action}' to {self.base_url} failed: {exc}"
            ) from exc

        data = response.json()

        if data.get("error"):
            raise AnkiConnectError(action, str(data["error"]))

        return data.get("result")

    async def check_connection(self) -> bool:
        """
        Check if AnkiConnect is running and accessible.

        Detects common failure modes:
        - Anki not running
        - AnkiConnect addon not installed
        - Modal dialog blocking API (request times out)
        """
        try:
            version = await self._invoke("version")
        except AnkiUnavailableError as exc:
            if isinstance(exc.__cause__, httpx.TimeoutException):
                logger.warning(
                    "AnkiConnect request timed out. "
                    "Anki may have a modal dialog open (e.g., 'Check Database', 'Sync')."
                )
            else:
                logger.warning(
                    "Anki not running or AnkiConnect not installed. "
                    "Start Anki and ensure AnkiConnect addon is enabled."
                )
            return False
        except AnkiConnectError as exc:
            logger.warning("AnkiConnect error: {}", exc)
            return False

        logger.debug("AnkiConnect version detected: {}", version)
        return True

    # ========================================
    # Due Cards
    # ========================================

    async def get_deck_names(self) -> list[str]:
        return await self._invoke("deckNames") or []

    async def find_cards(self, deck_name: str, due_only: bool = True) -> list[int]:
        """
        Card ids in a deck, optionally restricted to cards due now.

        Anki's is:due covers learning and review cards only, so new
        cards are searched for explicitly.
        """
        query = f'deck:"{deck_name}"'
        if due_only:
            query += " (is:due OR is:new)"
        return await self._invoke("findCards", {"query": query}) or []

    async def get_cards_info(self, card_ids: list[int]) -> list[Item]:
        """Fetch cards and map them to Items. Unknown ids are dropped."""
        if not card_ids:
            return []

        cards = await self._invoke("cardsInfo", {"cards": card_ids}) or []
        items = []
        for card in cards:
            item = self._map_card_to_item(card)
            if item is not None:
                items.append(item)
        return items

    async def are_due(self, card_ids: list[int]) -> list[bool]:
        if not card_ids:
            return []
        return await self._invoke("areDue", {"cards": card_ids}) or []

    async def current_day(self, reference: Item) -> int | None:
        """
        Anki's current day number, in the unit review cards use for due.

        AnkiConnect does not report the day number directly. It is found
        from a due review card: prop:due>=-N matches that card exactly
        when it is at most N days overdue, so a binary search over N on
        the card's id yields today - due.

        Args:
            reference: A due review card

        Returns:
            Day number, or None if the card is overdue by more than
            MAX_OVERDUE_DAYS or no longer matches at all
        """

        async def overdue_at_most(days: int) -> bool:
            query = f"cid:{reference.id} prop:due>={-days}"
            return bool(await self._invoke("findCards", {"query": query}))

        if await overdue_at_most(0):
            return reference.due

        low, high = 1, 1
        while not await overdue_at_most(high):
            if high >= MAX_OVERDUE_DAYS:
                logger.warning("Could not determine today's day number from card {}", reference.id)
                return None
            low, high = high + 1, min(high * 2, MAX_OVERDUE_DAYS)

        while low < high:
            middle = (low + high) // 2
            if await overdue_at_most(middle):
                high = middle
            else:
                low = middle + 1
        return reference.due + low

    async def get_due_items(
        self,
        deck_name: str,
        queue_order: QueueOrder = QueueOrder.LEARNING_REVIEW_NEW,
        review_order: ReviewSortOrder = ReviewSortOrder.DUE_DATE_RANDOM,
        new_order: NewCardOrder = NewCardOrder.DECK,
        rng: random.Random | None = None,
    ) -> list[Item]:
        """
        Fetch and order the due cards of a deck.

        Cards can stop being due between the search and the fetch, so
        the fetched set is filtered through areDue before ordering.
        AnkiConnect reports new cards as due.
        """
        card_ids = await self.find_cards(deck_name)
        if not card_ids:
            logger.info("No due cards in deck '{}'", deck_name)
            return []

        items = await self.get_cards_info(card_ids)
        due_flags = await self.are_due([item.id for item in items])
        due_items = [item for item, is_due in zip(items, due_flags) if is_due]

        dropped = len(items) - len(due_items)
        if dropped:
            logger.debug("Dropped {} cards that are no longer due", dropped)

        today = None
        reviews = [item for item in due_items if item.queue is QueueBucket.REVIEW]
        if review_order is ReviewSortOrder.RELATIVE_OVERDUENESS and reviews:
            today = await self.current_day(max(reviews, key=lambda item: item.due))
            logger.debug("Anki day number: {}", today)

        return order_items(due_items, queue_order, review_order, new_order, rng=rng, today=today)

    async def answer_card(self, card_id: int, ease: int) -> bool:
        """
        Answer a card.

        Returns:
            True if Anki accepted the answer, False if the card no longer
            exists or cannot be answered
        """
        if ease not in (1, 2, 3, 4):
            raise ValueError(f"ease must be between 1 and 4, got {ease}")
        if not card_id:
            return False

        try:
            result = await self._invoke(
                "answerCards",
                {"answers": [{"cardId": card_id, "ease": ease}]},
            )
        except AnkiConnectError as exc:
            logger.warning("Answering card {} failed: {}", card_id, exc)
            return False

        answered = bool(result and result[0])
        logger.debug("Answered card {} with ease {}: {}", card_id, ease, answered)
        return answered

    async def sync(self) -> None:
        """Trigger an AnkiWeb sync; a missing login is not an error."""
        try:
            await self._invoke("sync")
        except AnkiConnectError as exc:
            if "auth not configured" in str(exc):
                logger.warning("Skipping AnkiWeb sync: {}", exc)
                return
            raise

    # ========================================
    # Media and Metadata
    # ========================================

    async def store_media_file(self, filename: str, data: bytes) -> str:
        """Store (or overwrite) a media file and return its stored name."""
        result = await self._invoke(
            "storeMediaFile",
            {"filename": filename, "data": base64.b64encode(data).decode("ascii")},
        )
        return result or filename

    async def retrieve_media_file(self, filename: str) -> bytes | None:
        """Media file contents, or None if it does not exist."""
        result = await self._invoke("retrieveMediaFile", {"filename": filename})
        if not result:
            return None
        return base64.b64decode(result)

    @staticmethod
    def metadata_filename(card_id: int) -> str:
        return f"_gakuon_{card_id}.json"

    async def get_card_metadata(self, item: Item) -> CardMetadata | None:
        """
        Stored metadata for a card.

        Missing, unreadable or older-schema records all count as absent.
        """
        raw = await self.retrieve_media_file(self.metadata_filename(item.id))
        if raw is None:
            return None

        try:
            metadata = CardMetadata.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable metadata for card {}: {}", item.id, exc)
            return None

        if metadata.schema_version != METADATA_SCHEMA_VERSION:
            logger.info(
                "Ignoring metadata schema v{} for card {}",
                metadata.schema_version,
                item.id,
            )
            return None
        return metadata

    async def set_card_metadata(self, item: Item, metadata: CardMetadata) -> bool:
        """Replace the stored metadata for a card in one write."""
        await self.store_media_file(
            self.metadata_filename(item.id),
            metadata.model_dump_json().encode("utf-8"),
        )
        return True

    # ========================================
    # Mapping Helpers
    # ========================================

    @classmethod
    def _map_card_to_item(cls, card: dict[str, Any]) -> Item | None:
        """Map a cardsInfo entry to an Item; empty entries map to None."""
        card_id = card.get("cardId")
        if not card_id:
            return None

        bucket = cls._map_queue(card.get("queue"))
        if bucket is None:
            logger.debug("Skipping card {} in queue {}", card_id, card.get("queue"))
            return None

        fields = {
            name: cls._field_value(value)
            for name, value in (card.get("fields") or {}).items()
        }
        return Item(
            id=int(card_id),
            deck_name=card.get("deckName") or "",
            queue=bucket,
            due=int(card.get("due") or 0),
            interval_days=int(card.get("interval") or 0),
            ease_factor=cls._format_ease(card.get("factor")),
            fields=fields,
            note_id=int(card.get("note") or 0),
            model_name=card.get("modelName") or "",
            reps=int(card.get("reps") or 0),
            lapses=int(card.get("lapses") or 0),
        )

    @staticmethod
    def _field_value(field: dict[str, Any] | None) -> str:
        """Extract string value from Anki field dictionary."""
        if not field:
            return ""

        if isinstance(field, dict):
            if "value" in field:
                return str(field["value"]).strip()
            return ""

        return str(field).strip()

    @staticmethod
    def _map_queue(queue: int | None) -> QueueBucket | None:
        """Map Anki queue code to a bucket; suspended and buried cards map to None."""
        return QUEUE_BUCKETS.get(queue)

    @staticmethod
    def _format_ease(raw: int | None) -> float:
        """Format Anki ease factor (stored as integer * 1000)."""
        if not raw:
            return 0.0
        return round(raw / 1000, 3)
