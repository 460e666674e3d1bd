"""
Generated content cache for due cards.

get_or_generate() returns stored content when a card already has it and
otherwise runs the generation pipeline:

1. Validate the deck's placeholder mapping against the card (not retried)
2. Fill the prompt and request structured text
3. Re-request until every required field is present (bounded attempts)
4. Synthesize speech for audio fields
5. Store media, then replace the card's metadata record

Nothing is written until every generation step has succeeded, so a
failed run leaves the previous content in place.

Calls for the same card are serialized, so a forced regeneration never
races a background prefetch of that card.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Protocol

from loguru import logger

from gakuon.config import PLACEHOLDER_PATTERN, DeckConfig, ResponseField, find_placeholders
from gakuon.errors import (
    AudioGenerationError,
    ConfigurationError,
    ContentValidationError,
    GenerationTransportError,
)
from gakuon.models import CardMetadata, GenerationResult, Item

MAX_GENERATION_ATTEMPTS = 5


class ContentStore(Protocol):
    async def get_card_metadata(self, item: Item) -> CardMetadata | None: ...

    async def set_card_metadata(self, item: Item, metadata: CardMetadata) -> bool: ...

    async def store_media_file(self, filename: str, data: bytes) -> str: ...


class ContentGenerator(Protocol):
    async def generate_text(
        self, prompt: str, response_fields: dict[str, ResponseField]
    ) -> dict[str, str]: ...

    async def synthesize_audio(self, text: str, voice: str) -> bytes: ...


# ========================================
# Prompt and content helpers
# ========================================


def validate_fields(item: Item, deck: DeckConfig) -> None:
    """
    Check that every prompt placeholder resolves to a field on this card.

    Raises:
        ConfigurationError: Listing unmapped placeholders and mapped
            fields the card does not have
    """
    if not deck.response_fields:
        raise ConfigurationError(f"Deck config '{deck.name}' defines no response_fields")

    invalid_fields: list[str] = []
    missing_fields: list[str] = []

    for name in find_placeholders(deck.prompt):
        anki_field = deck.fields.get(name)
        if anki_field is None:
            invalid_fields.append(name)
        elif anki_field not in item.fields:
            missing_fields.append(f"{name} ({anki_field})")

    if invalid_fields or missing_fields:
        raise ConfigurationError(
            f"Field validation failed for card {item.id} with deck config '{deck.name}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields,
        )


def fill_prompt(item: Item, deck: DeckConfig) -> str:
    """Replace every ${placeholder} with the mapped card field."""
    return PLACEHOLDER_PATTERN.sub(
        lambda match: item.fields.get(deck.fields.get(match.group(1), ""), ""),
        deck.prompt,
    )


def missing_required_fields(content: dict[str, str], deck: DeckConfig) -> list[str]:
    return [
        name
        for name, spec in deck.response_fields.items()
        if spec.required and not (content.get(name) or "").strip()
    ]


def is_content_valid(content: dict[str, str], deck: DeckConfig) -> bool:
    """Content may be shown only if no required field is empty."""
    return not missing_required_fields(content, deck)


def select_voice(deck: DeckConfig, spec: ResponseField, default_voice: str) -> str:
    return spec.tts_voice or deck.tts_voice or default_voice


def audio_filename(card_id: int, field: str) -> str:
    return f"gakuon_{card_id}_{field}.mp3"


class ContentManager:
    """Cache-first access to generated content and audio for cards."""

    def __init__(
        self,
        store: ContentStore,
        generator: ContentGenerator,
        tts_voice: str = "alloy",
        max_attempts: int = MAX_GENERATION_ATTEMPTS,
    ) -> None:
        self.store = store
        self.generator = generator
        self.tts_voice = tts_voice
        self.max_attempts = max_attempts
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, card_id: int) -> asyncio.Lock:
        return self._locks.setdefault(card_id, asyncio.Lock())

    async def get_or_generate(
        self,
        item: Item,
        deck: DeckConfig,
        force_regenerate: bool = False,
    ) -> GenerationResult:
        """
        Content for a card, generating it when absent or when forced.

        Raises:
            ConfigurationError: Deck placeholders do not fit the card
            ContentGenerationError: Generation failed (see subclasses)
        """
        async with self._lock_for(item.id):
            if not force_regenerate:
                metadata = await self.store.get_card_metadata(item)
                if metadata is not None:
                    logger.debug("Using existing content for card {}", item.id)
                    return GenerationResult(
                        content=dict(metadata.content),
                        audio_refs=dict(metadata.audio),
                        is_new_content=False,
                        generated_at=metadata.generated_at,
                    )

            logger.debug(
                "Generating new content for card {} (forced={})",
                item.id,
                force_regenerate,
            )
            return await self._generate_and_store(item, deck)

    async def _generate_and_store(self, item: Item, deck: DeckConfig) -> GenerationResult:
        content = await self.generate_content(item, deck)
        audio = await self._synthesize_audio(item, deck, content)

        audio_refs: dict[str, str] = {}
        for field, data in audio.items():
            audio_refs[field] = await self.store.store_media_file(audio_filename(item.id, field), data)

        generated_at = datetime.now(UTC)
        await self.store.set_card_metadata(
            item,
            CardMetadata(generated_at=generated_at, content=content, audio=audio_refs),
        )
        logger.info(
            "Stored content for card {} ({} fields, {} audio)",
            item.id,
            len(content),
            len(audio_refs),
        )
        return GenerationResult(
            content=content,
            audio_refs=audio_refs,
            is_new_content=True,
            generated_at=generated_at,
        )

    async def generate_content(self, item: Item, deck: DeckConfig) -> dict[str, str]:
        """
        Structured text for a card, without touching the cache.

        Each attempt re-sends the same prompt. Connector errors and
        incomplete replies both consume an attempt; the error raised
        after the last attempt reflects how that attempt failed.
        """
        validate_fields(item, deck)
        prompt = fill_prompt(item, deck)

        last_error: Exception | None = None
        missing: list[str] = []
        for attempt in range(1, self.max_attempts + 1):
            try:
                content = await self.generator.generate_text(prompt, deck.response_fields)
            except Exception as exc:  # pylint: disable=broad-except
                last_error, missing = exc, []
                logger.warning(
                    "Text generation for card {} failed (attempt {}/{}): {}",
                    item.id,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                continue

            missing = missing_required_fields(content, deck)
            if not missing:
                return content

            last_error = None
            logger.warning(
                "Card {} reply missing required fields {} (attempt {}/{})",
                item.id,
                missing,
                attempt,
                self.max_attempts,
            )

        if missing:
            raise ContentValidationError(
                f"AI response for card {item.id} missing required fields after "
                f"{self.max_attempts} attempts: {', '.join(missing)}",
                card_id=item.id,
                missing_fields=missing,
                attempts=self.max_attempts,
            )
        raise GenerationTransportError(
            f"Content generation for card {item.id} failed after "
            f"{self.max_attempts} attempts: {last_error}",
            card_id=item.id,
            attempts=self.max_attempts,
        ) from last_error

    async def _synthesize_audio(
        self,
        item: Item,
        deck: DeckConfig,
        content: dict[str, str],
    ) -> dict[str, bytes]:
        """Speech for every non-empty audio field, in declaration order."""
        fields = [name for name in deck.audio_fields if (content.get(name) or "").strip()]

        async def synthesize(field: str) -> bytes:
            voice = select_voice(deck, deck.response_fields[field], self.tts_voice)
            try:
                return await self.generator.synthesize_audio(content[field], voice)
            except Exception as exc:  # pylint: disable=broad-except
                raise AudioGenerationError(
                    f"Audio generation for card {item.id} field '{field}' failed: {exc}",
                    card_id=item.id,
                    field=field,
                ) from exc

        # The first failure cancels the remaining fields
        try:
            async with asyncio.TaskGroup() as group:
                tasks = {field: group.create_task(synthesize(field)) for field in fields}
        except ExceptionGroup as failures:
            raise failures.exceptions[0]
        return {field: task.result() for field, task in tasks.items()}
