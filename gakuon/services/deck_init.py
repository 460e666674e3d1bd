"""
Draft a deck config from sample cards.

The chat model sees the deck's field names and a few sample cards and
answers with a [[decks]] TOML entry. The answer is checked against
DeckConfig before anyone is offered to save it.
"""

from __future__ import annotations

import re
import tomllib
from typing import Protocol

from loguru import logger
from pydantic import ValidationError

from gakuon.config import DeckConfig
from gakuon.errors import ConfigurationError
from gakuon.models import Item

DEFAULT_SAMPLE_SIZE = 3
CODE_FENCE_PATTERN = re.compile(r"^```[a-zA-Z]*\n(.*?)\n?```\s*$", re.DOTALL)

EXAMPLE_DECK = '''[[decks]]
name = "Japanese Core 2k"
pattern = "Japanese.*Core.*2k"
fields.word = "Vocabulary-Kanji"
fields.reading = "Vocabulary-Kana"
fields.meaning = "Vocabulary-English"
fields.context = "Expression"

prompt = """
Given a Japanese vocabulary card:
- Word: ${word} (${reading})
- Meaning: ${meaning}
- Context: ${context}

Generate natural and helpful content for learning this word.
"""

[decks.response_fields]
example.description = "A natural example sentence using the word"
example.required = true
example.audio = true

explanation_en.description = "Short explanation in English"
explanation_en.required = true
explanation_en.audio = true'''


class CardSource(Protocol):
    async def find_cards(self, deck_name: str, due_only: bool = True) -> list[int]: ...

    async def get_cards_info(self, card_ids: list[int]) -> list[Item]: ...


class Completer(Protocol):
    async def complete(self, prompt: str, model: str | None = None) -> str: ...


def build_init_prompt(deck_name: str, samples: list[Item]) -> str:
    """Prompt asking for one [[decks]] entry that fits the sample cards."""
    field_names = list(samples[0].fields)
    cards = "\n\n".join(
        "\n".join(f"{name}: {card.fields.get(name, '')}" for name in field_names)
        for card in samples
    )
    return (
        "You are a TOML configuration generator. Analyze this Anki deck structure "
        "and output a TOML configuration for an audio-based learning system.\n\n"
        f"Deck Name: {deck_name}\n"
        f"Available Fields: {', '.join(field_names)}\n\n"
        f"Sample Card Contents:\n{cards}\n\n"
        f"Example format:\n{EXAMPLE_DECK}\n\n"
        "Requirements:\n"
        "1. Output valid TOML without any markdown formatting or code blocks\n"
        "2. Use actual field names from the provided deck structure\n"
        "3. Map every ${placeholder} in the prompt under fields\n"
        "4. Define response fields suitable for audio learning\n"
        "5. Start output directly with [[decks]]"
    )


def parse_deck_toml(text: str) -> tuple[str, DeckConfig]:
    """
    Clean up a drafted [[decks]] entry and validate it.

    Returns:
        The TOML text without code fences, and the parsed deck config

    Raises:
        ConfigurationError: If the text is not a single usable deck entry
    """
    text = text.strip()
    fenced = CODE_FENCE_PATTERN.match(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Drafted deck config is not valid TOML: {exc}") from exc

    entries = data.get("decks")
    if not isinstance(entries, list) or len(entries) != 1:
        raise ConfigurationError("Drafted deck config must contain exactly one [[decks]] entry")

    try:
        deck = DeckConfig.model_validate(entries[0])
    except ValidationError as exc:
        raise ConfigurationError(f"Drafted deck config is invalid: {exc}") from exc

    error = deck.configuration_error()
    if error is not None:
        raise error
    return text, deck


async def draft_deck_config(
    anki: CardSource,
    completer: Completer,
    deck_name: str,
    model: str | None = None,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
) -> tuple[str, DeckConfig]:
    """
    Ask the chat model for a deck config based on the first cards of a deck.

    Raises:
        ConfigurationError: If the deck is empty or the draft is unusable
    """
    card_ids = await anki.find_cards(deck_name, due_only=False)
    samples = await anki.get_cards_info(card_ids[:sample_size])
    if not samples:
        raise ConfigurationError(f"No cards found in '{deck_name}'")

    logger.info("Drafting deck config for '{}' from {} cards", deck_name, len(samples))
    reply = await completer.complete(build_init_prompt(deck_name, samples), model)
    return parse_deck_toml(reply)
