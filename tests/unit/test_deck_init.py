"""
Unit tests for drafting deck configs from sample cards.
"""

import pytest
from conftest import FakeAnki

from gakuon.errors import ConfigurationError
from gakuon.services.deck_init import build_init_prompt, draft_deck_config, parse_deck_toml

DRAFT = '''[[decks]]
name = "Japanese Vocab"
pattern = "Japanese::Vocab"
fields.word = "Front"
fields.meaning = "Back"
prompt = "Use ${word} (${meaning}) in a sentence."

[decks.response_fields]
sentence.description = "Example sentence"
sentence.required = true
sentence.audio = true
'''


class SampleAnki(FakeAnki):
    async def find_cards(self, deck_name, due_only=True):
        return [item.id for item in self.items if item.deck_name == deck_name]

    async def get_cards_info(self, card_ids):
        return [item for item in self.items if item.id in card_ids]


class FakeCompleter:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    async def complete(self, prompt, model=None):
        self.calls.append((prompt, model))
        return self.reply


class TestInitPrompt:
    """Tests for the drafting prompt."""

    def test_lists_fields_and_sample_values(self, make_item):
        prompt = build_init_prompt("Japanese::Vocab", [make_item(1), make_item(2)])

        assert "Deck Name: Japanese::Vocab" in prompt
        assert "Available Fields: Front, Back" in prompt
        assert "Front: word1\nBack: meaning1\n\nFront: word2" in prompt
        assert "Start output directly with [[decks]]" in prompt


class TestParseDeckToml:
    """Tests for checking drafted TOML."""

    def test_valid_draft(self):
        text, deck = parse_deck_toml(DRAFT)

        assert text == DRAFT.strip()
        assert deck.fields == {"word": "Front", "meaning": "Back"}
        assert deck.audio_fields == ["sentence"]

    def test_code_fence_is_removed(self):
        text, deck = parse_deck_toml(f"```toml\n{DRAFT}```\n")

        assert text.startswith("[[decks]]")
        assert deck.name == "Japanese Vocab"

    def test_not_toml(self):
        with pytest.raises(ConfigurationError, match="not valid TOML"):
            parse_deck_toml("Sure! Here is your config:")

    def test_requires_one_deck_entry(self):
        with pytest.raises(ConfigurationError, match="exactly one"):
            parse_deck_toml('name = "loose"')

    def test_unmapped_placeholder_is_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_deck_toml(DRAFT.replace("(${meaning})", "(${reading})"))

        assert exc_info.value.invalid_fields == ["reading"]


class TestDraftDeckConfig:
    """Tests for sampling a deck and asking the model."""

    @pytest.mark.asyncio
    async def test_samples_first_cards_and_uses_init_model(self, make_item):
        anki = SampleAnki(items=[make_item(card_id) for card_id in range(1, 6)])
        completer = FakeCompleter(DRAFT)

        _, deck = await draft_deck_config(anki, completer, "Japanese::Vocab", model="gpt-init", sample_size=2)

        prompt, model = completer.calls[0]
        assert model == "gpt-init"
        assert "word2" in prompt
        assert "word3" not in prompt
        assert deck.pattern == "Japanese::Vocab"

    @pytest.mark.asyncio
    async def test_empty_deck(self):
        completer = FakeCompleter(DRAFT)

        with pytest.raises(ConfigurationError, match="No cards found"):
            await draft_deck_config(SampleAnki(), completer, "Empty")

        assert completer.calls == []
