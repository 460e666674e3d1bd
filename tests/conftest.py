"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
In-memory fakes stand in for AnkiConnect, the OpenAI connector and the
audio player, so no test needs Anki, an API key or ffplay.
"""
import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from gakuon.config import DeckConfig, ResponseField  # noqa: E402
from gakuon.models import CardMetadata, Item, QueueBucket  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


# ========================================
# Fakes
# ========================================


class FakeAnki:
    """In-memory AnkiConnect stand-in for the content store and review calls."""

    def __init__(self, items=None, answer_result=True):
        self.items = list(items or [])
        self.answer_result = answer_result
        self.answers = []
        self.metadata = {}
        self.media = {}
        self.metadata_writes = 0

    async def get_due_items(self, deck_name, queue_order=None, review_order=None, new_order=None, rng=None):
        return [item for item in self.items if item.deck_name == deck_name]

    async def answer_card(self, card_id, ease):
        self.answers.append((card_id, ease))
        return self.answer_result

    async def get_card_metadata(self, item):
        return self.metadata.get(item.id)

    async def set_card_metadata(self, item, metadata):
        self.metadata[item.id] = metadata
        self.metadata_writes += 1
        return True

    async def store_media_file(self, filename, data):
        self.media[filename] = data
        return filename

    async def retrieve_media_file(self, filename):
        return self.media.get(filename)


class FakeGenerator:
    """
    Scriptable content connector.

    replies: list of dicts (or exceptions) returned in order; once
        exhausted, a complete reply is built from the prompt.
    gates: prompt substring -> asyncio.Event that must be set before a
        prompt containing it gets a reply.
    """

    def __init__(self, replies=None, gates=None, audio_error=None):
        self.replies = list(replies or [])
        self.gates = dict(gates or {})
        self.audio_error = audio_error
        self.prompts = []
        self.audio_calls = []
        self.completed = []

    async def generate_text(self, prompt, response_fields):
        self.prompts.append(prompt)
        for key, gate in self.gates.items():
            if key in prompt:
                await gate.wait()

        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
        else:
            reply = {"sentence": f"Sentence: {prompt}", "meaning": "meaning"}
        self.completed.append(prompt)
        return dict(reply)

    async def synthesize_audio(self, text, voice):
        self.audio_calls.append((text, voice))
        if self.audio_error is not None:
            raise self.audio_error
        return f"audio:{text}".encode()


class FakePlayer:
    """Audio player that records references; block=True plays until stopped."""

    def __init__(self, block=False):
        self.block = block
        self.played = []
        self.stops = 0
        self._stopped = asyncio.Event()

    async def play(self, reference):
        self.played.append(reference)
        if self.block:
            self._stopped.clear()
            await self._stopped.wait()
        return True

    def stop(self):
        self.stops += 1
        self._stopped.set()


# ========================================
# Fixtures
# ========================================


@pytest.fixture
def make_item():
    """Factory for due Items with sensible defaults."""

    def _make(card_id, queue=QueueBucket.REVIEW, due=100, interval=1, deck="Japanese::Vocab", **kwargs):
        fields = kwargs.pop("fields", {"Front": f"word{card_id}", "Back": f"meaning{card_id}"})
        return Item(
            id=card_id,
            deck_name=deck,
            queue=queue,
            due=due,
            interval_days=interval,
            fields=fields,
            **kwargs,
        )

    return _make


@pytest.fixture
def deck():
    """Deck config with one required audio field and one optional audio field."""
    return DeckConfig(
        name="Japanese",
        pattern="^Japanese",
        fields={"word": "Front"},
        prompt="Write a sentence using ${word}.",
        tts_voice="nova",
        response_fields={
            "sentence": ResponseField(description="Example sentence", required=True, audio=True),
            "meaning": ResponseField(description="Meaning", audio=True, tts_voice="echo"),
            "notes": ResponseField(description="Usage notes"),
        },
    )


@pytest.fixture
def fake_anki():
    return FakeAnki()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_player():
    return FakePlayer()


@pytest.fixture
def cached_metadata():
    """Factory for stored metadata records."""
    from datetime import UTC, datetime

    def _make(content, audio=None):
        return CardMetadata(
            generated_at=datetime(2024, 1, 1, tzinfo=UTC),
            content=content,
            audio=audio or {},
        )

    return _make
