"""
Unit tests for the CLI commands.

AnkiConnect and OpenAI are replaced with fakes by patching the
connection helpers in gakuon.cli.
"""

import random
from unittest.mock import AsyncMock, Mock, patch

import pytest
from conftest import FakeAnki, FakeGenerator
from typer.testing import CliRunner

from gakuon.cli import _learn, _test_deck, app
from gakuon.config import Settings, get_settings
from gakuon.errors import AnkiConnectError, AnkiUnavailableError
from gakuon.session import SessionOutcome

runner = CliRunner()


class CliAnki(FakeAnki):
    """FakeAnki usable as the async context manager the commands open."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def get_deck_names(self):
        return ["Japanese::Vocab", "French::Verbs"]

    async def find_cards(self, deck_name, due_only=True):
        return [item.id for item in self.items if item.deck_name == deck_name]

    async def get_cards_info(self, card_ids):
        return [item for item in self.items if item.id in card_ids]


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text('anki_host = "http://anki.local:8765"\n', encoding="utf-8")
    monkeypatch.setenv("GAKUON_CONFIG_FILE", str(path))
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


class TestDecksCommand:
    """Tests for `gakuon decks`."""

    def test_lists_due_counts(self, config_file, make_item):
        anki = CliAnki(items=[make_item(1), make_item(2), make_item(3, deck="French::Verbs")])

        with patch("gakuon.cli._connect", AsyncMock(return_value=anki)):
            result = runner.invoke(app, ["decks", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Japanese::Vocab" in result.output
        assert "French::Verbs" in result.output

    def test_unreachable_anki_exits_with_error(self, config_file):
        with patch(
            "gakuon.cli._connect",
            AsyncMock(side_effect=AnkiUnavailableError("Cannot reach AnkiConnect")),
        ):
            result = runner.invoke(app, ["decks", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Cannot reach AnkiConnect" in result.output

    def test_invalid_config_exits_with_error(self, config_file):
        config_file.write_text('[card_order]\nqueue_order = "sideways"\n', encoding="utf-8")

        result = runner.invoke(app, ["decks", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestLearnCommand:
    """Tests for `gakuon learn` startup failures."""

    def test_missing_openai_key_exits_with_error(self, config_file, monkeypatch):
        for name in ("OPENAI_API_KEY", "GAKUON_OPENAI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        anki = CliAnki()
        anki.close = AsyncMock()

        with patch("gakuon.cli._connect", AsyncMock(return_value=anki)):
            result = runner.invoke(
                app, ["learn", "--deck", "Japanese::Vocab", "--config", str(config_file)]
            )

        assert result.exit_code == 1
        assert "OpenAI API key not set" in result.output
        anki.close.assert_awaited_once()


class TestSampleGeneration:
    """Tests for the dry-run content generation behind `gakuon test`."""

    @pytest.mark.asyncio
    async def test_generates_without_storing(self, config_file, make_item, deck):
        anki = CliAnki(
            items=[
                make_item(1),
                make_item(2),
                make_item(3, fields={"Back": "no front"}),
            ]
        )
        generator = FakeGenerator()
        settings = Settings(openai_api_key="sk-test", decks=[deck])

        with patch("gakuon.cli._connect", AsyncMock(return_value=anki)), patch(
            "gakuon.cli.OpenAIService.from_settings", return_value=generator
        ):
            generated = await _test_deck(settings, "Japanese::Vocab", 10, rng=random.Random(0))

        assert generated == 2
        assert len(generator.prompts) == 2
        assert generator.audio_calls == []
        assert anki.metadata == {}
        assert anki.media == {}

    @pytest.mark.asyncio
    async def test_empty_deck(self, config_file, deck):
        settings = Settings(openai_api_key="sk-test", decks=[deck])

        with patch("gakuon.cli._connect", AsyncMock(return_value=CliAnki())), patch(
            "gakuon.cli.OpenAIService.from_settings", return_value=FakeGenerator()
        ):
            assert await _test_deck(settings, "Japanese::Vocab", 3) == 0


class TestLearnSync:
    """Tests for the AnkiWeb sync after a review session."""

    @pytest.fixture
    def anki(self):
        anki = CliAnki()
        anki.sync = AsyncMock()
        anki.close = AsyncMock()
        return anki

    async def learn(self, anki, settings):
        session = Mock(total=1, run=AsyncMock(return_value=SessionOutcome.COMPLETED))
        with patch("gakuon.cli._connect", AsyncMock(return_value=anki)), patch(
            "gakuon.cli.OpenAIService.from_settings", return_value=FakeGenerator()
        ), patch("gakuon.cli.start_session", AsyncMock(return_value=session)), patch(
            "gakuon.cli.KeyboardListener"
        ) as listener:
            outcome = await _learn(settings, "Japanese::Vocab", debug=False)

        listener.return_value.stop.assert_called_once()
        anki.close.assert_awaited_once()
        return outcome

    @pytest.mark.asyncio
    async def test_syncs_after_session(self, config_file, anki, deck):
        settings = Settings(openai_api_key="sk-test", decks=[deck])

        assert await self.learn(anki, settings) is SessionOutcome.COMPLETED
        anki.sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_can_be_disabled(self, config_file, anki, deck):
        settings = Settings(openai_api_key="sk-test", decks=[deck], sync_after_review=False)

        await self.learn(anki, settings)

        anki.sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_failure_does_not_fail_session(self, config_file, anki, deck):
        anki.sync.side_effect = AnkiConnectError("sync", "network down")
        settings = Settings(openai_api_key="sk-test", decks=[deck])

        assert await self.learn(anki, settings) is SessionOutcome.COMPLETED


class TestInitCommand:
    """Tests for `gakuon init`."""

    DRAFT = (
        '[[decks]]\nname = "Vocab"\npattern = "Japanese::Vocab"\nfields.word = "Front"\n'
        'prompt = "Use ${word}."\n\n[decks.response_fields]\nsentence.description = "Sentence"\n'
    )

    def invoke(self, config_file, make_item, *args):
        anki = CliAnki(items=[make_item(1), make_item(2)])
        service = Mock(complete=AsyncMock(return_value=self.DRAFT))
        with patch("gakuon.cli._connect", AsyncMock(return_value=anki)), patch(
            "gakuon.cli.OpenAIService.from_settings", return_value=service
        ):
            return runner.invoke(
                app, ["init", "--deck", "Japanese::Vocab", "--config", str(config_file), *args]
            )

    def test_prints_draft_without_writing(self, config_file, make_item, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        before = config_file.read_text(encoding="utf-8")

        result = self.invoke(config_file, make_item)

        assert result.exit_code == 0
        assert "Japanese::Vocab" in result.output
        assert "--write" in result.output
        assert config_file.read_text(encoding="utf-8") == before

    def test_write_appends_deck_and_keeps_backup(self, config_file, make_item, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        before = config_file.read_text(encoding="utf-8")

        result = self.invoke(config_file, make_item, "--write")

        assert result.exit_code == 0
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.anki_host == "http://anki.local:8765"
        assert [deck.name for deck in settings.decks] == ["Vocab"]
        backups = list(config_file.parent.glob("config.backup.*.toml"))
        assert len(backups) == 1
        assert backups[0].read_text(encoding="utf-8") == before

    def test_missing_openai_key_exits_with_error(self, config_file, make_item, monkeypatch):
        for name in ("OPENAI_API_KEY", "GAKUON_OPENAI_API_KEY"):
            monkeypatch.delenv(name, raising=False)

        result = self.invoke(config_file, make_item)

        assert result.exit_code == 1
        assert "OpenAI API key not set" in result.output
