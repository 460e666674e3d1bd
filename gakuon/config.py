"""
Configuration settings for gakuon.

Uses Pydantic Settings with three sources, highest priority first:
environment variables (GAKUON_ prefix), a .env file, and the TOML config
file at ~/.gakuon/config.toml (override with GAKUON_CONFIG_FILE).
BASE64_GAKUON_CONFIG, when set, holds the whole TOML file base64-encoded
and takes the file's place. Top-level values may reference environment
variables as ${NAME} or $NAME.

A deck entry that does not parse is dropped and logged. A deck whose
prompt uses an unmapped placeholder, or that defines no response fields,
stays loaded and reports itself through DeckConfig.configuration_error().

Example config.toml:

    anki_host = "http://localhost:8765"
    tts_voice = "alloy"

    [card_order]
    queue_order = "learning_review_new"
    review_order = "relative_overdueness"

    [[decks]]
    name = "Japanese Vocabulary"
    pattern = "Japanese::Vocabulary"
    prompt = "Write an example sentence using ${word} (${meaning})."

    [decks.fields]
    word = "Front"
    meaning = "Back"

    [decks.response_fields.sentence]
    description = "Example sentence"
    required = true
    audio = true
"""

from __future__ import annotations

import base64
import os
import re
import shutil
import time
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator
from loguru import logger
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from gakuon.errors import ConfigurationError
from gakuon.models import NewCardOrder, QueueOrder, ReviewSortOrder

DEFAULT_CONFIG_PATH = Path.home() / ".gakuon" / "config.toml"
PLACEHOLDER_PATTERN = re.compile(r"\$\{([^}]+)\}")


def config_path() -> Path:
    """Location of the TOML config file for this process."""
    return Path(os.environ.get("GAKUON_CONFIG_FILE", str(DEFAULT_CONFIG_PATH))).expanduser()


def find_placeholders(prompt: str) -> list[str]:
    """Return placeholder names in order of first appearance."""
    seen: list[str] = []
    for name in PLACEHOLDER_PATTERN.findall(prompt):
        if name not in seen:
            seen.append(name)
    return seen


# ========================================
# Deck content specs
# ========================================


class ResponseField(BaseModel):
    """One field the model must return for a card."""

    description: str
    required: bool = False
    audio: bool = False
    tts_voice: str | None = None


class DeckConfig(BaseModel):
    """How to build prompts and what to expect back for matching decks."""

    name: str
    pattern: str = Field(description="Regular expression searched in the Anki deck name")
    fields: dict[str, str] = Field(
        default_factory=dict,
        description="Prompt placeholder -> Anki note field",
    )
    prompt: str
    tts_voice: str | None = None
    response_fields: dict[str, ResponseField] = Field(default_factory=dict)

    @field_validator("pattern")
    @classmethod
    def _compile_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid deck pattern {value!r}: {exc}") from exc
        return value

    def configuration_error(self) -> ConfigurationError | None:
        """
        What makes this deck config unusable, if anything.

        A deck with problems still loads so the rest of the config stays
        usable; cards from matching decks are skipped instead.
        """
        unmapped = [name for name in find_placeholders(self.prompt) if name not in self.fields]
        if not unmapped and self.response_fields:
            return None
        message = f"Deck config '{self.name}' is invalid"
        if not self.response_fields:
            message += "; no response_fields defined"
        return ConfigurationError(message, invalid_fields=unmapped)

    @property
    def audio_fields(self) -> list[str]:
        """Response fields that get synthesized speech, in declaration order."""
        return [name for name, spec in self.response_fields.items() if spec.audio]

    def matches(self, deck_name: str) -> bool:
        return re.search(self.pattern, deck_name) is not None


def find_deck_config(deck_name: str, decks: list[DeckConfig]) -> DeckConfig | None:
    """First deck config whose pattern matches the deck name."""
    for deck in decks:
        if deck.matches(deck_name):
            return deck
    return None


class CardOrderConfig(BaseModel):
    """Three-axis ordering policy for the due set."""

    queue_order: QueueOrder = QueueOrder.LEARNING_REVIEW_NEW
    review_order: ReviewSortOrder = ReviewSortOrder.DUE_DATE_RANDOM
    new_card_order: NewCardOrder = NewCardOrder.DECK


# ========================================
# Config file
# ========================================

BASE64_CONFIG_ENV = "BASE64_GAKUON_CONFIG"
ENV_REFERENCE_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Z_][A-Z0-9_]*)")
CONFIG_HEADER = "# gakuon configuration\n# Do not edit while a review session is running\n"


def interpolate_env(value: str) -> str:
    """Replace ${NAME} and $NAME with environment values; unset names stay as written."""

    def replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        env_value = os.environ.get(name)
        if not env_value:
            logger.warning("Environment variable {} is not set", name)
            return match.group(0)
        return env_value

    return ENV_REFERENCE_PATTERN.sub(replace, value)


def _interpolate_values(data: Any) -> Any:
    if isinstance(data, str):
        return interpolate_env(data)
    if isinstance(data, list):
        return [_interpolate_values(value) for value in data]
    if isinstance(data, dict):
        return {key: _interpolate_values(value) for key, value in data.items()}
    return data


def load_config_data(path: Path) -> dict[str, Any]:
    """
    Raw config values with environment references resolved.

    BASE64_GAKUON_CONFIG, when set and decodable, replaces the file.
    Deck entries are left untouched: their prompts use ${placeholder}
    for card fields.

    Raises:
        ConfigurationError: If the config file is not valid TOML
    """
    data: dict[str, Any] | None = None
    encoded = os.environ.get(BASE64_CONFIG_ENV)
    if encoded:
        try:
            data = tomllib.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
        except (ValueError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring {}: {}", BASE64_CONFIG_ENV, exc)

    if data is None:
        if not path.is_file():
            return {}
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid TOML in {path}: {exc}") from exc

    return {
        key: value if key == "decks" else _interpolate_values(value)
        for key, value in data.items()
    }


def backup_config(path: Path) -> Path | None:
    """Copy the config file next to itself as config.backup.<timestamp>.toml."""
    if not path.is_file():
        return None
    backup = path.with_name(f"{path.stem}.backup.{int(time.time() * 1000)}{path.suffix}")
    shutil.copy2(path, backup)
    logger.info("Backed up {} to {}", path, backup)
    return backup


def append_deck_config(path: Path, deck_toml: str) -> Path | None:
    """
    Add a [[decks]] entry to the config file, backing the file up first.

    Returns:
        Path of the backup, or None when the file did not exist yet

    Raises:
        ConfigurationError: If the combined file would not parse
    """
    current = path.read_text(encoding="utf-8") if path.is_file() else CONFIG_HEADER
    updated = current.rstrip("\n") + "\n\n" + deck_toml.strip() + "\n"
    try:
        tomllib.loads(updated)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Deck config does not fit into {path}: {exc}") from exc

    path.parent.mkdir(parents=True, exist_ok=True)
    backup = backup_config(path)
    path.write_text(updated, encoding="utf-8")
    logger.info("Saved deck config to {}", path)
    return backup


class ConfigFileSource(InitSettingsSource):
    """Settings source over load_config_data()."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path) -> None:
        super().__init__(settings_cls, load_config_data(path))


# ========================================
# Application settings
# ========================================


class Settings(BaseSettings):
    """Application settings loaded from environment, .env and config.toml."""

    model_config = SettingsConfigDict(
        env_prefix="GAKUON_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Anki Integration
    # ========================================
    anki_host: str = Field(
        default="http://localhost:8765",
        description="AnkiConnect plugin URL",
    )
    anki_timeout: float = Field(
        default=30.0,
        description="AnkiConnect request timeout in seconds",
    )
    default_deck: str | None = Field(
        default=None,
        description="Deck to review when none is given on the command line",
    )

    # ========================================
    # Content Generation
    # ========================================
    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("GAKUON_OPENAI_API_KEY", "OPENAI_API_KEY", "openai_api_key"),
        description="OpenAI API key for text and speech generation",
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI-compatible API base URL",
    )
    chat_model: str = Field(
        default="gpt-4o",
        description="Chat model used for card content",
    )
    init_model: str = Field(
        default="gpt-4o",
        description="Chat model used by `gakuon init` to draft deck configs",
    )
    tts_model: str = Field(
        default="tts-1",
        description="Speech model used for audio fields",
    )
    tts_voice: str = Field(
        default="alloy",
        description="Fallback voice when neither field nor deck sets one",
    )
    max_generation_attempts: int = Field(
        default=5,
        ge=1,
        description="Text generation attempts before giving up on a card",
    )

    # ========================================
    # Session Behavior
    # ========================================
    prefetch_window: int = Field(
        default=2,
        ge=1,
        description="Number of upcoming cards generated ahead of the current one",
    )
    card_order: CardOrderConfig = Field(default_factory=CardOrderConfig)
    sync_after_review: bool = Field(
        default=True,
        description="Sync the collection with AnkiWeb when a review session ends",
    )
    player_command: list[str] = Field(
        default_factory=lambda: [
            "ffplay", "-nodisp", "-autoexit", "-hide_banner", "-loglevel", "quiet",
        ],
        description="Audio player invocation; the file path is appended",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # API Server
    # ========================================
    api_host: str = Field(
        default="127.0.0.1",
        description="API server host",
    )
    api_port: int = Field(
        default=3000,
        description="API server port",
    )

    decks: list[DeckConfig] = Field(default_factory=list)

    @field_validator("decks", mode="before")
    @classmethod
    def _drop_unparseable_decks(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        decks = []
        for position, entry in enumerate(value):
            try:
                decks.append(DeckConfig.model_validate(entry))
            except ValidationError as exc:
                name = entry.get("name") if isinstance(entry, dict) else None
                problems = "; ".join(
                    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
                )
                error = ConfigurationError(f"Deck config '{name or position + 1}' is invalid: {problems}")
                logger.warning("{}; ignoring it", error)
        return decks

    @model_validator(mode="after")
    def _report_invalid_decks(self) -> Settings:
        for deck in self.decks:
            error = deck.configuration_error()
            if error is not None:
                logger.warning("{}; cards from matching decks will be skipped", error)
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            ConfigFileSource(settings_cls, config_path()),
        )

    # ========================================
    # Helper Methods
    # ========================================
    def has_openai_configured(self) -> bool:
        """Check if a generation API key is available."""
        return bool(self.openai_api_key)

    def find_deck_config(self, deck_name: str) -> DeckConfig | None:
        return find_deck_config(deck_name, self.decks)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Raises:
        ConfigurationError: If any source holds an invalid value
    """
    try:
        return Settings()
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise ConfigurationError(
            f"Invalid configuration ({config_path()}): " + "; ".join(problems)
        ) from exc
