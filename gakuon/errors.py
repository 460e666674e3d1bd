"""
Error taxonomy.

ConfigurationError is never retried. Everything the session loop may
show the user as "could not generate this card" derives from
ContentGenerationError so callers need a single except clause.
"""

from __future__ import annotations


class GakuonError(Exception):
    """Base class for all gakuon errors."""


class ConfigurationError(GakuonError):
    """Deck configuration does not fit the card being processed."""

    def __init__(
        self,
        message: str,
        missing_fields: list[str] | None = None,
        invalid_fields: list[str] | None = None,
    ) -> None:
        self.missing_fields = list(missing_fields or [])
        self.invalid_fields = list(invalid_fields or [])
        super().__init__(message)

    @property
    def details(self) -> dict[str, list[str]]:
        return {
            "missing_fields": self.missing_fields,
            "invalid_fields": self.invalid_fields,
        }

    def __str__(self) -> str:
        parts = [self.args[0]]
        if self.invalid_fields:
            parts.append(f"unmapped placeholders: {', '.join(self.invalid_fields)}")
        if self.missing_fields:
            parts.append(f"missing card fields: {', '.join(self.missing_fields)}")
        return "; ".join(parts)


class ContentGenerationError(GakuonError):
    """Content for a card could not be produced."""

    def __init__(self, message: str, card_id: int | None = None) -> None:
        self.card_id = card_id
        super().__init__(message)

    @property
    def details(self) -> dict[str, object]:
        return {"card_id": self.card_id}


class GenerationTransportError(ContentGenerationError):
    """The text connector kept failing until the attempt bound ran out."""

    def __init__(self, message: str, card_id: int | None = None, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message, card_id)

    @property
    def details(self) -> dict[str, object]:
        return {"card_id": self.card_id, "attempts": self.attempts}


class ContentValidationError(ContentGenerationError):
    """Generated content still lacked required fields after every attempt."""

    def __init__(
        self,
        message: str,
        card_id: int | None = None,
        missing_fields: list[str] | None = None,
        attempts: int = 0,
    ) -> None:
        self.missing_fields = list(missing_fields or [])
        self.attempts = attempts
        super().__init__(message, card_id)

    @property
    def details(self) -> dict[str, object]:
        return {
            "card_id": self.card_id,
            "missing_fields": self.missing_fields,
            "attempts": self.attempts,
        }


class AudioGenerationError(ContentGenerationError):
    """Speech synthesis failed for one of the audio fields."""

    def __init__(self, message: str, card_id: int | None = None, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, card_id)

    @property
    def details(self) -> dict[str, object]:
        return {"card_id": self.card_id, "field": self.field}


class AnkiConnectError(GakuonError):
    """AnkiConnect answered with an error payload."""

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        super().__init__(f"AnkiConnect error on {action}: {message}")


class AnkiUnavailableError(GakuonError):
    """AnkiConnect could not be reached at all."""
