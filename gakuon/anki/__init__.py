"""AnkiConnect integration."""

from gakuon.anki.client import AnkiClient

__all__ = ["AnkiClient"]
