"""Content generation and playback services."""

from gakuon.services.audio import AudioPlayer
from gakuon.services.content_manager import ContentManager
from gakuon.services.openai_service import OpenAIService

__all__ = ["AudioPlayer", "ContentManager", "OpenAIService"]
