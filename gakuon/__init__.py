"""gakuon: audio-first review sessions for Anki due cards."""

__version__ = "0.3.0"
