"""
Audio playback through an external player process (ffplay by default).

Only one process plays at a time: play() stops whatever is playing
before starting, and stop() terminates the active process without
waiting for it to finish.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import tempfile
from pathlib import Path
from typing import Protocol

from loguru import logger

DEFAULT_PLAYER_COMMAND = ["ffplay", "-nodisp", "-autoexit", "-hide_banner", "-loglevel", "quiet"]
SOUND_TAG_PATTERN = re.compile(r"^\[sound:(.+)\]$")


class MediaSource(Protocol):
    async def retrieve_media_file(self, filename: str) -> bytes | None: ...


def media_name(reference: str) -> str:
    """Strip Anki's [sound:...] wrapper from a media reference."""
    match = SOUND_TAG_PATTERN.match(reference.strip())
    return match.group(1) if match else reference.strip()


class AudioPlayer:
    """Plays stored media references one at a time."""

    def __init__(
        self,
        media: MediaSource,
        command: list[str] | None = None,
    ) -> None:
        self.media = media
        self.command = list(command or DEFAULT_PLAYER_COMMAND)
        self._process: asyncio.subprocess.Process | None = None
        self._files: dict[str, Path] = {}
        self._tmp_dir: Path | None = None

    @property
    def is_playing(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def resolve(self, reference: str) -> Path | None:
        """Local file for a media reference, fetched from Anki once per session."""
        name = media_name(reference)
        if name in self._files:
            return self._files[name]

        data = await self.media.retrieve_media_file(name)
        if data is None:
            return None

        if self._tmp_dir is None:
            self._tmp_dir = Path(tempfile.mkdtemp(prefix="gakuon_"))
        path = self._tmp_dir / Path(name).name
        path.write_bytes(data)
        self._files[name] = path
        return path

    async def play(self, reference: str) -> bool:
        """
        Play a media reference and wait until it ends.

        Returns:
            True if playback ran to completion
        """
        self.stop()

        path = await self.resolve(reference)
        if path is None:
            logger.warning("Audio file not found in Anki media: {}", reference)
            return False

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                str(path),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.error("Audio player '{}' not found; install ffmpeg to hear audio", self.command[0])
            return False

        self._process = process
        try:
            code = await process.wait()
        except asyncio.CancelledError:
            self.stop()
            raise
        finally:
            if self._process is process:
                self._process = None

        if code > 0:
            logger.warning("{} exited with code {} for {}", self.command[0], code, path.name)
        return code == 0

    def stop(self) -> None:
        """Terminate the active playback process, if any."""
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass

    def cleanup(self) -> None:
        """Stop playback and remove cached audio files."""
        self.stop()
        if self._tmp_dir is not None:
            shutil.rmtree(self._tmp_dir, ignore_errors=True)
            self._tmp_dir = None
        self._files.clear()
