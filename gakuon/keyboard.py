"""
Terminal key bindings for the interactive session.

Keys are read one at a time with click.getchar() on a daemon thread and
handed to the session's action channel on the event loop thread. Keys
without a binding are ignored.
"""

from __future__ import annotations

import asyncio
import select
import sys
import threading
import time
from collections.abc import Callable

import click
from loguru import logger

from gakuon.session import (
    NEXT,
    PLAY_ALL,
    PLAY_PRIMARY,
    PREVIOUS,
    QUIT,
    REGENERATE,
    STOP,
    Action,
)

KEY_BINDINGS: dict[str, Action] = {
    " ": PLAY_ALL,
    "r": PLAY_PRIMARY,
    "s": STOP,
    "n": NEXT,
    "\x1b[C": NEXT,  # right arrow (ANSI)
    "\xe0M": NEXT,  # right arrow (Windows console)
    "p": PREVIOUS,
    "\x1b[D": PREVIOUS,  # left arrow (ANSI)
    "\xe0K": PREVIOUS,  # left arrow (Windows console)
    "1": Action.rate(1),
    "2": Action.rate(2),
    "3": Action.rate(3),
    "4": Action.rate(4),
    "g": REGENERATE,
    "q": QUIT,
    "\x03": QUIT,  # Ctrl-C
}

# (keys, description) rows for the controls table
CONTROLS: list[tuple[str, str]] = [
    ("SPACE", "Play all audio"),
    ("R", "Replay first audio field"),
    ("S", "Stop playback"),
    ("N / →", "Next card"),
    ("P / ←", "Previous card"),
    ("1-4", "Rate card (Again, Hard, Good, Easy)"),
    ("G", "Regenerate content"),
    ("Q", "Quit"),
]


def action_for_key(key: str) -> Action | None:
    """Action bound to a key press; letters are matched case-insensitively."""
    action = KEY_BINDINGS.get(key)
    if action is None and len(key) == 1:
        action = KEY_BINDINGS.get(key.lower())
    return action


def key_ready(timeout: float) -> bool:
    """Wait up to timeout seconds for a key press to become readable."""
    if sys.platform == "win32":
        import msvcrt

        deadline = time.monotonic() + timeout
        while not msvcrt.kbhit():
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    readable, _, _ = select.select([sys.stdin], [], [], timeout)
    return bool(readable)


class KeyboardListener:
    """
    Reads keys on a background thread and submits their actions.

    While running on a POSIX terminal, stdin is switched to cbreak mode
    so single key presses become readable without Enter. getchar() is
    only called once a key is waiting, so stop() can end the thread and
    restore the terminal without waiting for another key press.
    """

    POLL_INTERVAL = 0.1

    def __init__(
        self,
        submit: Callable[[Action], None],
        loop: asyncio.AbstractEventLoop,
        getchar: Callable[[], str] = click.getchar,
        ready: Callable[[float], bool] = key_ready,
    ) -> None:
        self.submit = submit
        self.loop = loop
        self.getchar = getchar
        self.ready = ready
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._saved_mode: list | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._enter_cbreak()
        self._thread = threading.Thread(target=self._read_keys, name="gakuon-keyboard", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        """Stop reading keys, wait for the reader thread and restore the terminal."""
        self._stopped.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Keyboard reader did not stop within {}s", timeout)
        self._restore_mode()

    def _enter_cbreak(self) -> None:
        if sys.platform == "win32" or not sys.stdin.isatty():
            return
        import termios
        import tty

        fd = sys.stdin.fileno()
        self._saved_mode = termios.tcgetattr(fd)
        tty.setcbreak(fd)

    def _restore_mode(self) -> None:
        if self._saved_mode is None:
            return
        import termios

        termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._saved_mode)
        self._saved_mode = None

    def _read_keys(self) -> None:
        while not self._stopped.is_set():
            try:
                if not self.ready(self.POLL_INTERVAL):
                    continue
                key = self.getchar()
            except (EOFError, KeyboardInterrupt):
                key = "\x03"

            action = action_for_key(key)
            if action is None:
                logger.debug("Ignoring unbound key {!r}", key)
                continue
            if self._stopped.is_set() or self.loop.is_closed():
                return

            self.loop.call_soon_threadsafe(self.submit, action)
            if action.kind is QUIT.kind:
                return
