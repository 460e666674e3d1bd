"""
Unit tests for key bindings and the keyboard listener.
"""

import asyncio
import time

import pytest

from gakuon.keyboard import CONTROLS, KEY_BINDINGS, KeyboardListener, action_for_key
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


def always_ready(timeout):
    return True


class TestKeyBindings:
    """Tests for key to action mapping."""

    @pytest.mark.parametrize(
        "key,expected",
        [
            (" ", PLAY_ALL),
            ("r", PLAY_PRIMARY),
            ("s", STOP),
            ("n", NEXT),
            ("\x1b[C", NEXT),
            ("p", PREVIOUS),
            ("\x1b[D", PREVIOUS),
            ("1", Action.rate(1)),
            ("4", Action.rate(4)),
            ("g", REGENERATE),
            ("q", QUIT),
            ("\x03", QUIT),
        ],
    )
    def test_bound_keys(self, key, expected):
        assert action_for_key(key) == expected

    def test_uppercase_letters_match(self):
        assert action_for_key("G") == REGENERATE
        assert action_for_key("Q") == QUIT

    @pytest.mark.parametrize("key", ["x", "5", "0", "\r", "\x1b[A"])
    def test_unbound_keys_are_ignored(self, key):
        assert action_for_key(key) is None

    def test_every_action_kind_has_a_key(self):
        kinds = {action.kind for action in KEY_BINDINGS.values()}
        assert kinds == {action.kind for action in (PLAY_ALL, PLAY_PRIMARY, STOP, NEXT, PREVIOUS, Action.rate(1), REGENERATE, QUIT)}
        assert len(CONTROLS) == 8


class TestKeyboardListener:
    """Tests for the background key reader."""

    @pytest.mark.asyncio
    async def test_forwards_bound_keys_until_quit(self):
        keys = iter(["x", "n", "3", "q", "n"])
        received = []
        quit_seen = asyncio.Event()

        def submit(action):
            received.append(action)
            if action == QUIT:
                quit_seen.set()

        listener = KeyboardListener(submit, asyncio.get_running_loop(), getchar=lambda: next(keys), ready=always_ready)
        listener.start()
        await asyncio.wait_for(quit_seen.wait(), timeout=1)

        assert received == [NEXT, Action.rate(3), QUIT]

    @pytest.mark.asyncio
    async def test_end_of_input_quits(self):
        received = []
        quit_seen = asyncio.Event()

        def getchar():
            raise EOFError

        def submit(action):
            received.append(action)
            quit_seen.set()

        listener = KeyboardListener(submit, asyncio.get_running_loop(), getchar=getchar, ready=always_ready)
        listener.start()
        await asyncio.wait_for(quit_seen.wait(), timeout=1)

        assert received == [QUIT]

    @pytest.mark.asyncio
    async def test_stop_without_key_press_ends_reader(self):
        """stop() should end the reader while it is still waiting for input."""
        waits = []

        def never_ready(timeout):
            waits.append(timeout)
            time.sleep(timeout / 10)
            return False

        def getchar():
            raise AssertionError("getchar called without a waiting key")

        listener = KeyboardListener(lambda action: None, asyncio.get_running_loop(), getchar=getchar, ready=never_ready)
        listener.start()
        assert listener.is_running is True

        listener.stop(timeout=1)

        assert listener.is_running is False
        assert waits

    @pytest.mark.asyncio
    async def test_stop_after_quit(self):
        received = []
        listener = KeyboardListener(received.append, asyncio.get_running_loop(), getchar=lambda: "q", ready=always_ready)
        listener.start()
        for _ in range(100):
            await asyncio.sleep(0.01)
            if received:
                break

        listener.stop()

        assert received == [QUIT]
        assert listener.is_running is False
