"""
Widget tests for the call window (offscreen Qt).
"""

import asyncio
import os

import pytest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
QtWidgets = pytest.importorskip("PySide6.QtWidgets")

from chatcall.config import CallConfig
from chatcall.ui.app import AppConfig, AsyncioThread, CallClientApp, create_qt_app
from chatcall.ui.windows import CallWindow

from conftest import ALICE, BOB, CHAT_ID


@pytest.fixture(scope="module")
def qt_app():
    return create_qt_app()


class TestCallWindow:
    """Tests for button state and the call card."""

    def test_idle_controls(self, qt_app):
        window = CallWindow()

        assert window.call_btn.isEnabled()
        assert not window.accept_btn.isEnabled()
        assert not window.hangup_btn.isEnabled()
        assert not window.mute_btn.isEnabled()

    def test_ringing_controls(self, qt_app):
        window = CallWindow()

        window.set_controls(False, True)

        assert not window.call_btn.isEnabled()
        assert window.accept_btn.isEnabled()
        assert window.decline_btn.isEnabled()

    def test_in_call_controls(self, qt_app):
        window = CallWindow()
        window.set_controls(True, False)
        window.mute_btn.setChecked(True)

        assert window.hangup_btn.isEnabled()
        assert window.mute_btn.isEnabled()

        window.set_controls(False, False)
        assert not window.mute_btn.isChecked()

    def test_card(self, qt_app):
        window = CallWindow()

        window.card.set_peer("bob")
        window.card.set_status("1:05")
        window.card.set_muted(True)

        assert window.card._avatar.text() == "B"
        assert window.card.status_text() == "1:05"
        assert window.card._mic.text() == "Muted"

    def test_buttons_emit_signals(self, qt_app):
        window = CallWindow()
        clicks = []
        window.call_clicked.connect(lambda: clicks.append("call"))

        window.call_btn.click()

        assert clicks == ["call"]


def test_asyncio_thread_runs_coroutines():
    thread = AsyncioThread()
    thread.start()

    async def answer():
        return 42

    try:
        assert thread.submit(answer()).result(timeout=2) == 42
    finally:
        thread.stop()


def test_shutdown_gives_up_on_slow_disconnect(qt_app):
    app = CallClientApp(AppConfig(chat_id=CHAT_ID, local_id=ALICE, remote_id=BOB, call=CallConfig()))
    app.shutdown_timeout = 0.05
    app.asyncio_thread.start()
    disconnects = []

    async def slow_disconnect():
        disconnects.append("started")
        await asyncio.sleep(5)

    app._disconnect = slow_disconnect

    app.shutdown()

    assert disconnects == ["started"]
    assert not app._duration_timer.isActive()
