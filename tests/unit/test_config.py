"""
Unit tests for configuration, error texts, membership and logging setup.
"""

import logging

import pytest

from chatcall.call.membership import StaticMembership
from chatcall.config import AUDIO, DEFAULT_ICE_SERVERS, VIDEO, CallConfig
from chatcall.errors import (
    ConnectivityLost,
    ErrorKind,
    InternalError,
    MediaAccessDenied,
    SignalingSendFailed,
    user_facing_status,
)
from chatcall.logging_config import setup_logging
from chatcall.main import build_parser


class TestCallConfig:
    """Tests for CallConfig defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        for name in ("CHATCALL_RELAY_URL", "CHATCALL_ICE_SERVERS", "CHATCALL_CALL_TYPE", "CHATCALL_OFFER_SETTLE_SEC"):
            monkeypatch.delenv(name, raising=False)

        cfg = CallConfig.from_env()

        assert cfg.ice_servers == list(DEFAULT_ICE_SERVERS)
        assert cfg.call_type == AUDIO
        assert cfg.offer_settle_sec == 1.0
        assert cfg.relay_url == "ws://127.0.0.1:8766/ws"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CHATCALL_RELAY_URL", "ws://relay.example.org/ws")
        monkeypatch.setenv("CHATCALL_ICE_SERVERS", "stun:a.example.org:3478, stun:b.example.org:3478")
        monkeypatch.setenv("CHATCALL_CALL_TYPE", "Video")
        monkeypatch.setenv("CHATCALL_OFFER_RETRY_SEC", "2.5")
        monkeypatch.setenv("CHATCALL_ACK_TIMEOUT_SEC", "not-a-number")

        cfg = CallConfig.from_env()

        assert cfg.relay_url == "ws://relay.example.org/ws"
        assert cfg.ice_servers == ["stun:a.example.org:3478", "stun:b.example.org:3478"]
        assert cfg.call_type == VIDEO
        assert cfg.offer_retry_sec == 2.5
        assert cfg.ack_timeout_sec == 5.0


class TestErrors:
    """Tests for the error taxonomy and user-facing text."""

    def test_kinds(self):
        assert MediaAccessDenied("x").kind is ErrorKind.MEDIA_ACCESS_DENIED
        assert SignalingSendFailed("x").kind is ErrorKind.SIGNALING_SEND_FAILED
        assert ConnectivityLost("x").kind is ErrorKind.CONNECTIVITY_LOST
        assert InternalError("x").kind is ErrorKind.INTERNAL

    def test_fatal(self):
        assert MediaAccessDenied().fatal
        assert ConnectivityLost().fatal
        assert not SignalingSendFailed().fatal

    def test_user_text_hides_detail(self):
        error = SignalingSendFailed("connect failed: [Errno 111] Connection refused")

        assert "Errno" not in error.user_message
        assert "Errno" in str(error)
        assert user_facing_status(error) == "Could not reach the other side. Call again to retry."

    def test_no_error_means_ended(self):
        assert user_facing_status(None) == "Call ended"


class TestMembership:
    """Tests for StaticMembership lookups."""

    @pytest.mark.asyncio
    async def test_remote_participant(self):
        membership = StaticMembership({"c1": ["alice", "bob"]})

        assert await membership.remote_participant("c1", "alice") == "bob"
        assert await membership.remote_participant("c1", "bob") == "alice"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "chats, chat_id, local_id",
        [
            ({"c1": ["alice", "bob"]}, "c2", "alice"),
            ({"c1": ["alice", "bob"]}, "c1", "carol"),
            ({"c1": ["alice", "bob", "carol"]}, "c1", "alice"),
        ],
    )
    async def test_lookup_errors(self, chats, chat_id, local_id):
        with pytest.raises(LookupError):
            await StaticMembership(chats).remote_participant(chat_id, local_id)


class TestLogging:
    """Tests for setup_logging."""

    def test_third_party_loggers_quieted(self):
        setup_logging("info")

        assert logging.getLogger("aioice").level == logging.WARNING
        assert logging.getLogger("websockets").level == logging.WARNING

    def test_debug_opens_third_party_loggers(self):
        setup_logging("debug")

        assert logging.getLogger("aiortc").level == logging.DEBUG
        setup_logging("info")


class TestCli:
    """Tests for command line parsing."""

    def test_relay_flags(self):
        args = build_parser().parse_args(["--serve-relay", "--port", "9000"])

        assert args.serve_relay is True
        assert args.port == 9000

    def test_call_flags(self):
        args = build_parser().parse_args(["--chat", "c1", "--me", "alice", "--peer", "bob", "--call-type", "video"])

        assert (args.chat, args.me, args.peer, args.call_type) == ("c1", "alice", "bob", "video")
