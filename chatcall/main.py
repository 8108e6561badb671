from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import replace

from .config import AUDIO, VIDEO, CallConfig
from .logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="chatcall: 1:1 calls for chat participants")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use CHATCALL_LOG_LEVEL.",
	)
	parser.add_argument(
		"--serve-relay",
		action="store_true",
		help="Run the signaling relay instead of the call window",
	)
	parser.add_argument("--host", default=os.environ.get("CHATCALL_RELAY_HOST", "127.0.0.1"), help="Relay bind host")
	parser.add_argument("--port", type=int, default=int(os.environ.get("CHATCALL_RELAY_PORT", "8766")), help="Relay bind port")
	parser.add_argument("--relay-url", default=None, help="WebSocket relay URL (CHATCALL_RELAY_URL)")
	parser.add_argument("--chat", default=os.environ.get("CHATCALL_CHAT", ""), help="Chat id the call belongs to")
	parser.add_argument("--me", default=os.environ.get("CHATCALL_ME", os.environ.get("USER", "")), help="Local participant id")
	parser.add_argument("--peer", default=os.environ.get("CHATCALL_PEER", ""), help="Remote participant id")
	parser.add_argument("--call-type", choices=(AUDIO, VIDEO), default=None, help="Audio-only or audio+video")
	return parser


def main(argv: list[str] | None = None) -> int:
	args = build_parser().parse_args(argv)

	setup_logging(args.log_level)

	if args.serve_relay:
		from .net.relay_server import RelayServer

		try:
			asyncio.run(RelayServer(args.host, args.port).serve_forever())
		except KeyboardInterrupt:
			pass
		return 0

	if not (args.chat and args.me and args.peer):
		print("--chat, --me and --peer are required to start the call window")
		return 2

	call_cfg = CallConfig.from_env()
	if args.relay_url:
		call_cfg = replace(call_cfg, relay_url=args.relay_url)
	if args.call_type:
		call_cfg = replace(call_cfg, call_type=args.call_type)

	try:
		from .ui.app import AppConfig, CallClientApp, create_qt_app
	except ImportError as e:
		print(f"Failed to import UI dependencies: {e}")
		print("Install with: pip install chatcall")
		return 2

	qt_app = create_qt_app()
	controller = CallClientApp(AppConfig(chat_id=args.chat, local_id=args.me, remote_id=args.peer, call=call_cfg))
	controller.start()
	qt_app.aboutToQuit.connect(controller.shutdown)

	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
