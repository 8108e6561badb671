from __future__ import annotations

import logging
import os
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging for the call client and relay.

    The call window has its own log panel; this config targets console logs
    (phase transitions, signaling traffic, relay fan-out).
    """

    effective_level = (level or os.environ.get("CHATCALL_LOG_LEVEL") or "INFO").upper()

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        root.setLevel(effective_level)

    # ICE gathering and websocket frames are very chatty below WARNING.
    third_party_level = logging.DEBUG if effective_level == "DEBUG" else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)


_NOISY_LOGGERS = ("aioice", "aiortc", "websockets")
