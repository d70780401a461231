"""
ws_client.py — Voice Conversation Engine · Live Channel Test Client
===================================================================
Sends one recorded utterance to the live gateway and saves the spoken
reply, the same way the browser client does after "Stop Recording".

Usage
-----
    python apps/ws_client.py question.webm --out reply.wav
    python apps/ws_client.py question.webm --url ws://localhost:8080
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

log = logging.getLogger("voice_engine.client")

WS_URL = os.getenv("VOICE_WS_URL", "ws://localhost:8080")
WS_RECONNECT_ATTEMPTS = 5
WS_RECONNECT_DELAY = 1.0   # seconds
REPLY_TIMEOUT = 60.0       # seconds, covers transcode + STT + LLM + TTS


class ReplyError(RuntimeError):
    """The server answered the utterance with an error event."""

    def __init__(self, code: Optional[str], details: Optional[str]) -> None:
        super().__init__(f"{code or 'error'}: {details or 'no details'}")
        self.code = code
        self.details = details


async def exchange(ws: ClientConnection, audio: bytes, timeout: float = REPLY_TIMEOUT) -> bytes:
    """Wait for the connection ack, send ``audio``, return the reply audio."""
    sent = False
    while True:
        message = await asyncio.wait_for(ws.recv(), timeout=timeout)
        if isinstance(message, bytes):
            if not sent:
                log.warning("event=unexpected_audio_before_send bytes=%d", len(message))
                continue
            return message

        try:
            event: Any = json.loads(message)
        except ValueError:
            log.warning("event=unparseable_text msg=%.80s", message)
            continue
        if not isinstance(event, dict):
            continue

        kind = event.get("type")
        if kind == "connection":
            log.info("event=connected status=%s", event.get("status"))
            if not sent:
                await ws.send(audio)
                sent = True
                log.info("event=utterance_sent bytes=%d", len(audio))
        elif kind == "error":
            raise ReplyError(event.get("code"), event.get("details") or event.get("error"))


async def converse(
    url: str,
    audio: bytes,
    attempts: int = WS_RECONNECT_ATTEMPTS,
    delay: float = WS_RECONNECT_DELAY,
    connector: Callable[..., Any] = connect,
) -> bytes:
    """Run one exchange, reconnecting on connection loss."""
    attempt = 0
    while True:
        try:
            async with connector(url, max_size=None) as ws:
                return await exchange(ws, audio)
        except (ConnectionClosed, InvalidHandshake, OSError) as e:
            attempt += 1
            if attempt > attempts:
                log.error("event=ws_reconnect_failed attempts=%d", attempts)
                raise
            log.warning("event=ws_disconnected error=%s attempt=%d/%d delay=%.1fs",
                        e, attempt, attempts, delay)
            await asyncio.sleep(delay)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Send one utterance to the live voice gateway.")
    parser.add_argument("audio", type=Path, help="recorded utterance (any ffmpeg-readable format)")
    parser.add_argument("--url", default=WS_URL)
    parser.add_argument("--out", type=Path, default=Path("reply.wav"))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        reply = asyncio.run(converse(args.url, args.audio.read_bytes()))
    except ReplyError as exc:
        log.error("event=reply_error code=%s details=%s", exc.code, exc.details)
        return 1
    except (ConnectionClosed, InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
        log.error("event=client_failed error=%s", exc)
        return 2

    args.out.write_bytes(reply)
    log.info("event=reply_saved path=%s bytes=%d", args.out, len(reply))
    return 0


if __name__ == "__main__":
    sys.exit(main())
