from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Dict

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)

_FLUSH_TIMEOUT_SECONDS = 2.0


class ChatSocket:
    """Single writer for one websocket.

    Domain callbacks are synchronous, so they enqueue events here and a
    writer task delivers them in order.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._outbox: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()
        self._writer: asyncio.Task | None = None

    def push(self, event: Dict[str, Any]) -> None:
        self._outbox.put_nowait(event)

    async def __aenter__(self) -> "ChatSocket":
        self._writer = asyncio.create_task(self._drain())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and self._writer is not None and not self._writer.done():
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._outbox.join(), timeout=_FLUSH_TIMEOUT_SECONDS)
        if self._writer is not None:
            self._writer.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer

    async def _drain(self) -> None:
        while True:
            event = await self._outbox.get()
            try:
                await self.websocket.send_json(event)
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("chat_socket_send_dropped", extra={"extra": {"event": event.get("type")}})
                return
            finally:
                self._outbox.task_done()
