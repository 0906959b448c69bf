from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class Outbox:
    """Serialises JSON events to one websocket from synchronous callbacks.

    ``put`` never blocks, so engine callbacks can emit events mid-stream; a
    single sender task writes them in order.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.closed = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump(), name="outbox_sender")

    def put(self, event: dict) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def flush(self) -> None:
        if self._task is not None and not self._task.done():
            await self._queue.join()

    async def close(self) -> None:
        self.closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _pump(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.websocket.send_json(event)
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.info("outbox.send_failed type=%s err=%s", event.get("type"), exc)
                self.closed = True
                self._queue.task_done()
                while not self._queue.empty():
                    self._queue.get_nowait()
                    self._queue.task_done()
                return
            self._queue.task_done()
