"""Board change notifications for connected clients.

Route handlers run in worker threads, subscribers live on an event loop, so
``publish`` hands each event to the subscriber's loop with
``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class BoardEventHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, Dict[asyncio.Queue, asyncio.AbstractEventLoop]] = {}

    def subscribe(self, board_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()
        with self._lock:
            self._subscribers.setdefault(board_id, {})[queue] = loop
        return queue

    def unsubscribe(self, board_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            subscribers = self._subscribers.get(board_id)
            if not subscribers:
                return
            subscribers.pop(queue, None)
            if not subscribers:
                del self._subscribers[board_id]

    def subscriber_count(self, board_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(board_id, {}))

    def publish(self, board_id: str, event_type: str, payload: Dict[str, Any]) -> int:
        """Queue an event for every subscriber of ``board_id``; return how many."""
        event = {"type": event_type, "boardId": board_id, "payload": payload}
        with self._lock:
            targets = list(self._subscribers.get(board_id, {}).items())
        delivered = 0
        for queue, loop in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                # subscriber's loop already closed
                self.unsubscribe(board_id, queue)
                continue
            delivered += 1
        logger.debug("published %s on board %s to %d subscribers", event_type, board_id, delivered)
        return delivered


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event)


async def _drain(websocket: WebSocket) -> None:
    while True:
        await websocket.receive_text()


async def stream_board_events(websocket: WebSocket, hub: BoardEventHub, board_id: str) -> None:
    """Accept ``websocket`` and send it board events until the client goes away."""
    queue = hub.subscribe(board_id)
    try:
        await websocket.accept()
        tasks = [
            asyncio.ensure_future(_forward(websocket, queue)),
            asyncio.ensure_future(_drain(websocket)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            try:
                task.result()
            except WebSocketDisconnect:
                logger.debug("subscriber left board %s", board_id)
    finally:
        hub.unsubscribe(board_id, queue)


hub = BoardEventHub()
