"""
WebSocket bridge from the bed change notifier to bed-board screens.
"""

import asyncio
import logging
from typing import Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.api.deps import get_notifier
from app.services.bed_events import (BedChangeEvent, BedChangeNotifier,
                                     Subscription)

logger = logging.getLogger(__name__)

router = APIRouter()


class BedBoardConnections:
    """
    Tracks connected bed boards. Each connection owns one notifier
    subscription feeding an asyncio queue on the server loop, so events
    published from request threads are never lost while it is connected.
    """

    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}

    @property
    def count(self) -> int:
        return len(self._subscriptions)

    def register(self, websocket: WebSocket, notifier: BedChangeNotifier,
                 queue: asyncio.Queue) -> Subscription:
        loop = asyncio.get_running_loop()

        def _enqueue(event: BedChangeEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait,
                                      event.model_dump(mode="json"))

        sub = notifier.subscribe(_enqueue, name="ws-bed-board")
        self._subscriptions[id(websocket)] = sub
        logger.info("bed board connected. Total connections: %d", self.count,
                    extra={"event": "ws_connect"})
        return sub

    def release(self, websocket: WebSocket, notifier: BedChangeNotifier) -> None:
        sub = self._subscriptions.pop(id(websocket), None)
        if sub is not None:
            notifier.unsubscribe(sub)
        logger.info("bed board disconnected. Total connections: %d", self.count,
                    extra={"event": "ws_disconnect"})


connections = BedBoardConnections()


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json({"type": "bed_change", "event": event})


async def _drain(websocket: WebSocket) -> None:
    # client messages are only keep-alives
    while True:
        await websocket.receive_text()


@router.websocket("/ws/beds")
async def bed_changes(websocket: WebSocket,
                      notifier: BedChangeNotifier = Depends(get_notifier)):
    """
    Pushes one `bed_change` message per bed mutation. No backlog: a board
    that reconnects must re-fetch GET /ipd/beds.

    The connection lives while both the sender and the receiver do; when
    either ends the subscription is released and a failure on either side closes
    the socket with 1011 so the board reconnects and reloads.
    """
    queue: asyncio.Queue = asyncio.Queue()
    # subscribe before accepting so nothing committed after the handshake is missed
    connections.register(websocket, notifier, queue)
    tasks = []
    failed = False
    try:
        await websocket.accept()
        tasks = [
            asyncio.create_task(_pump(websocket, queue)),
            asyncio.create_task(_drain(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is None or isinstance(exc, WebSocketDisconnect):
                continue
            failed = True
            logger.error("bed board connection failed: %s",
                         exc,
                         exc_info=exc,
                         extra={"event": "ws_failed"})
    finally:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        connections.release(websocket, notifier)

    if failed and websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close(code=1011)
