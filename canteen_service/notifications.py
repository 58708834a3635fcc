"""Real-time fan-out of state changes to connected clients.

The core only sees ``Notifier``. Publishing is fire-and-forget: a failing
transport is logged and never propagates into the state change that
triggered it.
"""

import asyncio
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Room names. ``None`` means every connected client.
BROADCAST = None
MANAGEMENT_ROOM = "management"

# Event names understood by the web and scanner clients.
FOOD_COUNT_UPDATED = "food-count-updated"
NEW_ORDER = "new-order"
ORDER_FULFILLED = "order-fulfilled"
FOOD_ITEM_UPDATED = "food-item-updated"


class Notifier:
    """Maps the canteen events onto a single ``emit(room, event, data)`` primitive."""

    def publish_stock_delta(self, item_id: str, remaining_count: int) -> None:
        self.emit(BROADCAST, FOOD_COUNT_UPDATED, {"menu_item_id": item_id, "remaining_count": remaining_count})

    def publish_new_order(self, order: dict) -> None:
        self.emit(MANAGEMENT_ROOM, NEW_ORDER, order)

    def publish_order_fulfilled(self, order_id: str) -> None:
        self.emit(BROADCAST, ORDER_FULFILLED, {"order_id": order_id})

    def publish_item_updated(self, item: dict) -> None:
        self.emit(BROADCAST, FOOD_ITEM_UPDATED, item)

    def emit(self, room, event: str, data) -> None:
        try:
            self._deliver(room, event, data)
        except Exception:
            logger.exception("Failed to publish %s to %s", event, room or "all clients")

    def _deliver(self, room, event: str, data) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class NullNotifier(Notifier):
    def _deliver(self, room, event, data):
        pass


class WebSocketHub(Notifier):
    """Delivers events to the WebSocket clients connected to this process.

    Publishing is safe from any thread. Messages go through one queue drained
    by a single task, so clients see them in publish order.
    """

    def __init__(self):
        self._rooms: dict[WebSocket, set] = {}
        self._loop = None
        self._queue = None
        self._dispatcher = None

    @property
    def connection_count(self) -> int:
        return len(self._rooms)

    async def start(self):
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch())

    async def stop(self):
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
        self._dispatcher = None
        self._loop = None
        self._queue = None

    async def connect(self, websocket: WebSocket):
        # Registered before the handshake completes so no event slips past a new client.
        self._rooms[websocket] = set()
        await websocket.accept()
        logger.info("Client connected (%d online)", len(self._rooms))

    def disconnect(self, websocket: WebSocket):
        if self._rooms.pop(websocket, None) is not None:
            logger.info("Client disconnected (%d online)", len(self._rooms))

    def join(self, websocket: WebSocket, room: str):
        self._rooms.setdefault(websocket, set()).add(room)
        logger.info("Client joined room %s", room)

    def leave(self, websocket: WebSocket, room: str):
        self._rooms.get(websocket, set()).discard(room)
        logger.info("Client left room %s", room)

    def _deliver(self, room, event, data):
        if self._loop is None or not self._rooms:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, (room, event, data))

    async def _dispatch(self):
        while True:
            room, event, data = await self._queue.get()
            message = {"event": event, "data": data}
            for websocket, rooms in list(self._rooms.items()):
                if room is not BROADCAST and room not in rooms:
                    continue
                try:
                    await websocket.send_json(message)
                except Exception:
                    logger.warning("Dropping client after failed send of %s", event)
                    self.disconnect(websocket)
