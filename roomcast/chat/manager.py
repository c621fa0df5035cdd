import asyncio
from typing import Dict, Iterable, Optional
from fastapi import WebSocket

from .broadcast import Delivery
from ..logger import get_logger

logger = get_logger(__name__)



class ConnectionManager:
    """transport side of the gateway: one outbound queue per live websocket

    ``deliver`` only enqueues, so callers never wait on network I/O. A pump
    task per connection writes frames in the order they were enqueued, which
    keeps every room's commit order intact on each connection.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._pumps: Dict[str, asyncio.Task] = {}



    def attach(self, connection_id: str, websocket: WebSocket):
        queue: asyncio.Queue = asyncio.Queue()
        self.active_connections[connection_id] = websocket
        self._queues[connection_id] = queue
        self._pumps[connection_id] = asyncio.create_task(
            self._pump(connection_id, websocket, queue), name=f"ws-pump-{connection_id}"
        )



    async def detach(self, connection_id: str, drain: bool = True):
        """forget a connection, optionally letting queued frames go out first"""
        queue = self._queues.pop(connection_id, None)
        pump = self._pumps.pop(connection_id, None)
        self.active_connections.pop(connection_id, None)
        if pump is None:
            return
        if drain and queue is not None and not pump.done():
            try:
                await asyncio.wait_for(queue.join(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Dropping undelivered frames for %s", connection_id)
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass



    def deliver(self, connection_id: str, event: str, payload: dict) -> bool:
        """best effort; False when the connection is already gone"""
        queue = self._queues.get(connection_id)
        if queue is None:
            return False
        queue.put_nowait({"type": event, **payload})
        return True



    def publish(self, deliveries: Iterable[Delivery]):
        for delivery in deliveries:
            for connection_id in delivery.targets:
                self.deliver(connection_id, delivery.event, delivery.payload)



    async def _pump(self, connection_id: str, websocket: WebSocket, queue: asyncio.Queue):
        while True:
            frame = await queue.get()
            try:
                await websocket.send_json(frame)
            except Exception as e:
                logger.warning("Failed to send to %s: %s", connection_id, e)
                self._drop(connection_id, queue)
                return
            finally:
                queue.task_done()



    def _drop(self, connection_id: str, queue: asyncio.Queue):
        # detach may already have forgotten the connection and be draining this queue
        if self._queues.get(connection_id) is queue:
            del self._queues[connection_id]
            self._pumps.pop(connection_id, None)
            self.active_connections.pop(connection_id, None)
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()



    def get_connection_count(self) -> int:
        return len(self.active_connections)