import asyncio
import json
import time
from collections import deque
from typing import List, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .broadcast import Delivery, rejection
from .engine import ChatEngine
from .presence import Connection
from .schemas import authenticate_adapter, inbound_adapter
from ..auth.utils import username_from_token
from ..config import settings
from ..errors import ChatError, InvalidEvent, RateLimited, UnauthorizedUser
from ..logger import get_logger

logger = get_logger(__name__)



class RateLimiter:
    """sliding window limit on inbound events for one connection"""

    def __init__(self, max_events: int = settings.RATE_LIMIT_EVENTS,
                 window_seconds: float = settings.RATE_LIMIT_WINDOW_SECONDS):
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._hits = deque()

    def hit(self, now: Optional[float] = None):
        if self.max_events <= 0:
            return
        now = time.monotonic() if now is None else now
        while self._hits and now - self._hits[0] >= self.window_seconds:
            self._hits.popleft()
        if len(self._hits) >= self.max_events:
            raise RateLimited("Slow down! Too many events")
        self._hits.append(now)



async def authenticate(websocket: WebSocket, token: Optional[str]) -> str:
    """resolve the user id from the query token or from a first authenticate frame"""
    if not token:
        frame = await websocket.receive_json()
        try:
            token = authenticate_adapter.validate_python(frame).token
        except ValidationError:
            raise UnauthorizedUser("First frame must be an authenticate event")

    username = username_from_token(token)
    if not username:
        raise UnauthorizedUser("Invalid or expired token")
    return username



def parse_frame(data: str):
    try:
        raw = json.loads(data)
    except json.JSONDecodeError:
        raise InvalidEvent("Please send valid JSON data")
    try:
        return inbound_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidEvent(f"Invalid event: {location} {first.get('msg', '')}".strip())



async def handle_frame(engine: ChatEngine, connection: Connection, data: str,
                       limiter: RateLimiter) -> List[Delivery]:
    """turn one raw frame into deliveries; bad frames never reach the router"""
    try:
        limiter.hit()
        event = parse_frame(data)
    except ChatError as exc:
        logger.debug("Rejected frame from %s: %s", connection.user_id, exc.message)
        return [rejection(connection.connection_id, exc)]
    return await engine.router.dispatch(connection, event)



async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """handle one websocket session from handshake to disconnect"""
    engine: ChatEngine = websocket.app.state.engine
    await websocket.accept()

    try:
        user_id = await asyncio.wait_for(
            authenticate(websocket, token), timeout=settings.AUTH_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        await websocket.close(code=4001, reason="Authentication timed out")
        return
    except UnauthorizedUser as exc:
        await websocket.close(code=4001, reason=exc.message)
        return
    except (WebSocketDisconnect, json.JSONDecodeError):
        return

    connection = Connection(user_id=user_id)
    engine.manager.attach(connection.connection_id, websocket)
    try:
        engine.publish(await engine.router.connect(connection))
    except UnauthorizedUser as exc:
        await engine.manager.detach(connection.connection_id, drain=False)
        await websocket.close(code=4002, reason=exc.message)
        return

    limiter = RateLimiter()
    try:
        while True:
            data = await websocket.receive_text()
            engine.publish(await handle_frame(engine, connection, data, limiter))
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Unexpected error on connection %s", connection.connection_id)
    finally:
        engine.publish(await engine.router.disconnect(connection.connection_id))
        await engine.manager.detach(connection.connection_id)
