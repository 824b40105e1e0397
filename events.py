"""Notification fan-out.

`EventBus` is a small in-process publish/subscribe registry; the lifecycle
layer publishes to it and knows nothing about sockets. `NotificationHub`
subscribes to the bus and forwards each event to the WebSocket sessions that
joined one of the event's rooms. Delivery is best-effort and at-most-once:
nothing is queued for sessions that are not connected.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

REQUEST_CREATED = "request:created"
REQUEST_UPDATED = "request:updated"
REQUEST_CANCELLED = "request:cancelled"
EXPENSE_CREATED = "expense:created"
COLLECTOR_LOCATION = "collector:location"

# internal topics; never forwarded to sockets
REQUEST_COMPLETED = "request:completed"
REQUEST_RATED = "request:rated"

TOPICS = (REQUEST_CREATED, REQUEST_UPDATED, REQUEST_CANCELLED, EXPENSE_CREATED, COLLECTOR_LOCATION)


@dataclass
class Event:
    topic: str
    data: Dict[str, Any]
    rooms: List[str] = field(default_factory=list)

    def message(self) -> Dict[str, Any]:
        return {"event": self.topic, "data": jsonable_encoder(self.data)}


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(topic, [])
                if handler in handlers:
                    handlers.remove(handler)
        return unsubscribe

    def publish(self, topic: str, payload: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                # a failing subscriber must not fail the write that published
                logger.exception("Subscriber for %s failed", topic)

    def emit(self, topic: str, data: Dict[str, Any], rooms: Iterable[Optional[str]]) -> None:
        self.publish(topic, Event(topic=topic, data=data, rooms=[r for r in rooms if r]))


class Session:
    def __init__(self, websocket: WebSocket, rooms: Iterable[str], loop: asyncio.AbstractEventLoop):
        self.websocket = websocket
        self.rooms: Set[str] = set(rooms)
        self.loop = loop
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def offer(self, message: Dict[str, Any]) -> None:
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, message)
        except RuntimeError:
            # loop already closed; the client reconciles on reconnect
            logger.debug("Dropped event for closed session")


class NotificationHub:
    """Room-scoped fan-out of bus events to WebSocket sessions.

    Lifecycle: `start()` subscribes to the bus (application startup),
    `stop()` unsubscribes and closes every open session (shutdown).
    """

    def __init__(self, bus: EventBus):
        self.bus = bus
        self._sessions: Set[Session] = set()
        self._lock = threading.Lock()
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def start(self) -> None:
        if self._unsubscribers:
            return
        self._unsubscribers = [self.bus.subscribe(topic, self.dispatch) for topic in TOPICS]
        logger.info("Notification hub started")

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        with self._lock:
            sessions = list(self._sessions)
            self._sessions.clear()
        for session in sessions:
            try:
                await session.websocket.close(code=1001)
            except RuntimeError:
                pass
        logger.info("Notification hub stopped")

    def dispatch(self, event: Event) -> None:
        if not event.rooms:
            return
        targets = set(event.rooms)
        message = event.message()
        with self._lock:
            sessions = [s for s in self._sessions if s.rooms & targets]
        for session in sessions:
            session.offer(message)

    async def serve(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        """Accept an authenticated socket, join its rooms and pump events until it disconnects."""
        session = Session(websocket, rooms, asyncio.get_running_loop())
        # joined before the handshake completes; anything published meanwhile waits in the queue
        with self._lock:
            self._sessions.add(session)
        sender = None
        try:
            await websocket.accept()
            logger.info("Socket connected, rooms=%s", sorted(session.rooms))
            sender = asyncio.create_task(self._pump(session))
            while True:
                # client messages are ignored; receiving detects disconnects
                await websocket.receive_text()
        except (WebSocketDisconnect, RuntimeError):
            # RuntimeError: the hub closed the socket during shutdown
            pass
        finally:
            if sender is not None:
                sender.cancel()
            with self._lock:
                self._sessions.discard(session)
            logger.info("Socket disconnected, rooms=%s", sorted(session.rooms))

    async def _pump(self, session: Session) -> None:
        while True:
            message = await session.queue.get()
            try:
                await session.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError):
                return
