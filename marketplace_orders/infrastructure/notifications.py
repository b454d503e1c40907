"""Best-effort push notifications.

The lifecycle engine publishes ``OrderEvent``s; a background subscriber
checks the user's notification settings, formats the messages and hands them
to a notifier. Nothing here ever raises into the publishing request.
"""

import asyncio
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from cachetools import TTLCache
from fastapi import WebSocket
from sqlalchemy import select

from marketplace_orders.domain.models import NotificationSettings
from shared.core import get_logger

logger = get_logger(__name__)

DELIVERY_STATUS_MESSAGES = {
    "shipped": "Your order has been shipped!",
    "out_for_delivery": "Your order is out for delivery.",
    "delivered": "Your order has been delivered.",
}
DEFAULT_STATUS_MESSAGE = "Your order status has been updated."


@dataclass(frozen=True)
class OrderEvent:
    user_id: int
    title: str
    message: str
    delivery_status: Optional[str] = None
    order_id: Optional[int] = None
    location: Optional[dict] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationSettingsStore:
    """Cached lookup of per-user notification settings."""

    def __init__(self, session_factory, ttl: int = 60, maxsize: int = 1024):
        self.session_factory = session_factory
        self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def push_enabled(self, user_id: int) -> bool:
        with self._lock:
            if user_id in self._cache:
                return self._cache[user_id]
        db = self.session_factory()
        try:
            settings = db.execute(
                select(NotificationSettings).where(NotificationSettings.user_id == user_id)
            ).scalars().first()
            enabled = bool(settings and settings.push_notifications and settings.order_notifications)
        finally:
            db.close()
        with self._lock:
            self._cache[user_id] = enabled
        return enabled

    def invalidate(self, user_id: int):
        with self._lock:
            self._cache.pop(user_id, None)


class WebSocketNotifier:
    """Pushes messages to every websocket a user has open."""

    def __init__(self):
        self._connections: Dict[int, Set[WebSocket]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, user_id: int, websocket: WebSocket):
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)

    def disconnect(self, user_id: int, websocket: WebSocket):
        with self._lock:
            sockets = self._connections.get(user_id)
            if sockets is None:
                return
            sockets.discard(websocket)
            if not sockets:
                del self._connections[user_id]

    def connection_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._connections.get(user_id, ()))

    def push(self, user_id: int, payload: dict):
        self._send(user_id, {"type": "notification", **payload})

    def push_delivery_update(self, user_id: int, order_id: int, status: str, location: Optional[dict]):
        self._send(user_id, {
            "type": "delivery_update",
            "orderId": order_id,
            "status": status,
            "location": location,
        })

    def _send(self, user_id: int, payload: dict):
        with self._lock:
            sockets = list(self._connections.get(user_id, ()))
        if not sockets or self._loop is None:
            return
        for websocket in sockets:
            future = asyncio.run_coroutine_threadsafe(websocket.send_json(payload), self._loop)
            future.add_done_callback(lambda f, ws=websocket: self._on_sent(user_id, ws, f))

    def _on_sent(self, user_id: int, websocket: WebSocket, future):
        error = future.exception()
        if error is not None:
            logger.warning(f"Dropping websocket for user {user_id}: {error}")
            self.disconnect(user_id, websocket)


class NotificationDispatcher:
    """Queue of order events drained by a single daemon thread."""

    def __init__(self, notifier, settings_store: NotificationSettingsStore, maxsize: int = 1000):
        self.notifier = notifier
        self.settings_store = settings_store
        self.queue: "queue.Queue[Optional[OrderEvent]]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="notification-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        if self._thread is None:
            return
        self.queue.put(None)
        self._thread.join(timeout)
        self._thread = None

    def publish(self, event: OrderEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            logger.warning(
                "Notification queue full, dropping event",
                extra={'extra_fields': {'user_id': event.user_id, 'order_id': event.order_id, 'title': event.title}}
            )
            return False
        return True

    def drain(self):
        """Block until every published event has been handled."""
        self.queue.join()

    def _run(self):
        while True:
            event = self.queue.get()
            try:
                if event is None:
                    return
                self.deliver(event)
            except Exception:
                logger.error(
                    "Notification delivery failed",
                    exc_info=True,
                    extra={'extra_fields': {'user_id': event.user_id, 'order_id': event.order_id}}
                )
            finally:
                self.queue.task_done()

    def deliver(self, event: OrderEvent):
        if not self.settings_store.push_enabled(event.user_id):
            return
        self.notifier.push(event.user_id, {"title": event.title, "message": event.message})

        if event.delivery_status and event.order_id is not None:
            self.notifier.push(event.user_id, {
                "title": f"Order Update: {event.delivery_status}",
                "message": DELIVERY_STATUS_MESSAGES.get(event.delivery_status, DEFAULT_STATUS_MESSAGE),
            })
            self.notifier.push_delivery_update(event.user_id, event.order_id, event.delivery_status, event.location)
