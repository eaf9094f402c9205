"""Live server-sent-event connections keyed by user id."""
import json
import queue
import threading
import uuid
from typing import Dict, Optional, Set

from flask import current_app

_CLOSED = object()


def format_sse(event: str, data) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class Connection:
    def __init__(self, user_id: str, max_queue: int) -> None:
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_queue)

    def send(self, event: str, data) -> bool:
        try:
            self._queue.put_nowait((event, data))
            return True
        except queue.Full:
            return False

    def close(self) -> None:
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass

    def next_event(self, timeout: float):
        """Block for the next ``(event, data)``; ``None`` on timeout, ``False`` once closed."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return False
        return item


class ConnectionRegistry:
    """Process-wide fan-out table; one instance per application."""

    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._connections: Dict[str, Set[Connection]] = {}

    def add(self, user_id: str) -> Connection:
        connection = Connection(user_id, self.max_queue)
        with self._lock:
            self._connections.setdefault(user_id, set()).add(connection)
        return connection

    def remove(self, connection: Connection) -> None:
        with self._lock:
            bucket = self._connections.get(connection.user_id)
            if not bucket:
                return
            bucket.discard(connection)
            if not bucket:
                del self._connections[connection.user_id]

    def publish(self, user_id: str, event: str, data) -> int:
        """Queue an event for every live connection of ``user_id``; returns how many accepted it."""
        with self._lock:
            targets = list(self._connections.get(user_id, ()))
        return sum(1 for connection in targets if connection.send(event, data))

    def connection_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._connections.get(user_id, ()))
            return sum(len(bucket) for bucket in self._connections.values())

    def close(self) -> None:
        with self._lock:
            targets = [c for bucket in self._connections.values() for c in bucket]
            self._connections.clear()
        for connection in targets:
            connection.close()


def get_registry() -> ConnectionRegistry:
    return current_app.extensions["connection_registry"]
