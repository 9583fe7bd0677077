"""
Per-session progress delivery.

Listeners are plain callables invoked synchronously in emission order.
Channels are bounded queues, one per subscriber; when a consumer falls behind
the oldest pending event is dropped so the producer (the crawl) never blocks.
Terminal events are always delivered.
"""

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional

from crawler.core import PROGRESS_CHANNEL_SIZE
from progress.models import ProgressEvent

logger = logging.getLogger("crawler.progress")

Listener = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Bounded drop-oldest queue of events for one session."""

    def __init__(self, session_id: str, maxsize: int = PROGRESS_CHANNEL_SIZE):
        self.session_id = session_id
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=max(maxsize, 1))
        self.dropped = 0
        self.closed = False

    def put(self, event: ProgressEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None on timeout."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ProgressEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class ProgressBroker:
    """Fan-out of ProgressEvents to listeners and per-session channels."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._channels: Dict[str, List[ProgressChannel]] = {}

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def open_channel(self, session_id: str, maxsize: int = PROGRESS_CHANNEL_SIZE) -> ProgressChannel:
        channel = ProgressChannel(session_id, maxsize)
        with self._lock:
            self._channels.setdefault(session_id, []).append(channel)
        return channel

    def close_channel(self, channel: ProgressChannel) -> None:
        channel.closed = True
        with self._lock:
            channels = self._channels.get(channel.session_id, [])
            if channel in channels:
                channels.remove(channel)
            if not channels:
                self._channels.pop(channel.session_id, None)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
            channels = list(self._channels.get(event.session_id, []))

        for channel in channels:
            channel.put(event)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"[PROGRESS] Listener failed for session {event.session_id}: {e}")
