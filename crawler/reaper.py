"""
Post-audit resource cleanup.

HTTP sessions and timers handed out to a crawl engine are tracked here so the
executor can close whatever the engine leaves open. Open socket counts for the
process are sampled with psutil before and after, for the log.
"""

import logging
import os
import threading
import weakref
from typing import Dict, Optional

import psutil
import requests

from crawler.core import USER_AGENT

logger = logging.getLogger("crawler.executor")


class ResourceReaper:

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: "weakref.WeakSet[requests.Session]" = weakref.WeakSet()
        self._timers: "weakref.WeakSet[threading.Timer]" = weakref.WeakSet()
        self._process = psutil.Process(os.getpid())

    def session(self) -> requests.Session:
        """New tracked HTTP session with the crawler user agent."""
        s = requests.Session()
        s.headers.update({"User-Agent": USER_AGENT})
        self.register_session(s)
        return s

    def register_session(self, session: requests.Session) -> None:
        with self._lock:
            self._sessions.add(session)

    def register_timer(self, timer: threading.Timer) -> None:
        with self._lock:
            self._timers.add(timer)

    def open_connections(self) -> Optional[int]:
        """Number of inet sockets held by this process, None if not permitted."""
        try:
            # psutil >= 6 renamed connections() to net_connections()
            lister = getattr(self._process, "net_connections", None) or self._process.connections
            return len(lister(kind="inet"))
        except (psutil.AccessDenied, psutil.NoSuchProcess) as e:
            logger.debug(f"[CLEANUP] Cannot inspect sockets: {e}")
            return None

    def reap(self) -> Dict[str, Optional[int]]:
        """
        Close tracked sessions and cancel tracked timers that are still alive.
        Individual failures are logged and do not stop the sweep.
        """
        before = self.open_connections()

        with self._lock:
            sessions = list(self._sessions)
            timers = list(self._timers)
            self._sessions = weakref.WeakSet()
            self._timers = weakref.WeakSet()

        closed = 0
        for s in sessions:
            try:
                s.close()
                closed += 1
            except Exception as e:
                logger.warning(f"[CLEANUP] Failed to close HTTP session: {e}")

        cancelled = 0
        for t in timers:
            if t.is_alive():
                t.cancel()
                cancelled += 1

        after = self.open_connections()
        logger.info(
            f"[CLEANUP] Closed {closed} sessions, cancelled {cancelled} timers, "
            f"sockets {before if before is not None else '?'} -> {after if after is not None else '?'}"
        )
        return {
            "sessions_closed": closed,
            "timers_cancelled": cancelled,
            "connections_before": before,
            "connections_after": after,
        }
