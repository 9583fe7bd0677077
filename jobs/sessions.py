import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from crawler.core import SESSION_TTL_SECONDS


class SessionRegistry:
    """
    In-memory audit sessions keyed by session_id.
    Every update merges fields into the current record and refreshes its timestamp.
    Readers get copies; the registry is the only writer.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._touched: Dict[str, float] = {}

    def _stamp(self, session_id: str, record: Dict[str, Any]) -> None:
        record["timestamp"] = datetime.now(timezone.utc).isoformat()
        self._sessions[session_id] = record
        self._touched[session_id] = time.monotonic()

    def create(self, session_id: str, **fields) -> Dict[str, Any]:
        with self._lock:
            record = dict(fields)
            self._stamp(session_id, record)
            return dict(record)

    def ensure(self, session_id: str, **fields) -> Dict[str, Any]:
        """Register the session if absent; existing sessions are left untouched."""
        with self._lock:
            if session_id not in self._sessions:
                self._stamp(session_id, dict(fields))
            return dict(self._sessions[session_id])

    def update(self, session_id: str, **fields) -> Dict[str, Any]:
        with self._lock:
            record = dict(self._sessions.get(session_id, {}))
            record.update(fields)
            self._stamp(session_id, record)
            return dict(record)

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._sessions.get(session_id)
            return dict(record) if record is not None else None

    def remove(self, session_id: str) -> bool:
        with self._lock:
            self._touched.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def expire(self, ttl: float = SESSION_TTL_SECONDS) -> int:
        """Drop sessions not updated within `ttl` seconds. Returns the count removed."""
        cutoff = time.monotonic() - ttl
        with self._lock:
            stale = [sid for sid, touched in self._touched.items() if touched < cutoff]
            for sid in stale:
                self._sessions.pop(sid, None)
                self._touched.pop(sid, None)
        return len(stale)

    def __contains__(self, session_id) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
