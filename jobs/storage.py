import itertools
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from crawler.core import UNREGISTERED_MAX_EXTERNAL_LINKS


class AuditRecordStore(ABC):
    """
    Abstract interface for durable audit records.
    Records are plain dicts with at least: id, url, status, created_at, report_data.
    """

    @abstractmethod
    def create(self, url: str, report_type: Optional[str], config: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
        """Insert a new 'running' audit record and return it."""
        pass

    @abstractmethod
    def update_status(self, audit_id: Any, status: str, fields: Optional[Dict[str, Any]] = None) -> None:
        """Set status plus any additional columns (report_data, pages_scanned, error_message, ...)."""
        pass

    @abstractmethod
    def find_most_recent_by_domain(self, url: str) -> Optional[Dict[str, Any]]:
        """Latest completed record with report data for a url, or None."""
        pass


class InMemoryAuditRecordStore(AuditRecordStore):
    """Process-local AuditRecordStore for the CLI and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.records: Dict[int, Dict[str, Any]] = {}

    def create(self, url, report_type, config, user_id=None):
        with self._lock:
            audit_id = next(self._ids)
            record = {
                "id": audit_id,
                "user_id": user_id,
                "url": url,
                "type": report_type,
                "config": dict(config or {}),
                "status": "running",
                "report_data": None,
                "created_at": datetime.now(timezone.utc),
            }
            self.records[audit_id] = record
            return dict(record)

    def update_status(self, audit_id, status, fields=None):
        with self._lock:
            record = self.records.get(audit_id)
            if record is None:
                raise KeyError(f"Audit record {audit_id} not found")
            record["status"] = status
            record.update(fields or {})

    def find_most_recent_by_domain(self, url):
        with self._lock:
            candidates = [
                r for r in self.records.values()
                if r["url"] == url and r["status"] == "completed" and r.get("report_data") is not None
            ]
        if not candidates:
            return None
        return dict(max(candidates, key=lambda r: r["created_at"]))


class TierLimitsProvider(ABC):
    """Resolves per-user crawl limits for a job payload."""

    @abstractmethod
    def limits_for(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        pass


class StaticTierLimitsProvider(TierLimitsProvider):
    """
    Payload user_limits win; otherwise registered users are unlimited (-1)
    and anonymous users get UNREGISTERED_MAX_EXTERNAL_LINKS.
    """

    def limits_for(self, payload):
        limits = dict(payload.get("user_limits") or {})
        registered = bool(limits.get("is_registered") or payload.get("user_id"))
        limits["is_registered"] = registered
        limits.setdefault("max_external_links", -1 if registered else UNREGISTERED_MAX_EXTERNAL_LINKS)
        return limits
