from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Set

SCHEMA_VERSION = 1

@dataclass
class CrawlStateSnapshot:
    """
    Resumable crawl state for one audit run.
    Invariants:
    - every key is a normalized absolute URL, unique within the snapshot
    - visited only grows during a run; queue is empty after a normal finish
    """
    visited: Set[str] = field(default_factory=set)
    queue: Set[str] = field(default_factory=set)
    stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    bad_requests: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    external_links: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    mailto_links: Dict[str, Any] = field(default_factory=dict)
    tel_links: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "visited": sorted(self.visited),
            "queue": sorted(self.queue),
            "stats": self.stats,
            "bad_requests": self.bad_requests,
            "external_links": self.external_links,
            "mailto_links": self.mailto_links,
            "tel_links": self.tel_links,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlStateSnapshot":
        return cls(
            visited=set(data.get("visited") or []),
            queue=set(data.get("queue") or []),
            stats=dict(data.get("stats") or {}),
            bad_requests=dict(data.get("bad_requests") or {}),
            external_links=dict(data.get("external_links") or {}),
            mailto_links=dict(data.get("mailto_links") or {}),
            tel_links=dict(data.get("tel_links") or {}),
            schema_version=int(data.get("schema_version", SCHEMA_VERSION)),
        )
