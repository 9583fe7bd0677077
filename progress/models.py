from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

class ProgressStatus(str, Enum):
    STARTING = "starting"
    CRAWLING = "crawling"
    QUEUEING = "queueing"
    DOWNLOADING = "downloading"
    ANALYZING = "analyzing"
    EXTERNAL_LINKS = "external_links"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ERROR = "error"

class Phase(str, Enum):
    STARTING = "starting"
    DISCOVERY = "discovery"
    QUEUEING = "queueing"
    DOWNLOADING = "downloading"
    ANALYZING = "analyzing"
    EXTERNAL_VALIDATION = "external_validation"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ERROR = "error"

TERMINAL_STATUSES = {ProgressStatus.COMPLETED.value, ProgressStatus.ERROR.value}

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

@dataclass(frozen=True)
class ProgressEvent:
    """
    One structured progress update for a session.
    Immutable once emitted; ordered per session by emission.
    """
    session_id: Optional[str]
    status: str
    message: str
    progress: float
    phase: str
    current_url: Optional[str] = None
    detailed_status: Optional[str] = None
    page_count: Optional[int] = None
    total_pages: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
