import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

FINISHED_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}

RUN_AUDIT = "run_audit"

@dataclass
class AuditJob:
    """
    A scheduled audit.
    Status is mutated only by the JobQueue that owns the job.
    """
    id: str
    type: str
    payload: Dict[str, Any]
    session_id: str
    priority: int = 0
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 1
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.updated_at = time.time()

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "session_id": self.session_id,
            "priority": self.priority,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
