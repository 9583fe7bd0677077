"""
FILE DESCRIPTION: Priority job queue that runs audits one at a time.
KEY FUNCTIONS/CLASSES: JobQueue, NotConfiguredError, InvalidJobError

FLOW: add() validates the payload, registers the session and pushes the job on
a priority heap -> a single dispatcher thread pops jobs (highest priority
first, FIFO within a priority) -> _run_audit_job() serves a cached record or
runs the executor, mirrors its progress into the session, stores the report
and writes the terminal session status -> failed jobs are re-queued until
max_attempts is exhausted.
"""

import heapq
import itertools
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from crawler.core import (
    CACHE_MAX_AGE_HOURS,
    DEFAULT_MAX_PAGES,
    JOB_MAX_ATTEMPTS,
    MAX_PAGES_LIMIT,
)
from executor.engine import AuditError
from executor.report import generate_simple_report
from jobs.models import AuditJob, JobStatus, RUN_AUDIT
from jobs.sessions import SessionRegistry
from jobs.storage import AuditRecordStore, TierLimitsProvider
from progress.models import ProgressEvent

logger = logging.getLogger("crawler.jobs")

PRUNE_THRESHOLD = 100
PRUNE_AGE_SECONDS = 24 * 60 * 60


class NotConfiguredError(Exception):
    """Raised when jobs are added before inject_dependencies()."""
    pass

class InvalidJobError(ValueError):
    """Raised for unknown job types or malformed payloads."""
    pass


def validate_payload(job_type: str, payload: Dict[str, Any]) -> None:
    if job_type != RUN_AUDIT:
        raise InvalidJobError(f"Unknown job type: {job_type}")
    if not isinstance(payload, dict):
        raise InvalidJobError("Job payload must be a dict")

    url = payload.get("url")
    if not url or not isinstance(url, str):
        raise InvalidJobError("Invalid URL provided for audit")
    session_id = payload.get("session_id")
    if not session_id or not isinstance(session_id, str):
        raise InvalidJobError("Invalid session ID provided for audit")
    if "user_limits" not in payload:
        raise InvalidJobError("user_limits is required")

    max_pages = payload.get("max_pages")
    if max_pages is not None:
        if isinstance(max_pages, bool) or not isinstance(max_pages, int) or not 1 <= max_pages <= MAX_PAGES_LIMIT:
            raise InvalidJobError(f"Invalid max_pages value (must be between 1 and {MAX_PAGES_LIMIT})")


def _session_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "url": payload["url"],
        "report_type": payload.get("report_type"),
        "max_pages": payload.get("max_pages") or DEFAULT_MAX_PAGES,
        "priority": payload.get("priority"),
    }


def _age_hours(created_at) -> Optional[float]:
    if created_at is None:
        return None
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - created_at).total_seconds() / 3600


class JobQueue:

    def __init__(self, max_attempts: int = JOB_MAX_ATTEMPTS, cache_max_age_hours: float = CACHE_MAX_AGE_HOURS):
        self.default_max_attempts = max(max_attempts, 1)
        self.cache_max_age_hours = cache_max_age_hours

        self._cond = threading.Condition()
        self._jobs: Dict[str, AuditJob] = {}
        self._heap: List[tuple] = []
        self._seq = itertools.count()
        self._ids = itertools.count(1)
        self._paused = False
        self._stopping = False
        self._dispatcher: Optional[threading.Thread] = None

        self.audit_executor = None
        self.sessions: Optional[SessionRegistry] = None
        self.records: Optional[AuditRecordStore] = None
        self.tier_limits: Optional[TierLimitsProvider] = None

    def inject_dependencies(
        self,
        audit_executor,
        active_sessions: SessionRegistry,
        audit_record_store: Optional[AuditRecordStore] = None,
        tier_limits_provider: Optional[TierLimitsProvider] = None
    ) -> None:
        self.audit_executor = audit_executor
        self.sessions = active_sessions
        self.records = audit_record_store
        self.tier_limits = tier_limits_provider

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------
    def add(self, job_type: str, payload: Dict[str, Any], priority: int = 0, max_attempts: Optional[int] = None) -> str:
        if self.audit_executor is None or self.sessions is None:
            raise NotConfiguredError("Job queue dependencies not configured")
        validate_payload(job_type, payload)

        session_id = payload["session_id"]
        with self._cond:
            if self._stopping:
                raise RuntimeError("Job queue is shut down")
            job_id = str(next(self._ids))
            job = AuditJob(
                id=job_id,
                type=job_type,
                payload=dict(payload),
                session_id=session_id,
                priority=priority,
                max_attempts=max(max_attempts or self.default_max_attempts, 1),
            )
            self._jobs[job_id] = job
            self._push(job)
            self._prune()

        self.sessions.ensure(
            session_id,
            status=JobStatus.QUEUED.value,
            url=payload["url"],
            progress=0,
            message="Audit queued",
        )
        logger.info(f"[JOBS] Queued job {job_id} ({job_type}) for {payload['url']} session={session_id}")
        self._ensure_dispatcher()
        return job_id

    def get_job(self, job_id: str) -> Optional[AuditJob]:
        with self._cond:
            return self._jobs.get(job_id)

    def get_jobs_by_status(self, status) -> List[AuditJob]:
        status = JobStatus(status)
        with self._cond:
            return [j for j in self._jobs.values() if j.status == status]

    def get_job_stats(self) -> Dict[str, Any]:
        with self._cond:
            stats = {s.value: 0 for s in JobStatus}
            for job in self._jobs.values():
                stats[job.status.value] += 1
            stats["total"] = len(self._jobs)
            stats["queue_length"] = len(self._heap)
            stats["paused"] = self._paused
            return stats

    def remove_job(self, job_id: str) -> bool:
        """Forget a job. A queued job removed here is never run."""
        with self._cond:
            return self._jobs.pop(job_id, None) is not None

    def clear_finished_jobs(self) -> int:
        with self._cond:
            finished = [job_id for job_id, job in self._jobs.items() if job.is_finished]
            for job_id in finished:
                del self._jobs[job_id]
        return len(finished)

    def pause(self) -> None:
        with self._cond:
            self._paused = True
        logger.info("[JOBS] Queue paused")

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("[JOBS] Queue resumed")

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[AuditJob]:
        """Block until the job is finished (or removed). Returns the job or None on timeout."""
        with self._cond:
            done = self._cond.wait_for(
                lambda: job_id not in self._jobs or self._jobs[job_id].is_finished,
                timeout=timeout,
            )
            return self._jobs.get(job_id) if done else None

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the dispatcher after the running job; queued jobs are left unrun."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            dispatcher = self._dispatcher
        if wait and dispatcher is not None and dispatcher is not threading.current_thread():
            dispatcher.join(timeout)

    # ------------------------------------------------------------
    # Dispatching
    # ------------------------------------------------------------
    def _push(self, job: AuditJob) -> None:
        heapq.heappush(self._heap, (-job.priority, next(self._seq), job.id))
        self._cond.notify_all()

    def _prune(self) -> None:
        if len(self._jobs) <= PRUNE_THRESHOLD:
            return
        cutoff = time.time() - PRUNE_AGE_SECONDS
        old = [job_id for job_id, job in self._jobs.items() if job.is_finished and job.updated_at < cutoff]
        for job_id in old:
            del self._jobs[job_id]
        if old:
            logger.info(f"[JOBS] Pruned {len(old)} old jobs")

    def _ensure_dispatcher(self) -> None:
        with self._cond:
            if self._dispatcher is not None and self._dispatcher.is_alive():
                return
            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="job-dispatcher", daemon=True)
            self._dispatcher.start()

    def _next_job(self) -> Optional[AuditJob]:
        with self._cond:
            while True:
                if self._stopping:
                    return None
                if not self._paused and self._heap:
                    _, _, job_id = heapq.heappop(self._heap)
                    job = self._jobs.get(job_id)
                    if job is None or job.status != JobStatus.QUEUED:
                        continue
                    job.status = JobStatus.RUNNING
                    job.touch()
                    return job
                self._cond.wait()

    def _dispatch_loop(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            self._run_job(job)

    def _run_job(self, job: AuditJob) -> None:
        logger.info(f"[JOBS] Running job {job.id} (attempt {job.attempts + 1}/{job.max_attempts})")
        try:
            result = self._run_audit_job(job.payload)
        except Exception as e:
            with self._cond:
                job.attempts += 1
                job.error = str(e)
                retry = job.attempts < job.max_attempts and job.id in self._jobs

            # Session is written before the job is marked finished
            if retry:
                logger.warning(f"[JOBS] Job {job.id} failed, retrying ({job.attempts}/{job.max_attempts}): {e}")
                self.sessions.update(
                    job.session_id,
                    status=JobStatus.QUEUED.value,
                    message=f"Retrying audit (attempt {job.attempts + 1}/{job.max_attempts})",
                )
            else:
                logger.error(f"[JOBS] Job {job.id} failed: {e}")
                self.sessions.update(
                    job.session_id,
                    status="error",
                    error=str(e),
                    message=f"Audit failed: {e}",
                    **_session_fields(job.payload)
                )
            with self._cond:
                job.status = JobStatus.QUEUED if retry else JobStatus.FAILED
                job.touch()
                if retry:
                    self._push(job)
                self._cond.notify_all()
            return

        with self._cond:
            job.result = result
            job.status = JobStatus.COMPLETED
            job.touch()
            self._cond.notify_all()
        logger.info(f"[JOBS] Job {job.id} completed")

    # ------------------------------------------------------------
    # Audit job
    # ------------------------------------------------------------
    def _resolve_limits(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.tier_limits is not None:
            return self.tier_limits.limits_for(payload)
        return dict(payload.get("user_limits") or {})

    def _cached_result(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.records is None or payload.get("force_new"):
            return None
        url = payload["url"]
        recent = self.records.find_most_recent_by_domain(url)
        if not recent or not recent.get("report_data"):
            return None
        age = _age_hours(recent.get("created_at"))
        if age is None or age >= self.cache_max_age_hours:
            return None

        logger.info(f"[JOBS] Using cached audit result for {url} ({age:.1f}h old)")
        self.sessions.update(
            payload["session_id"],
            status="completed",
            result=recent["report_data"],
            url=url,
            report_type=payload.get("report_type"),
            max_pages=payload.get("max_pages"),
            priority=payload.get("priority"),
            audit_id=recent.get("id"),
            progress=100,
            message="Using recent audit results from cache",
        )
        return {
            "success": True,
            "report_data": recent["report_data"],
            "audit_metrics": {
                "duration": recent.get("duration_ms") or 0,
                "pages_scanned": recent.get("pages_scanned") or 0,
                "external_links_checked": recent.get("external_links_checked") or 0,
            },
            "cached": True,
            "cache_age": age,
        }

    def _run_audit_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = payload["url"]
        session_id = payload["session_id"]
        max_pages = payload.get("max_pages") or DEFAULT_MAX_PAGES
        common = _session_fields(payload)

        def on_progress(event: ProgressEvent) -> None:
            # Terminal error status is written by _run_job once retries are decided
            if event.session_id != session_id or event.status == "error":
                return
            self.sessions.update(
                session_id,
                status=event.status or "running",
                message=event.message or "Processing...",
                progress=min(100, max(0, event.progress or 0)),
                current_url=event.current_url,
                detailed_status=event.detailed_status,
                phase=event.phase,
            )

        cached = self._cached_result(payload)
        if cached is not None:
            return cached

        limits = self._resolve_limits(payload)
        record = None
        self.audit_executor.add_listener(on_progress)
        try:
            if self.records is not None:
                record = self.records.create(
                    url,
                    payload.get("report_type"),
                    {"max_pages": max_pages, "priority": payload.get("priority"), "session_id": session_id},
                    user_id=payload.get("user_id"),
                )
                self.sessions.update(session_id, audit_id=record["id"])

            result = self.audit_executor.execute_audit(
                url, max_pages, bool(payload.get("force_new", False)), session_id, limits
            )
            if not result or not result.get("state_data"):
                raise AuditError("Audit completed but returned invalid data")

            report = generate_simple_report(result["state_data"])
            metrics = {
                "duration": result.get("execution_time") or 0,
                "pages_scanned": len(result["state_data"].get("visited") or []),
                "external_links_checked": len(result["state_data"].get("external_links") or {}),
            }

            if record is not None:
                self.records.update_status(record["id"], "completed", {
                    "report_data": report,
                    "duration_ms": metrics["duration"],
                    "pages_scanned": metrics["pages_scanned"],
                    "external_links_checked": metrics["external_links_checked"],
                })

            self.sessions.update(
                session_id,
                status="completed",
                result=report,
                audit_id=record["id"] if record else None,
                progress=100,
                message="Audit completed successfully",
                **common
            )
            return {"success": True, "report_data": report, "audit_metrics": metrics}

        except Exception as e:
            logger.error(f"[JOBS] Audit job failed for {url}: {e}")
            if record is not None:
                try:
                    self.records.update_status(record["id"], "failed", {"error_message": str(e)})
                except Exception as db_error:
                    logger.warning(f"[JOBS] Could not mark audit {record['id']} failed: {db_error}")
            raise
        finally:
            self.audit_executor.remove_listener(on_progress)
