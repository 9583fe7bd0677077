"""
FILE DESCRIPTION: Runs one audit end to end and reports typed progress.
KEY FUNCTIONS/CLASSES: AuditExecutor, AuditError and subclasses

FLOW: Admission (fail fast) -> starting(0) -> crawl engine run with its
narration bridged into ProgressEvents -> analyzing(90) + settle delay ->
snapshot load with linear backoff -> finalizing(95) -> run directory cleanup
-> completed(100). Any failure emits `error` and re-raises.
"""

import dataclasses
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from crawler.core import (
    DEFAULT_MAX_PAGES,
    SETTLE_DELAY_SECONDS,
    SNAPSHOT_BACKOFF_SECONDS,
    SNAPSHOT_LOAD_ATTEMPTS,
    UNREGISTERED_MAX_EXTERNAL_LINKS,
)
from crawler.engine import CrawlEngine, engine_logger
from crawler.reaper import ResourceReaper
from crawler.url_utils import hostname, normalize_origin
from progress.adapter import NarrationHandler, ProgressAdapter
from progress.channel import ProgressBroker, ProgressChannel
from progress.models import Phase, ProgressEvent, ProgressStatus
from state.directory import AuditDirectoryManager
from state.page_data import PageDataStore
from state.snapshot_store import CorruptSnapshotError, StateSnapshotStore

logger = logging.getLogger("crawler.executor")


class AuditError(Exception):
    """Base exception for audit execution."""
    pass

class ConcurrencyError(AuditError):
    """Raised when an audit is requested while another one is running."""
    pass

class SnapshotLoadError(AuditError):
    """Raised when the crawl snapshot cannot be read after all attempts."""
    pass

class CleanupError(AuditError):
    """Raised (and logged, never propagated) when run cleanup fails."""
    pass


def resolve_user_limits(user_limits: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Registered users get unlimited external link checks (-1),
    unregistered users UNREGISTERED_MAX_EXTERNAL_LINKS.
    An explicit value, 0 included, is kept.
    """
    limits = dict(user_limits or {})
    registered = bool(limits.get("is_registered", False))
    limits["is_registered"] = registered
    if limits.get("max_external_links") is None:
        limits["max_external_links"] = -1 if registered else UNREGISTERED_MAX_EXTERNAL_LINKS
    return limits


class AuditExecutor:
    """
    At most one audit runs per executor instance. Progress goes to the broker:
    listeners registered with add_listener and per-session channels.
    """

    def __init__(
        self,
        crawl_engine: CrawlEngine,
        directory_manager: Optional[AuditDirectoryManager] = None,
        snapshot_store: Optional[StateSnapshotStore] = None,
        broker: Optional[ProgressBroker] = None,
        reaper: Optional[ResourceReaper] = None,
        sleep: Callable[[float], None] = time.sleep,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        load_attempts: int = SNAPSHOT_LOAD_ATTEMPTS,
        backoff: float = SNAPSHOT_BACKOFF_SECONDS,
        cleanup_run: bool = True
    ):
        self.engine = crawl_engine
        self.directories = directory_manager or AuditDirectoryManager()
        self.snapshots = snapshot_store or StateSnapshotStore()
        self.broker = broker or ProgressBroker()
        self.reaper = reaper or ResourceReaper()
        self._sleep = sleep
        self.settle_delay = settle_delay
        self.load_attempts = max(load_attempts, 1)
        self.backoff = backoff
        self.cleanup_run = cleanup_run

        self._admission = threading.Lock()
        self._state_lock = threading.Lock()
        self.current_audit: Optional[Dict[str, Any]] = None
        self._last_progress: Dict[Optional[str], float] = {}

    # ------------------------------------------------------------
    # Progress fan-out
    # ------------------------------------------------------------
    def add_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        self.broker.add_listener(listener)

    def remove_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        self.broker.remove_listener(listener)

    def open_channel(self, session_id: str) -> ProgressChannel:
        return self.broker.open_channel(session_id)

    def close_channel(self, channel: ProgressChannel) -> None:
        self.broker.close_channel(channel)

    def _publish(self, event: ProgressEvent) -> None:
        with self._state_lock:
            last = self._last_progress.get(event.session_id, 0.0)
            if event.is_terminal:
                self._last_progress.pop(event.session_id, None)
                if event.status == ProgressStatus.ERROR.value:
                    event = dataclasses.replace(event, progress=last)
            else:
                if event.progress < last:
                    event = dataclasses.replace(event, progress=last)
                self._last_progress[event.session_id] = event.progress
            if self.current_audit is not None:
                self.current_audit["status"] = event.status
                self.current_audit["progress"] = event.progress

        self.broker.publish(event)

    def _emit(self, session_id, status: ProgressStatus, phase: Phase, message: str, progress: float, **kwargs) -> None:
        self._publish(ProgressEvent(
            session_id=session_id,
            status=status.value,
            phase=phase.value,
            message=message,
            progress=progress,
            **kwargs
        ))

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------
    def get_current_status(self) -> Dict[str, Any]:
        with self._state_lock:
            current = dict(self.current_audit) if self.current_audit else None
        return {"is_running": self._admission.locked(), "current_audit": current}

    def execute_audit(
        self,
        domain: str,
        max_pages: int = DEFAULT_MAX_PAGES,
        force_new: bool = False,
        session_id: Optional[str] = None,
        user_limits: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not self._admission.acquire(blocking=False):
            raise ConcurrencyError("Audit already in progress")

        session_id = session_id or f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        limits = resolve_user_limits(user_limits)
        start = time.monotonic()
        with self._state_lock:
            self.current_audit = {
                "session_id": session_id,
                "domain": domain,
                "start_time": datetime.now(timezone.utc).isoformat(),
                "status": ProgressStatus.STARTING.value,
                "progress": 0.0,
                "user_limits": limits,
            }
        logger.info(f"[AUDIT] Started {session_id} for {domain} (max_pages={max_pages}, force_new={force_new})")

        try:
            self._emit(
                session_id, ProgressStatus.STARTING, Phase.STARTING,
                f"Starting audit for {domain}", 0
            )

            crawl_result = self._run_crawl(domain, max_pages, force_new, session_id, limits)

            self._emit(
                session_id, ProgressStatus.ANALYZING, Phase.ANALYZING,
                "Analyzing website data...", 90,
                detailed_status="Processing collected data"
            )
            self._sleep(self.settle_delay)

            state_data = self._load_with_retry(hostname(domain))

            self._emit(
                session_id, ProgressStatus.FINALIZING, Phase.FINALIZING,
                "Generating final report...", 95,
                detailed_status="Compiling results"
            )

            result = dict(crawl_result)
            result.update({
                "state_data": state_data,
                "execution_time": int((time.monotonic() - start) * 1000),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "session_id": session_id,
            })

            if self.cleanup_run:
                try:
                    self._cleanup_run(domain)
                except CleanupError as e:
                    logger.warning(f"[CLEANUP] {e}")

            logger.info(
                f"[AUDIT] Completed {session_id} for {domain}: "
                f"{len(state_data['visited'])} pages, {len(state_data['external_links'])} external links "
                f"in {result['execution_time']}ms"
            )
            self._emit(
                session_id, ProgressStatus.COMPLETED, Phase.COMPLETED,
                "Audit completed successfully", 100,
                result=result
            )
            return result

        except Exception as e:
            logger.error(f"[AUDIT] Failed {session_id} for {domain}: {e}")
            self._emit(
                session_id, ProgressStatus.ERROR, Phase.ERROR,
                f"Audit failed: {e}", 0,
                error=str(e)
            )
            raise
        finally:
            with self._state_lock:
                self.current_audit = None
                self._last_progress.pop(session_id, None)
            self._reap()
            self._admission.release()

    # ------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------
    def _run_crawl(self, domain, max_pages, force_new, session_id, limits) -> Dict[str, Any]:
        origin = normalize_origin(domain)
        adapter = ProgressAdapter(session_id, max_pages)
        handler = NarrationHandler(adapter, self._publish)
        engine_logger.addHandler(handler)
        try:
            extra = self.engine.run(origin, max_pages, force_new, limits)
        finally:
            engine_logger.removeHandler(handler)

        result = dict(extra or {})
        result.update({"domain": origin, "max_pages": max_pages, "status": "completed"})
        return result

    def load_audit_state(self, domain: str) -> Optional[Dict[str, Any]]:
        """
        Read the latest run's snapshot for a domain.
        None when there is no run, no snapshot yet, or the snapshot is unreadable.
        """
        run_dir = self.directories.latest_run(domain)
        if run_dir is None:
            logger.debug(f"[AUDIT] No audit directories for {domain}")
            return None

        state_file = self.snapshots.state_file_for(run_dir)
        visited, queue = set(), set()
        stats, bad_requests, external_links, mailto_links, tel_links = {}, {}, {}, {}, {}
        page_store = PageDataStore(run_dir)

        try:
            loaded = self.snapshots.load(
                state_file, visited, queue, stats, bad_requests,
                external_links, mailto_links, tel_links, page_store
            )
        except CorruptSnapshotError as e:
            logger.warning(f"[AUDIT] {e}")
            return None
        if not loaded:
            return None

        return {
            "visited": sorted(visited),
            "queue": sorted(queue),
            "stats": stats,
            "bad_requests": bad_requests,
            "external_links": external_links,
            "mailto_links": mailto_links,
            "tel_links": tel_links,
            "page_data": page_store.compression_stats(),
            "run_directory": str(run_dir),
        }

    def _load_with_retry(self, domain: str) -> Dict[str, Any]:
        for attempt in range(1, self.load_attempts + 1):
            state_data = self.load_audit_state(domain)
            if state_data and state_data["stats"]:
                return state_data
            logger.info(f"[AUDIT] Attempt {attempt} to load state for {domain} found no data")
            if attempt < self.load_attempts:
                self._sleep(attempt * self.backoff)
        raise SnapshotLoadError("Failed to load audit state data after multiple attempts")

    def _cleanup_run(self, domain: str) -> None:
        try:
            self.directories.delete_run(domain)
        except OSError as e:
            raise CleanupError(f"Failed to delete audit directory for {domain}: {e}") from e

    def _reap(self) -> None:
        try:
            self.reaper.reap()
        except Exception as e:
            logger.warning(f"[CLEANUP] Resource reaper failed: {e}")
