"""
JobQueue scheduling, session bookkeeping and audit record updates.
"""

import unittest
from datetime import datetime, timedelta, timezone

from executor.engine import SnapshotLoadError
from jobs.models import JobStatus, RUN_AUDIT
from jobs.queue import InvalidJobError, JobQueue, NotConfiguredError
from jobs.sessions import SessionRegistry
from jobs.storage import InMemoryAuditRecordStore, StaticTierLimitsProvider
from progress.models import ProgressEvent

STATE_DATA = {
    "visited": ["https://example.com/", "https://example.com/about"],
    "stats": {"https://example.com/": {"count": 1}},
    "bad_requests": {"https://example.com/gone": {"status": 404}},
    "external_links": {"https://other.org/": {"status": 200}},
    "mailto_links": {},
    "tel_links": {},
}


class FakeExecutor:
    def __init__(self, failures=0):
        self.listeners = []
        self.calls = []
        self.failures = failures
        self.sessions = None
        self.observed = {}

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        self.listeners.remove(listener)

    def execute_audit(self, domain, max_pages=50, force_new=False, session_id=None, user_limits=None):
        self.calls.append((domain, max_pages, force_new, session_id, user_limits))
        for listener in list(self.listeners):
            listener(ProgressEvent(
                session_id=session_id, status="crawling", message="Processing page 1/2",
                progress=40, phase="queueing", current_url="https://example.com/"
            ))
            listener(ProgressEvent(
                session_id="someone-else", status="crawling", message="other", progress=99, phase="queueing"
            ))
        if self.sessions is not None:
            self.observed[session_id] = self.sessions.get(session_id)
        if len(self.calls) <= self.failures:
            for listener in list(self.listeners):
                listener(ProgressEvent(
                    session_id=session_id, status="error", message="Audit failed", progress=40, phase="error"
                ))
            raise SnapshotLoadError("Failed to load audit state data after multiple attempts")
        return {"state_data": STATE_DATA, "execution_time": 1234, "session_id": session_id}


class RecordingSessions(SessionRegistry):
    def __init__(self):
        super().__init__()
        self.statuses = []

    def update(self, session_id, **fields):
        if "status" in fields:
            self.statuses.append(fields["status"])
        return super().update(session_id, **fields)


def payload(session_id="s1", **overrides):
    data = {"url": "https://example.com", "session_id": session_id, "max_pages": 10, "user_limits": {}}
    data.update(overrides)
    return data


class TestJobQueue(unittest.TestCase):
    def setUp(self):
        self.executor = FakeExecutor()
        self.sessions = SessionRegistry()
        self.executor.sessions = self.sessions
        self.records = InMemoryAuditRecordStore()
        self.queue = JobQueue()
        self.queue.inject_dependencies(self.executor, self.sessions, self.records, StaticTierLimitsProvider())

    def tearDown(self):
        self.queue.shutdown(timeout=5)

    def test_add_before_configuration_fails(self):
        with self.assertRaises(NotConfiguredError):
            JobQueue().add(RUN_AUDIT, payload())

    def test_invalid_payloads_are_rejected(self):
        bad = [
            payload(max_pages=0),
            payload(max_pages=1001),
            payload(max_pages="10"),
            payload(url=""),
            payload(session_id=None),
            {"url": "https://example.com", "session_id": "s1"},
        ]
        for data in bad:
            with self.assertRaises(InvalidJobError):
                self.queue.add(RUN_AUDIT, data)
        with self.assertRaises(InvalidJobError):
            self.queue.add("send_email", payload())
        self.assertEqual(self.queue.get_job_stats()["total"], 0)

    def test_successful_job_updates_session_and_record(self):
        job_id = self.queue.add(RUN_AUDIT, payload())
        job = self.queue.wait_for(job_id, timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertTrue(job.result["success"])
        self.assertEqual(job.result["audit_metrics"]["pages_scanned"], 2)
        self.assertEqual(job.result["audit_metrics"]["duration"], 1234)

        session = self.sessions.get("s1")
        self.assertEqual(session["status"], "completed")
        self.assertEqual(session["progress"], 100)
        self.assertEqual(session["result"]["summary"]["total_pages"], 2)
        self.assertEqual(session["result"]["summary"]["broken_links"], 1)
        self.assertIn("timestamp", session)

        record = self.records.records[session["audit_id"]]
        self.assertEqual(record["status"], "completed")
        self.assertEqual(record["pages_scanned"], 2)
        self.assertEqual(record["report_data"], session["result"])
        self.assertNotIn("score", record)
        self.assertNotIn("score", job.result["audit_metrics"])

        domain, max_pages, force_new, session_id, limits = self.executor.calls[0]
        self.assertEqual((domain, max_pages, force_new, session_id), ("https://example.com", 10, False, "s1"))
        self.assertEqual(limits["max_external_links"], 10)
        self.assertEqual(self.executor.listeners, [])

    def test_progress_is_mirrored_for_own_session_only(self):
        job_id = self.queue.add(RUN_AUDIT, payload())
        self.queue.wait_for(job_id, timeout=5)

        observed = self.executor.observed["s1"]
        self.assertEqual(observed["progress"], 40)
        self.assertEqual(observed["current_url"], "https://example.com/")
        self.assertEqual(observed["phase"], "queueing")

    def test_failed_job_marks_session_and_record(self):
        self.executor.failures = 1
        job_id = self.queue.add(RUN_AUDIT, payload())
        job = self.queue.wait_for(job_id, timeout=5)

        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.attempts, 1)
        self.assertIn("after multiple attempts", job.error)

        session = self.sessions.get("s1")
        self.assertEqual(session["status"], "error")
        self.assertIn("after multiple attempts", session["error"])
        record = self.records.records[session["audit_id"]]
        self.assertEqual(record["status"], "failed")
        self.assertIn("after multiple attempts", record["error_message"])

    def test_failed_job_is_retried_until_max_attempts(self):
        self.executor.failures = 1
        job_id = self.queue.add(RUN_AUDIT, payload(), max_attempts=2)
        job = self.queue.wait_for(job_id, timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.attempts, 1)
        self.assertEqual(len(self.executor.calls), 2)
        self.assertEqual(self.sessions.get("s1")["status"], "completed")

    def test_retried_job_never_reports_error_to_session(self):
        sessions = RecordingSessions()
        self.queue.inject_dependencies(self.executor, sessions, self.records, StaticTierLimitsProvider())
        self.executor.failures = 1

        job = self.queue.wait_for(self.queue.add(RUN_AUDIT, payload(), max_attempts=2), timeout=5)

        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertNotIn("error", sessions.statuses)
        self.assertIn("queued", sessions.statuses)
        self.assertEqual(sessions.statuses[-1], "completed")

    def test_recent_cached_record_is_reused(self):
        record = self.records.create("https://example.com", None, {})
        self.records.update_status(record["id"], "completed", {"report_data": {"summary": {"total_pages": 7}}})
        self.records.records[record["id"]]["created_at"] = datetime.now(timezone.utc) - timedelta(hours=2)

        job = self.queue.wait_for(self.queue.add(RUN_AUDIT, payload()), timeout=5)

        self.assertTrue(job.result["cached"])
        self.assertEqual(self.executor.calls, [])
        session = self.sessions.get("s1")
        self.assertEqual(session["status"], "completed")
        self.assertEqual(session["result"]["summary"]["total_pages"], 7)
        self.assertEqual(session["message"], "Using recent audit results from cache")

    def test_stale_cached_record_is_ignored(self):
        record = self.records.create("https://example.com", None, {})
        self.records.update_status(record["id"], "completed", {"report_data": {"summary": {}}})
        self.records.records[record["id"]]["created_at"] = datetime.now(timezone.utc) - timedelta(hours=30)

        self.queue.wait_for(self.queue.add(RUN_AUDIT, payload()), timeout=5)

        self.assertEqual(len(self.executor.calls), 1)

    def test_higher_priority_runs_first(self):
        self.queue.pause()
        low = self.queue.add(RUN_AUDIT, payload("low"), priority=0)
        high = self.queue.add(RUN_AUDIT, payload("high"), priority=5)
        self.assertEqual(self.queue.get_job_stats()["queued"], 2)
        self.assertTrue(self.queue.get_job_stats()["paused"])

        self.queue.resume()
        self.queue.wait_for(low, timeout=5)
        self.queue.wait_for(high, timeout=5)

        self.assertEqual([call[3] for call in self.executor.calls], ["high", "low"])

    def test_stats_and_clearing_finished_jobs(self):
        job_id = self.queue.add(RUN_AUDIT, payload())
        self.queue.wait_for(job_id, timeout=5)

        stats = self.queue.get_job_stats()
        self.assertEqual(stats["completed"], 1)
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["queue_length"], 0)
        self.assertEqual(len(self.queue.get_jobs_by_status("completed")), 1)

        self.assertEqual(self.queue.clear_finished_jobs(), 1)
        self.assertIsNone(self.queue.get_job(job_id))

    def test_removed_queued_job_never_runs(self):
        self.queue.pause()
        job_id = self.queue.add(RUN_AUDIT, payload())
        self.assertTrue(self.queue.remove_job(job_id))
        self.queue.resume()

        other = self.queue.add(RUN_AUDIT, payload("s2"))
        self.queue.wait_for(other, timeout=5)
        self.assertEqual([call[3] for call in self.executor.calls], ["s2"])


class TestSessionRegistry(unittest.TestCase):
    def test_update_merges_and_stamps(self):
        sessions = SessionRegistry()
        sessions.create("s1", status="queued", url="https://example.com")
        sessions.update("s1", status="crawling", progress=12)

        record = sessions.get("s1")
        self.assertEqual(record["url"], "https://example.com")
        self.assertEqual(record["status"], "crawling")
        self.assertEqual(record["progress"], 12)
        self.assertIn("timestamp", record)

    def test_get_returns_copy(self):
        sessions = SessionRegistry()
        sessions.create("s1", status="queued")
        sessions.get("s1")["status"] = "tampered"
        self.assertEqual(sessions.get("s1")["status"], "queued")

    def test_expire_drops_stale_sessions(self):
        sessions = SessionRegistry()
        sessions.create("s1")
        self.assertEqual(sessions.expire(ttl=-1), 1)
        self.assertNotIn("s1", sessions)
        self.assertEqual(len(sessions), 0)


if __name__ == "__main__":
    unittest.main()
