"""
Crawl engine boundary: subprocess narration, resource reaping and the
in-process site crawler against a mocked HTTP session.
"""

import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import requests

from crawler.engine import CrawlEngineError, SubprocessCrawlEngine
from crawler.reaper import ResourceReaper
from crawler.site_crawler import CrawlFrontier, SiteCrawlEngine, extract_links
from state.directory import AuditDirectoryManager
from state.models import CrawlStateSnapshot
from state.page_data import PageDataStore
from state.snapshot_store import StateSnapshotStore

PAGES = {
    "https://example.com/": (
        '<html><head><title>Home</title></head><body>'
        '<a href="/about">About</a> <a href="/contact#form">Contact</a>'
        '<a href="https://other.org/x">Other</a> <a href="mailto:hi@example.com">Mail</a>'
        '<a href="tel:+15550100">Call</a> <a href="javascript:void(0)">JS</a>'
        '</body></html>'
    ),
    "https://example.com/about": '<html><title>About</title><a href="/">Home</a><a href="/missing">x</a></html>',
    "https://example.com/contact": "<html><title>Contact</title><h1>Reach us</h1></html>",
}


def fake_response(status, text="", content_type="text/html; charset=utf-8"):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.content = text.encode("utf-8")
    response.headers = {"Content-Type": content_type}
    return response


def fake_get(url, **kwargs):
    if url in PAGES:
        return fake_response(200, PAGES[url])
    return fake_response(404, "not found")


class FakeReaper(ResourceReaper):
    def session(self):
        session = MagicMock()
        session.get.side_effect = fake_get
        session.head.return_value = fake_response(200)
        self.register_session(session)
        return session


class TestSubprocessCrawlEngine(unittest.TestCase):
    def test_stdout_lines_are_narrated(self):
        code = "print('[Worker 1] Processing 1: https://a.com/'); print('Crawl Complete')"
        engine = SubprocessCrawlEngine([sys.executable, "-c", code], audits_dir="/tmp/audits")

        with self.assertLogs("crawler.engine", level="INFO") as logs:
            result = engine.run("https://a.com", 5, False, {})

        self.assertEqual(result["engine_exit_code"], 0)
        self.assertTrue(any("Processing 1: https://a.com/" in line for line in logs.output))
        self.assertTrue(any("Crawl Complete" in line for line in logs.output))

    def test_undecodable_output_is_replaced(self):
        code = "import sys; sys.stdout.buffer.write(b'Crawling: https://x.com/caf\\xe9\\n'); sys.stdout.flush()"
        engine = SubprocessCrawlEngine([sys.executable, "-c", code])

        with self.assertLogs("crawler.engine", level="INFO") as logs:
            result = engine.run("https://x.com", 5, False, {})

        self.assertEqual(result["engine_exit_code"], 0)
        self.assertTrue(any("Crawling: https://x.com/caf\ufffd" in line for line in logs.output))

    def test_nonzero_exit_raises(self):
        engine = SubprocessCrawlEngine([sys.executable, "-c", "import sys; sys.exit(3)"])
        with self.assertRaises(CrawlEngineError) as cm:
            engine.run("https://a.com", 5, False, {})
        self.assertIn("status 3", str(cm.exception))

    def test_placeholders_are_substituted(self):
        engine = SubprocessCrawlEngine(["crawl", "{origin}", "--max", "{max_pages}", "--new={force_new}"])
        cmd = engine.build_command("https://a.com", 7, True)
        self.assertEqual(cmd, ["crawl", "https://a.com", "--max", "7", "--new=true"])

    def test_missing_command_raises(self):
        with self.assertRaises(CrawlEngineError):
            SubprocessCrawlEngine(["definitely-not-a-real-binary-xyz"]).run("https://a.com", 1, False, {})


class TestResourceReaper(unittest.TestCase):
    def test_reap_closes_sessions_and_cancels_timers(self):
        reaper = ResourceReaper()
        session = reaper.session()
        self.assertIsInstance(session, requests.Session)
        timer = threading.Timer(60, lambda: None)
        timer.start()
        reaper.register_timer(timer)

        result = reaper.reap()

        self.assertEqual(result["sessions_closed"], 1)
        self.assertEqual(result["timers_cancelled"], 1)
        timer.join(5)
        self.assertFalse(timer.is_alive())

    def test_session_close_failure_does_not_stop_sweep(self):
        reaper = ResourceReaper()
        broken = MagicMock()
        broken.close.side_effect = RuntimeError("socket already gone")
        reaper.register_session(broken)
        healthy = MagicMock()
        reaper.register_session(healthy)

        result = reaper.reap()

        self.assertEqual(result["sessions_closed"], 1)
        healthy.close.assert_called_once()


class TestExtractLinks(unittest.TestCase):
    def test_links_and_page_fields(self):
        links, page = extract_links(PAGES["https://example.com/"], "https://example.com/")
        hrefs = [href for href, _ in links]

        self.assertIn("https://example.com/about", hrefs)
        self.assertIn("mailto:hi@example.com", hrefs)
        self.assertIn("tel:+15550100", hrefs)
        self.assertNotIn("javascript:void(0)", hrefs)
        self.assertEqual(page["title"], "Home")


class TestCrawlFrontier(unittest.TestCase):
    def test_respects_max_pages_and_drains(self):
        state = CrawlStateSnapshot(queue={"https://a.com/"})
        frontier = CrawlFrontier(state, max_pages=2)

        url, count, remaining = frontier.next()
        self.assertEqual((url, count, remaining), ("https://a.com/", 1, 0))
        self.assertTrue(frontier.add("https://a.com/b"))
        self.assertFalse(frontier.add("https://a.com/c"))
        self.assertFalse(frontier.add("https://a.com/"))
        frontier.done()

        self.assertEqual(frontier.next()[0], "https://a.com/b")
        frontier.done()
        self.assertIsNone(frontier.next())
        self.assertEqual(state.visited, {"https://a.com/", "https://a.com/b"})
        self.assertEqual(state.queue, set())


class TestSiteCrawlEngine(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.directories = AuditDirectoryManager(Path(self._tmp.name))
        self.engine = SiteCrawlEngine(
            directory_manager=self.directories,
            reaper=FakeReaper(),
            max_workers=2,
            max_checks=2,
        )

    def tearDown(self):
        self._tmp.cleanup()

    def test_crawl_writes_snapshot_and_page_data(self):
        with self.assertLogs("crawler.engine", level="INFO") as logs:
            result = self.engine.run("example.com", 10, True, {"max_external_links": -1})

        run_dir = self.directories.latest_run("example.com")
        self.assertEqual(result["run_directory"], str(run_dir))
        snapshot = StateSnapshotStore().load_snapshot(StateSnapshotStore().state_file_for(run_dir))

        self.assertIn("https://example.com/", snapshot.visited)
        self.assertIn("https://example.com/about", snapshot.visited)
        self.assertIn("https://example.com/contact", snapshot.visited)
        self.assertEqual(snapshot.queue, set())
        self.assertEqual(snapshot.bad_requests["https://example.com/missing"]["status"], 404)
        self.assertEqual(snapshot.external_links["https://other.org/x"]["status"], 200)
        self.assertIn("mailto:hi@example.com", snapshot.mailto_links)
        self.assertIn("tel:+15550100", snapshot.tel_links)
        self.assertEqual(snapshot.stats["https://example.com/about"]["status"], 200)

        self.assertEqual(PageDataStore(run_dir).get("https://example.com/")["title"], "Home")

        output = "\n".join(logs.output)
        self.assertIn("Found ", output)
        self.assertIn("Processing 1", output)
        self.assertIn("--- Crawl Complete", output)
        self.assertIn("External Link Check (1/1): https://other.org/x", output)

    def test_discovery_is_announced_before_processing(self):
        with self.assertLogs("crawler.engine", level="INFO") as logs:
            self.engine.run("example.com", 10, True, {})

        messages = [record.getMessage() for record in logs.records]
        found = next(i for i, m in enumerate(messages) if m.startswith("Found "))
        first_processing = next(i for i, m in enumerate(messages) if "Processing 1" in m)
        self.assertLess(found, first_processing)
        self.assertEqual(messages[found], "Found 3 pages to crawl")

    def test_zero_external_limit_means_unlimited(self):
        with self.assertLogs("crawler.engine", level="INFO"):
            self.engine.run("example.com", 10, True, {"max_external_links": 0})
        run_dir = self.directories.latest_run("example.com")
        snapshot = StateSnapshotStore().load_snapshot(StateSnapshotStore().state_file_for(run_dir))
        self.assertEqual(len(snapshot.external_links), 1)

    def test_resumes_unfinished_run(self):
        run_dir = self.directories.create_run("example.com", "2026-01-01-00-00-00")
        StateSnapshotStore().save(run_dir, CrawlStateSnapshot(
            visited={"https://example.com/"},
            queue={"https://example.com/contact"},
            stats={"https://example.com/": {"count": 1, "status": 200}},
        ))

        with self.assertLogs("crawler.engine", level="INFO") as logs:
            result = self.engine.run("example.com", 10, False, {})

        self.assertEqual(result["run_directory"], str(run_dir))
        self.assertEqual(result["pages_crawled"], 1)
        self.assertTrue(any("Resuming crawl" in line for line in logs.output))
        snapshot = StateSnapshotStore().load_snapshot(StateSnapshotStore().state_file_for(run_dir))
        self.assertEqual(snapshot.visited, {"https://example.com/", "https://example.com/contact"})


if __name__ == "__main__":
    unittest.main()
