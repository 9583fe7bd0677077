"""
Snapshot persistence: save/load round trip, missing and damaged files.
"""

import gzip
import json
import tempfile
import unittest
from pathlib import Path

from state.models import CrawlStateSnapshot, SCHEMA_VERSION
from state.page_data import PageDataStore
from state.snapshot_store import CorruptSnapshotError, StateSnapshotStore


def _containers():
    return set(), set(), {}, {}, {}, {}, {}


class TestStateSnapshotStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.run_dir = Path(self._tmp.name) / "example.com" / "audit-2026-01-06-05-32-41"
        self.run_dir.mkdir(parents=True)
        self.store = StateSnapshotStore()

    def tearDown(self):
        self._tmp.cleanup()

    def test_state_file_is_named_after_run_directory(self):
        path = self.store.state_file_for(self.run_dir)
        self.assertEqual(path.name, "audit-2026-01-06-05-32-41-crawl-state.json.gz")
        self.assertEqual(path.parent, self.run_dir)

    def test_save_then_load_restores_every_container(self):
        snapshot = CrawlStateSnapshot(
            visited={"https://example.com/", "https://example.com/about"},
            queue={"https://example.com/contact"},
            stats={"https://example.com/about": {"count": 2, "status": 200}},
            bad_requests={"https://example.com/missing": {"status": 404, "sources": ["https://example.com/"]}},
            external_links={"https://other.org/": {"status": "TIMEOUT", "sources": ["https://example.com/"]}},
            mailto_links={"mailto:hi@example.com": {"sources": ["https://example.com/"]}},
            tel_links={"tel:+123": {"sources": ["https://example.com/about"]}},
        )
        path = self.store.save(self.run_dir, snapshot)
        self.assertTrue(path.is_file())

        visited, queue, stats, bad, external, mailto, tel = _containers()
        loaded = self.store.load(path, visited, queue, stats, bad, external, mailto, tel)

        self.assertTrue(loaded)
        self.assertEqual(visited, snapshot.visited)
        self.assertEqual(queue, snapshot.queue)
        self.assertEqual(stats, snapshot.stats)
        self.assertEqual(bad, snapshot.bad_requests)
        self.assertEqual(external, snapshot.external_links)
        self.assertEqual(mailto, snapshot.mailto_links)
        self.assertEqual(tel, snapshot.tel_links)

    def test_saved_file_is_gzip_json_with_schema_version(self):
        path = self.store.save(self.run_dir, CrawlStateSnapshot(visited={"https://example.com/"}))
        with gzip.open(path, "rb") as f:
            data = json.loads(f.read().decode("utf-8"))
        self.assertEqual(data["schema_version"], SCHEMA_VERSION)
        self.assertEqual(data["visited"], ["https://example.com/"])
        self.assertFalse(path.with_name(path.name + ".tmp").exists())

    def test_load_missing_file_returns_false_and_leaves_containers_empty(self):
        visited, queue, stats, bad, external, mailto, tel = _containers()
        loaded = self.store.load(self.store.state_file_for(self.run_dir), visited, queue, stats, bad, external, mailto, tel)
        self.assertFalse(loaded)
        self.assertEqual(visited, set())
        self.assertEqual(stats, {})

    def test_truncated_file_raises_corrupt_snapshot(self):
        path = self.store.save(self.run_dir, CrawlStateSnapshot(visited={f"https://example.com/{i}" for i in range(200)}))
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 2])

        with self.assertRaises(CorruptSnapshotError):
            self.store.load(path, *_containers())

    def test_newer_schema_version_is_rejected(self):
        path = self.store.state_file_for(self.run_dir)
        with gzip.open(path, "wb") as f:
            f.write(json.dumps({"schema_version": SCHEMA_VERSION + 1, "visited": []}).encode("utf-8"))

        with self.assertRaises(CorruptSnapshotError):
            self.store.load_snapshot(path)

    def test_legacy_uncompressed_file_is_read_and_replaced_on_save(self):
        legacy = self.run_dir / "audit-2026-01-06-05-32-41-crawl-state.json"
        legacy.write_text(json.dumps({
            "visited": ["https://example.com/"],
            "stats": {"https://example.com/": {"count": 1}},
            "page_data": {"https://example.com/": {"title": "Home"}},
        }))
        page_store = PageDataStore(self.run_dir)

        visited, queue, stats, bad, external, mailto, tel = _containers()
        loaded = self.store.load(
            self.store.state_file_for(self.run_dir),
            visited, queue, stats, bad, external, mailto, tel, page_store
        )
        self.assertTrue(loaded)
        self.assertEqual(visited, {"https://example.com/"})
        self.assertEqual(page_store.get("https://example.com/"), {"title": "Home"})

        self.store.save(self.run_dir, CrawlStateSnapshot(visited=visited))
        self.assertFalse(legacy.exists())


if __name__ == "__main__":
    unittest.main()
