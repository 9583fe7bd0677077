"""
Gzip-compressed JSON snapshot of a crawl run.

File layout: <run_dir>/<run_dir.name>-crawl-state.json.gz, e.g.
audits/example.com/audit-2026-01-06-05-32-41/audit-2026-01-06-05-32-41-crawl-state.json.gz

Writes go to a temp file and are renamed into place, so a reader never sees a
half-written artifact produced by this store. External crawl engines may still
write in place; a truncated file surfaces as CorruptSnapshotError and the
caller retries.
"""

import gzip
import json
import logging
import os
import zlib
from pathlib import Path
from typing import Dict, Optional, Set

from state.models import CrawlStateSnapshot, SCHEMA_VERSION
from state.storage import SnapshotStore

logger = logging.getLogger("crawler.state")

STATE_SUFFIX = "-crawl-state.json.gz"
LEGACY_STATE_SUFFIX = "-crawl-state.json"
COMPRESSION_LEVEL = 6


class StateError(Exception):
    """Base exception for on-disk audit state."""
    pass

class CorruptSnapshotError(StateError):
    """Raised when a snapshot exists but cannot be decoded."""
    pass


class StateSnapshotStore(SnapshotStore):
    """
    Gzip implementation of SnapshotStore.
    Sets are stored as sorted lists, maps as JSON objects.
    """

    def __init__(self, compression_level: int = COMPRESSION_LEVEL):
        self._level = compression_level

    def state_file_for(self, run_directory: Path) -> Path:
        run_directory = Path(run_directory)
        return run_directory / f"{run_directory.name}{STATE_SUFFIX}"

    def save(self, run_directory: Path, state: CrawlStateSnapshot) -> Path:
        run_directory = Path(run_directory)
        run_directory.mkdir(parents=True, exist_ok=True)
        target = self.state_file_for(run_directory)
        tmp = target.with_name(target.name + ".tmp")

        payload = json.dumps(state.to_dict(), ensure_ascii=False).encode("utf-8")
        with gzip.open(tmp, "wb", compresslevel=self._level) as f:
            f.write(payload)
        os.replace(tmp, target)

        # Compressed state supersedes the legacy uncompressed file
        legacy = run_directory / f"{run_directory.name}{LEGACY_STATE_SUFFIX}"
        if legacy.exists():
            legacy.unlink()

        logger.debug(f"[STATE] Saved {len(state.visited)} visited / {len(state.queue)} queued to {target}")
        return target

    def read(self, path: Path) -> Optional[dict]:
        """
        Raw decoded snapshot dict, or None when neither the compressed nor the
        legacy uncompressed file exists.
        """
        path = Path(path)
        candidates = [path]
        if path.name.endswith(STATE_SUFFIX):
            candidates.append(path.with_name(path.name[:-len(STATE_SUFFIX)] + LEGACY_STATE_SUFFIX))

        for candidate in candidates:
            if not candidate.is_file():
                continue
            try:
                if candidate.name.endswith(".gz"):
                    with gzip.open(candidate, "rb") as f:
                        raw = f.read()
                else:
                    raw = candidate.read_bytes()
                data = json.loads(raw.decode("utf-8"))
            except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
                raise CorruptSnapshotError(f"Unreadable snapshot {candidate}: {e}") from e

            if not isinstance(data, dict):
                raise CorruptSnapshotError(f"Snapshot {candidate} is not an object")
            version = data.get("schema_version", SCHEMA_VERSION)
            if not isinstance(version, int) or version > SCHEMA_VERSION:
                raise CorruptSnapshotError(f"Unsupported snapshot schema version {version!r} in {candidate}")
            return data
        return None

    def load_snapshot(self, path: Path) -> Optional[CrawlStateSnapshot]:
        data = self.read(path)
        return CrawlStateSnapshot.from_dict(data) if data is not None else None

    def load(
        self,
        path: Path,
        visited: Set[str],
        queue: Set[str],
        stats: Dict,
        bad_requests: Dict,
        external_links: Dict,
        mailto_links: Dict,
        tel_links: Dict,
        page_data_store=None
    ) -> bool:
        data = self.read(path)
        if data is None:
            logger.debug(f"[STATE] No snapshot at {path}")
            return False

        snapshot = CrawlStateSnapshot.from_dict(data)
        visited.update(snapshot.visited)
        queue.update(snapshot.queue)
        stats.update(snapshot.stats)
        bad_requests.update(snapshot.bad_requests)
        external_links.update(snapshot.external_links)
        mailto_links.update(snapshot.mailto_links)
        tel_links.update(snapshot.tel_links)

        # Older engines inlined page data into the state file
        inline_pages = data.get("page_data") or {}
        if page_data_store is not None and isinstance(inline_pages, dict):
            for url, page in inline_pages.items():
                page_data_store.set(url, page)

        return True
