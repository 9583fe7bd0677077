"""
Per-URL extracted page payloads for one audit run.

Entries live under <run_dir>/page-data/ as <sha1(url)>.json or .json.gz.
Payloads above COMPRESSION_THRESHOLD are gzip-compressed, smaller ones are
stored as plain JSON. Each file wraps the payload with its URL so the store
can be iterated without an index.
"""

import gzip
import hashlib
import json
import logging
import shutil
import struct
import threading
import zlib
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

logger = logging.getLogger("crawler.state")

COMPRESSION_THRESHOLD = 10 * 1024
COMPRESSION_LEVEL = 6
PAGE_DATA_FOLDER = "page-data"


class PageDataStore:
    """
    Compressed page data store scoped to exactly one run directory.
    Writes for the same URL overwrite the previous entry.
    Thread-safe: crawl workers call set() concurrently.
    """

    def __init__(self, run_directory: Path, max_items_in_memory: int = 100):
        self.run_directory = Path(run_directory)
        self.folder = self.run_directory / PAGE_DATA_FOLDER
        self.max_items_in_memory = max_items_in_memory
        self._cache: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.RLock()
        self.folder.mkdir(parents=True, exist_ok=True)

    def _paths(self, url: str) -> Tuple[Path, Path]:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
        return self.folder / f"{digest}.json.gz", self.folder / f"{digest}.json"

    def _remember(self, url: str, data: Any) -> None:
        self._cache[url] = data
        self._cache.move_to_end(url)
        while len(self._cache) > self.max_items_in_memory:
            self._cache.popitem(last=False)

    def set(self, url: str, data: Any) -> None:
        raw = json.dumps({"url": url, "data": data}, ensure_ascii=False).encode("utf-8")
        compressed, plain = self._paths(url)

        with self._lock:
            if len(raw) > COMPRESSION_THRESHOLD:
                with gzip.open(compressed, "wb", compresslevel=COMPRESSION_LEVEL) as f:
                    f.write(raw)
                if plain.exists():
                    plain.unlink()
            else:
                plain.write_bytes(raw)
                if compressed.exists():
                    compressed.unlink()
            self._remember(url, data)

    def _read_file(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            if path.name.endswith(".gz"):
                with gzip.open(path, "rb") as f:
                    raw = f.read()
            else:
                raw = path.read_bytes()
            return json.loads(raw.decode("utf-8"))
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"[PAGE-DATA] Failed to read {path.name}: {e}")
            return None

    def get(self, url: str) -> Optional[Any]:
        with self._lock:
            if url in self._cache:
                return self._cache[url]

            for path in self._paths(url):
                if path.is_file():
                    wrapper = self._read_file(path)
                    if wrapper is None:
                        continue
                    data = wrapper.get("data")
                    self._remember(url, data)
                    return data
            return None

    def has(self, url: str) -> bool:
        with self._lock:
            if url in self._cache:
                return True
            return any(p.is_file() for p in self._paths(url))

    def delete(self, url: str) -> None:
        with self._lock:
            self._cache.pop(url, None)
            for path in self._paths(url):
                if path.exists():
                    path.unlink()

    def _files(self):
        if not self.folder.is_dir():
            return []
        return sorted(
            p for p in self.folder.iterdir()
            if p.is_file() and (p.name.endswith(".json") or p.name.endswith(".json.gz"))
        )

    def __iter__(self) -> Iterator[Tuple[str, Any]]:
        for path in self._files():
            wrapper = self._read_file(path)
            if wrapper and "url" in wrapper:
                yield wrapper["url"], wrapper.get("data")

    def __len__(self) -> int:
        return self.size

    @property
    def size(self) -> int:
        """Number of stored entries."""
        return len(self._files())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            if self.folder.exists():
                shutil.rmtree(self.folder)
            self.folder.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _gzip_raw_size(path: Path) -> int:
        # ISIZE trailer: uncompressed length mod 2**32
        with open(path, "rb") as f:
            f.seek(-4, 2)
            return struct.unpack("<I", f.read(4))[0]

    def compression_stats(self) -> Dict[str, Any]:
        compressed_count = 0
        plain_count = 0
        raw_bytes = 0
        stored_bytes = 0

        for path in self._files():
            size = path.stat().st_size
            stored_bytes += size
            if path.name.endswith(".gz"):
                compressed_count += 1
                try:
                    raw_bytes += self._gzip_raw_size(path)
                except OSError:
                    raw_bytes += size
            else:
                plain_count += 1
                raw_bytes += size

        ratio = round((raw_bytes - stored_bytes) / raw_bytes * 100, 1) if raw_bytes else 0.0
        return {
            "raw_bytes": raw_bytes,
            "compressed_bytes": stored_bytes,
            "ratio": ratio,
            "compressed": compressed_count,
            "uncompressed": plain_count,
        }

    def migrate_to_compressed(self) -> Dict[str, int]:
        """Compress plain entries that have grown past the threshold."""
        migrated = 0
        errors = 0
        saved = 0
        with self._lock:
            for path in self._files():
                if path.name.endswith(".gz"):
                    continue
                try:
                    raw = path.read_bytes()
                    if len(raw) <= COMPRESSION_THRESHOLD:
                        continue
                    target = path.with_name(path.name + ".gz")
                    with gzip.open(target, "wb", compresslevel=COMPRESSION_LEVEL) as f:
                        f.write(raw)
                    saved += len(raw) - target.stat().st_size
                    path.unlink()
                    migrated += 1
                except OSError as e:
                    logger.warning(f"[PAGE-DATA] Failed to migrate {path.name}: {e}")
                    errors += 1
        if migrated:
            logger.info(f"[PAGE-DATA] Migrated {migrated} files, {saved / 1024:.1f}KB saved")
        return {"migrated": migrated, "errors": errors, "total_saved": saved}
