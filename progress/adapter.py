"""
Narration -> ProgressEvent adapter.

The crawl engine only reports progress as free-text log lines, possibly
interleaved from several workers:

    [Worker 1] Processing 3 (6 left): https://example.com/about
    Crawling: https://example.com/about
    Found 25 pages to crawl
    Checking External Links (50 links to check)
    External Link Check (5/50): https://foo.com
    [Worker 2] Finished - processed 12 pages in 9s

Each line is matched against a fixed pattern table; a recognized line yields
one ProgressEvent, anything else yields None. The adapter keeps no state
besides its counters (page_count, total_pages, discovery flag, last progress)
and the de-duplication cache.

Progress bands:
    discovery            5
    queueing/downloading 5 - 75
    external links       75 - 95
"""

import logging
import re
import time
from typing import Callable, Dict, List, Optional, Tuple

from crawler.core import PROGRESS_DEDUP_WINDOW
from progress.models import ProgressEvent, ProgressStatus, Phase

DISCOVERY_PROGRESS = 5.0
CRAWL_CEILING = 75.0
EXTERNAL_CEILING = 95.0

_URL = r"(https?://\S+)"


class ProgressAdapter:

    def __init__(
        self,
        session_id: Optional[str],
        max_pages: int,
        dedup_window: float = PROGRESS_DEDUP_WINDOW,
        clock: Callable[[], float] = time.monotonic
    ):
        self.session_id = session_id
        self.max_pages = max_pages
        self.total_pages = max(int(max_pages or 0), 1)
        self.page_count = 0
        self.discovered = False
        self._dedup_window = dedup_window
        self._clock = clock
        self._recent: Dict[str, float] = {}
        self._last_progress = 0.0

        # Order matters: first match wins
        self._table: List[Tuple[re.Pattern, Callable[[re.Match], Optional[ProgressEvent]]]] = [
            (re.compile(r"External Link Check \((\d+)/(\d+)\):\s*" + _URL), self._on_external_check),
            (re.compile(r"Checking External Links"), self._on_external_start),
            (re.compile(r"Found (\d+) pages?"), self._on_discovery),
            (re.compile(r"Processing (\d+)(?: \((\d+) left\))?:\s*" + _URL), self._on_processing),
            (re.compile(r"Crawling:\s*" + _URL), self._on_crawling),
            (re.compile(r"Analytics:.*?-\s*" + _URL), self._on_analytics),
            (re.compile(r"Worker(?: (\d+))?\]?\s*[-:]?\s*[Ff]inished"), self._on_worker_finished),
            (re.compile(r"Crawl Complete"), self._on_crawl_complete),
        ]

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------
    def feed(self, line: str) -> Optional[ProgressEvent]:
        """Map one narration line to an event, or None if unrecognized/duplicate."""
        line = (line or "").strip()
        if not line:
            return None
        if self._is_duplicate(line):
            return None

        for pattern, handler in self._table:
            match = pattern.search(line)
            if match:
                return handler(match)
        return None

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _is_duplicate(self, line: str) -> bool:
        now = self._clock()
        last = self._recent.get(line)
        self._recent[line] = now
        if len(self._recent) > 512:
            cutoff = now - self._dedup_window
            self._recent = {k: v for k, v in self._recent.items() if v >= cutoff}
        return last is not None and (now - last) < self._dedup_window

    def _crawl_progress(self) -> float:
        ratio = min(self.page_count / self.total_pages, 1.0)
        return DISCOVERY_PROGRESS + ratio * (CRAWL_CEILING - DISCOVERY_PROGRESS)

    def _event(self, status, phase, message, progress, **kwargs) -> ProgressEvent:
        progress = round(max(progress, self._last_progress), 1)
        self._last_progress = progress
        return ProgressEvent(
            session_id=self.session_id,
            status=status.value,
            phase=phase.value,
            message=message,
            progress=progress,
            **kwargs
        )

    # ------------------------------------------------------------
    # Pattern handlers
    # ------------------------------------------------------------
    def _on_discovery(self, match):
        # Only the first discovery line of a run sets the total
        if self.discovered:
            return None
        self.discovered = True
        found = int(match.group(1))
        if found > 0:
            self.total_pages = min(found, self.max_pages) if self.max_pages and self.max_pages > 0 else found
        return self._event(
            ProgressStatus.CRAWLING, Phase.DISCOVERY,
            f"Found {found} pages to crawl",
            DISCOVERY_PROGRESS,
            detailed_status="Discovering pages",
            page_count=self.page_count,
            total_pages=self.total_pages
        )

    def _on_processing(self, match):
        self.page_count = max(self.page_count + 1, int(match.group(1)))
        return self._event(
            ProgressStatus.CRAWLING, Phase.QUEUEING,
            f"Processing page {self.page_count}/{self.total_pages}",
            self._crawl_progress(),
            current_url=match.group(3),
            detailed_status="Queued for processing",
            page_count=self.page_count,
            total_pages=self.total_pages
        )

    def _on_crawling(self, match):
        return self._event(
            ProgressStatus.CRAWLING, Phase.DOWNLOADING,
            "Downloading page content...",
            self._crawl_progress(),
            current_url=match.group(1),
            detailed_status="Downloading",
            page_count=self.page_count,
            total_pages=self.total_pages
        )

    def _on_analytics(self, match):
        return self._event(
            ProgressStatus.CRAWLING, Phase.ANALYZING,
            "Analyzing page content...",
            self._crawl_progress(),
            current_url=match.group(1),
            detailed_status="Analyzing",
            page_count=self.page_count,
            total_pages=self.total_pages
        )

    def _on_worker_finished(self, match):
        worker = match.group(1)
        label = f"Worker {worker}" if worker else "Worker"
        return self._event(
            ProgressStatus.CRAWLING, Phase.QUEUEING,
            f"{label} finished",
            self._crawl_progress(),
            detailed_status="Worker finished",
            page_count=self.page_count,
            total_pages=self.total_pages
        )

    def _on_crawl_complete(self, match):
        return self._event(
            ProgressStatus.ANALYZING, Phase.ANALYZING,
            "Crawl complete, validating links...",
            CRAWL_CEILING,
            detailed_status="Crawl finished",
            page_count=self.page_count,
            total_pages=self.total_pages
        )

    def _on_external_start(self, match):
        return self._event(
            ProgressStatus.EXTERNAL_LINKS, Phase.EXTERNAL_VALIDATION,
            "Checking external links...",
            CRAWL_CEILING,
            detailed_status="Validating external links"
        )

    def _on_external_check(self, match):
        current = int(match.group(1))
        total = max(int(match.group(2)), 1)
        ratio = min(current / total, 1.0)
        return self._event(
            ProgressStatus.EXTERNAL_LINKS, Phase.EXTERNAL_VALIDATION,
            f"Checking external link {current}/{total}",
            CRAWL_CEILING + ratio * (EXTERNAL_CEILING - CRAWL_CEILING),
            current_url=match.group(3),
            detailed_status="Validating external link",
            page_count=current,
            total_pages=total
        )


class NarrationHandler(logging.Handler):
    """
    Logging bridge: every record reaching the engine logger is fed to the
    adapter, and resulting events are handed to `sink`.
    """

    def __init__(self, adapter: ProgressAdapter, sink: Callable[[ProgressEvent], None]):
        super().__init__(level=logging.DEBUG)
        self.adapter = adapter
        self.sink = sink

    def emit(self, record):
        try:
            for line in record.getMessage().splitlines():
                event = self.adapter.feed(line)
                if event is not None:
                    self.sink(event)
        except Exception:
            self.handleError(record)
