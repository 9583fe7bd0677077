"""
FILE DESCRIPTION: In-process crawl engine built on requests + BeautifulSoup.
KEY FUNCTIONS/CLASSES: SiteCrawlEngine, CrawlFrontier, extract_links

FLOW: Pick run directory (resume latest unfinished run or create a new one) ->
Seed queue -> N worker threads drain the frontier, fetching pages and collecting
internal/external/mailto/tel links -> periodic snapshot saves -> external link
checks on a thread pool -> final snapshot save.

All progress is narrated on the `crawler.engine` logger in the line formats the
progress adapter understands.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from crawler.core import (
    MAX_PARALLEL_CHECKS,
    MAX_PARALLEL_CRAWL,
    MAX_RETRIES,
    REQUEST_TIMEOUT,
)
from crawler.engine import CrawlEngine, engine_logger
from crawler.reaper import ResourceReaper
from crawler.url_utils import is_same_site, normalize_origin, normalize_url
from state.directory import AuditDirectoryManager
from state.models import CrawlStateSnapshot
from state.page_data import PageDataStore
from state.snapshot_store import CorruptSnapshotError, StateSnapshotStore

SAVE_STATE_EVERY = 5

NON_FETCHABLE_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico",
    ".zip", ".gz", ".mp4", ".mp3", ".css", ".js", ".xml",
)


def extract_links(html: str, page_url: str) -> Tuple[List[Tuple[str, str]], Dict[str, Any]]:
    """
    Parse a page. Returns ([(absolute_href, anchor_text)], page_data).
    Fragment-only and javascript: links are skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    links = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.startswith("#") or href.lower().startswith("javascript:"):
            continue
        if href.lower().startswith(("mailto:", "tel:")):
            links.append((href, a.get_text(strip=True)))
            continue
        links.append((urljoin(page_url, href), a.get_text(strip=True)))

    description = soup.find("meta", attrs={"name": "description"})
    page_data = {
        "title": soup.title.get_text(strip=True) if soup.title else "",
        "meta_description": description.get("content", "") if description else "",
        "h1": [h.get_text(strip=True) for h in soup.find_all("h1")],
        "word_count": len(soup.get_text(" ", strip=True).split()),
        "link_count": len(links),
    }
    return links, page_data


def _is_fetchable(url: str) -> bool:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False
    return not parsed.path.lower().endswith(NON_FETCHABLE_EXTENSIONS)


class CrawlFrontier:
    """
    Shared work queue over a CrawlStateSnapshot.
    One condition guards the snapshot, so saves never see a map mid-update.
    """

    def __init__(self, state: CrawlStateSnapshot, max_pages: int):
        self.state = state
        self.max_pages = max_pages
        self.cond = threading.Condition(threading.RLock())
        self.order = deque(sorted(state.queue))
        self.processed = 0
        self.active = 0

    def _has_room(self) -> bool:
        if self.max_pages <= 0:
            return True
        return len(self.state.visited) + len(self.state.queue) < self.max_pages

    def add(self, url: str) -> bool:
        with self.cond:
            if url in self.state.visited or url in self.state.queue or not self._has_room():
                return False
            self.state.queue.add(url)
            self.order.append(url)
            self.cond.notify()
            return True

    def next(self) -> Optional[Tuple[str, int, int]]:
        """(url, processed_count, remaining) or None when the crawl is done."""
        with self.cond:
            while True:
                if self.max_pages > 0 and self.processed >= self.max_pages:
                    return None
                while self.order and self.order[0] not in self.state.queue:
                    self.order.popleft()
                if self.order:
                    url = self.order.popleft()
                    self.state.queue.discard(url)
                    self.state.visited.add(url)
                    self.processed += 1
                    self.active += 1
                    return url, self.processed, len(self.state.queue)
                if self.active == 0:
                    self.cond.notify_all()
                    return None
                self.cond.wait(timeout=0.5)

    def done(self) -> None:
        with self.cond:
            self.active -= 1
            self.cond.notify_all()


class SiteCrawlEngine(CrawlEngine):

    def __init__(
        self,
        directory_manager: Optional[AuditDirectoryManager] = None,
        snapshot_store: Optional[StateSnapshotStore] = None,
        reaper: Optional[ResourceReaper] = None,
        max_workers: int = MAX_PARALLEL_CRAWL,
        max_checks: int = MAX_PARALLEL_CHECKS,
        timeout: int = REQUEST_TIMEOUT,
        retries: int = MAX_RETRIES
    ):
        self.directories = directory_manager or AuditDirectoryManager()
        self.snapshots = snapshot_store or StateSnapshotStore()
        self.reaper = reaper or ResourceReaper()
        self.max_workers = max(max_workers, 1)
        self.max_checks = max(max_checks, 1)
        self.timeout = timeout
        self.retries = retries

    # ------------------------------------------------------------
    # Run directory selection
    # ------------------------------------------------------------
    def _open_run(self, origin: str, force_new: bool):
        if not force_new:
            latest = self.directories.latest_run(origin)
            if latest is not None:
                try:
                    previous = self.snapshots.load_snapshot(self.snapshots.state_file_for(latest))
                except CorruptSnapshotError as e:
                    engine_logger.warning(f"[ENGINE] Ignoring unreadable snapshot in {latest}: {e}")
                    previous = None
                if previous is not None and previous.queue:
                    engine_logger.info(f"Resuming crawl from {latest.name} ({len(previous.queue)} queued)")
                    return latest, previous
        return self.directories.create_run(origin), CrawlStateSnapshot()

    def _save(self, run_dir, frontier: CrawlFrontier) -> None:
        with frontier.cond:
            self.snapshots.save(run_dir, frontier.state)

    # ------------------------------------------------------------
    # Page processing
    # ------------------------------------------------------------
    def _record_link(self, bucket: Dict, key: str, source: str, anchor: str = "") -> None:
        entry = bucket.setdefault(key, {"count": 0, "sources": [], "anchors": []})
        entry["count"] = entry.get("count", 0) + 1
        if source not in entry["sources"]:
            entry["sources"].append(source)
        if anchor and anchor not in entry["anchors"]:
            entry["anchors"].append(anchor)

    def _crawl_page(self, session, url, origin, frontier, page_store, pending_external):
        engine_logger.info(f"Crawling: {url}")
        state = frontier.state
        start = time.time()
        try:
            r = session.get(url, timeout=self.timeout, allow_redirects=True)
        except requests.exceptions.Timeout:
            with frontier.cond:
                state.bad_requests[url] = {"status": "TIMEOUT", "sources": []}
            return
        except requests.exceptions.RequestException as e:
            engine_logger.warning(f"[ENGINE] Fetch failed for {url}: {e}")
            with frontier.cond:
                state.bad_requests[url] = {"status": "FETCH_ERROR", "sources": []}
            return

        elapsed_ms = int((time.time() - start) * 1000)
        content_type = r.headers.get("Content-Type", "").lower()
        with frontier.cond:
            page_stats = state.stats.setdefault(url, {"count": 0, "sources": [], "anchors": []})
            page_stats.update({
                "status": r.status_code,
                "response_time_ms": elapsed_ms,
                "size": len(r.content),
                "content_type": content_type,
            })
            if r.status_code >= 400:
                entry = state.bad_requests.setdefault(url, {"sources": []})
                entry["status"] = r.status_code
                entry["sources"] = list(page_stats.get("sources", []))

        if r.status_code >= 400 or "text/html" not in content_type:
            return

        engine_logger.info(f"Analytics: parsing page - {url}")
        links, page_data = extract_links(r.text, url)
        page_data.update({"status": r.status_code, "response_time_ms": elapsed_ms, "size": len(r.content)})
        page_store.set(url, page_data)

        for href, anchor in links:
            lowered = href.lower()
            if lowered.startswith("mailto:"):
                with frontier.cond:
                    self._record_link(state.mailto_links, href, url)
                continue
            if lowered.startswith("tel:"):
                with frontier.cond:
                    self._record_link(state.tel_links, href, url)
                continue
            if not _is_fetchable(href):
                continue

            target = normalize_url(href)
            if is_same_site(origin, target):
                with frontier.cond:
                    self._record_link(state.stats, target, url, anchor)
                frontier.add(target)
            else:
                with frontier.cond:
                    pending_external.setdefault(target, url)

    def _discover(self, origin: str, frontier: CrawlFrontier) -> int:
        """
        Pages known before the workers start: visited + queued, plus the
        same-site links on the seed page for a fresh run.
        """
        state = frontier.state
        with frontier.cond:
            known = set(state.visited) | set(state.queue)
        if state.visited:
            return len(known)

        session = self.reaper.session()
        try:
            r = session.get(origin, timeout=self.timeout, allow_redirects=True)
        except requests.exceptions.RequestException as e:
            engine_logger.warning(f"[ENGINE] Discovery fetch failed for {origin}: {e}")
            return len(known)
        if r.status_code >= 400 or "text/html" not in r.headers.get("Content-Type", "").lower():
            return len(known)

        links, _ = extract_links(r.text, origin)
        for href, _anchor in links:
            if _is_fetchable(href):
                target = normalize_url(href)
                if is_same_site(origin, target):
                    known.add(target)
        return len(known)

    def _worker(self, worker_id, run_dir, origin, frontier, page_store, pending_external):
        session = self.reaper.session()
        processed = 0
        started = time.time()
        while True:
            item = frontier.next()
            if item is None:
                break
            url, count, remaining = item
            processed += 1
            left = f" ({remaining} left)" if remaining > 0 else ""
            engine_logger.info(f"[Worker {worker_id}] Processing {count}{left}: {url}")
            try:
                self._crawl_page(session, url, origin, frontier, page_store, pending_external)
            except Exception as e:
                engine_logger.error(f"[ENGINE] Error processing {url}: {e}")
                with frontier.cond:
                    frontier.state.bad_requests[url] = {"status": "PROCESSING_ERROR", "sources": [url]}
            finally:
                frontier.done()

            if count % SAVE_STATE_EVERY == 0:
                self._save(run_dir, frontier)

        elapsed = time.time() - started
        engine_logger.info(f"[Worker {worker_id}] Finished - processed {processed} pages in {elapsed:.1f}s")

    # ------------------------------------------------------------
    # External link validation
    # ------------------------------------------------------------
    def _check_external(self, session, href: str) -> Any:
        """HTTP status for an external link, 'TIMEOUT' or 'FETCH_ERROR'."""
        status: Any = "FETCH_ERROR"
        for attempt in range(self.retries + 1):
            try:
                r = session.head(href, timeout=self.timeout, allow_redirects=True)
                if r.status_code in (405, 501):
                    r = session.get(href, timeout=self.timeout, allow_redirects=True, stream=True)
                    r.close()
                return r.status_code
            except requests.exceptions.Timeout:
                status = "TIMEOUT"
            except requests.exceptions.RequestException:
                status = "FETCH_ERROR"
        return status

    def _run_external_checks(self, frontier: CrawlFrontier, pending: Dict[str, str], limit: int) -> None:
        links = list(pending.items())
        total = len(links)
        if limit > 0 and total > limit:
            engine_logger.warning(f"External link limit applied: checking {limit} out of {total} found links")
            links = links[:limit]
        engine_logger.info(f"Checking External Links ({len(links)} links to check)")
        if not links:
            return

        counter = {"n": 0}
        counter_lock = threading.Lock()
        local = threading.local()

        def check(item):
            href, source = item
            if not hasattr(local, "session"):
                local.session = self.reaper.session()
            with counter_lock:
                counter["n"] += 1
                n = counter["n"]
            engine_logger.info(f"External Link Check ({n}/{len(links)}): {href}")
            status = self._check_external(local.session, href)
            with frontier.cond:
                entry = frontier.state.external_links.setdefault(href, {"sources": []})
                entry["status"] = status
                if source not in entry["sources"]:
                    entry["sources"].append(source)

        with ThreadPoolExecutor(max_workers=self.max_checks) as pool:
            list(pool.map(check, links))

        engine_logger.info(f"External link validation completed: {len(links)}/{total} links checked")

    # ------------------------------------------------------------
    # CrawlEngine
    # ------------------------------------------------------------
    def run(self, origin_url, max_pages, force_new, user_limits):
        origin = normalize_url(normalize_origin(origin_url))
        run_dir, state = self._open_run(origin, force_new)
        if not state.queue and not state.visited:
            state.queue.add(origin)

        frontier = CrawlFrontier(state, max_pages)
        page_store = PageDataStore(run_dir)
        pending_external: Dict[str, str] = {}
        limits = user_limits or {}

        engine_logger.info(
            f"Starting crawl with {len(state.queue)} page(s) in queue "
            f"(limit: {max_pages if max_pages > 0 else 'unlimited'})"
        )
        engine_logger.info(f"Found {self._discover(origin, frontier)} pages to crawl")
        workers = [
            threading.Thread(
                target=self._worker,
                args=(i + 1, run_dir, origin, frontier, page_store, pending_external),
                name=f"crawl-worker-{i + 1}",
                daemon=True,
            )
            for i in range(self.max_workers)
        ]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        engine_logger.info(f"--- Crawl Complete: Processed {frontier.processed} internal links ---")
        self._save(run_dir, frontier)

        self._run_external_checks(frontier, pending_external, int(limits.get("max_external_links", -1)))
        self._save(run_dir, frontier)

        return {
            "run_directory": str(run_dir),
            "pages_crawled": frontier.processed,
            "page_data_entries": len(page_store),
        }
