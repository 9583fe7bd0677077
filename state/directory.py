import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from crawler.core import AUDITS_DIR
from crawler.url_utils import domain_folder

logger = logging.getLogger("crawler.state")

RUN_PREFIX = "audit-"
RUN_ID_FORMAT = "%Y-%m-%d-%H-%M-%S"


def new_run_id(now: Optional[datetime] = None) -> str:
    """Timestamp-ordered run id; lexicographic order == chronological order."""
    now = now or datetime.now(timezone.utc)
    return now.strftime(RUN_ID_FORMAT)


class AuditDirectoryManager:
    """
    Owns the on-disk layout: <root>/<main-domain>/audit-<run_id>/.
    By convention the lexicographically greatest audit-* folder is the current run.
    A run directory is owned by exactly one audit and removed as a unit.
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else Path(AUDITS_DIR)

    def domain_dir(self, domain: str) -> Path:
        return self.root / domain_folder(domain)

    def list_runs(self, domain: str) -> List[Path]:
        """audit-* run directories for a domain, newest first."""
        base = self.domain_dir(domain)
        if not base.is_dir():
            return []
        runs = [p for p in base.iterdir() if p.is_dir() and p.name.startswith(RUN_PREFIX)]
        return sorted(runs, key=lambda p: p.name, reverse=True)

    def latest_run(self, domain: str) -> Optional[Path]:
        runs = self.list_runs(domain)
        return runs[0] if runs else None

    def create_run(self, domain: str, run_id: Optional[str] = None) -> Path:
        run_dir = self.domain_dir(domain) / f"{RUN_PREFIX}{run_id or new_run_id()}"
        run_dir.mkdir(parents=True, exist_ok=False)
        logger.info(f"[AUDIT-DIR] Created run directory {run_dir}")
        return run_dir

    def _remove_domain_if_empty(self, domain: str) -> None:
        base = self.domain_dir(domain)
        if base.is_dir() and not self.list_runs(domain):
            shutil.rmtree(base)
            logger.info(f"[AUDIT-DIR] Removed empty domain directory {base}")

    def delete_run(self, domain: str) -> Optional[Path]:
        """
        Recursively remove the latest run directory, then the domain directory
        if no audit-* folders remain. Missing domain directory is not an error.
        Returns the removed run path, or None.
        """
        base = self.domain_dir(domain)
        if not base.is_dir():
            logger.info(f"[AUDIT-DIR] Nothing to delete, {base} does not exist")
            return None

        latest = self.latest_run(domain)
        if latest is None:
            logger.info(f"[AUDIT-DIR] No audit-* directories under {base}")
            self._remove_domain_if_empty(domain)
            return None

        shutil.rmtree(latest)
        logger.info(f"[AUDIT-DIR] Deleted run directory {latest}")
        self._remove_domain_if_empty(domain)
        return latest

    def cleanup_old_runs(self, domain: str, keep: int = 10) -> List[Path]:
        """Delete all but the newest `keep` runs. Returns the removed paths."""
        removed = []
        for run_dir in self.list_runs(domain)[max(keep, 0):]:
            shutil.rmtree(run_dir)
            removed.append(run_dir)
        if removed:
            logger.info(f"[AUDIT-DIR] Cleaned up {len(removed)} old runs for {domain}")
        self._remove_domain_if_empty(domain)
        return removed
