from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set
from state.models import CrawlStateSnapshot

class SnapshotStore(ABC):
    """
    Abstract interface for the per-run crawl state artifact.
    One artifact per run directory, named deterministically from the run id.
    """

    @abstractmethod
    def state_file_for(self, run_directory: Path) -> Path:
        """Path of the artifact belonging to a run directory."""
        pass

    @abstractmethod
    def save(self, run_directory: Path, state: CrawlStateSnapshot) -> Path:
        """Serialize the snapshot into the run directory. Returns the artifact path."""
        pass

    @abstractmethod
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
        page_data_store: Optional["PageDataStore"] = None
    ) -> bool:
        """
        Populate the given containers in place.
        Returns False when the artifact does not exist.
        Raises CorruptSnapshotError when it exists but cannot be read.
        """
        pass
