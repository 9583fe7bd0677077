from state.models import CrawlStateSnapshot, SCHEMA_VERSION
from state.storage import SnapshotStore
from state.snapshot_store import StateSnapshotStore, StateError, CorruptSnapshotError
from state.page_data import PageDataStore
from state.directory import AuditDirectoryManager, new_run_id
