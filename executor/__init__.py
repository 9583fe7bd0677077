from crawler.engine import CrawlEngineError
from executor.engine import (
    AuditExecutor,
    AuditError,
    ConcurrencyError,
    SnapshotLoadError,
    CleanupError,
    resolve_user_limits,
)
from executor.report import generate_simple_report, generate_full_report, extract_top_issues
