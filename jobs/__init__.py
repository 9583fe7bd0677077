from jobs.models import AuditJob, JobStatus, RUN_AUDIT
from jobs.sessions import SessionRegistry
from jobs.storage import AuditRecordStore, InMemoryAuditRecordStore, TierLimitsProvider, StaticTierLimitsProvider
from jobs.queue import JobQueue, NotConfiguredError, InvalidJobError
