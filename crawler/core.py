"""
FILE DESCRIPTION: Foundational module for global configuration and logging.
KEY FUNCTIONS/CLASSES: setup_logger, CompanyFormatter, configuration constants
"""

import logging
import sys
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

# === CONFIGURATION SECTION ===

# Load .env at the beginning of core
load_dotenv(Path(__file__).resolve().parents[1] / '.env')

# Root folder holding audits/<main-domain>/audit-<run_id>/
AUDITS_DIR = Path(os.getenv("AUDITS_DIR", Path.cwd() / "audits"))

# Crawl limits
DEFAULT_MAX_PAGES = int(os.getenv("DEFAULT_MAX_PAGES", 50))
MAX_PAGES_LIMIT = 1000
MAX_PARALLEL_CRAWL = int(os.getenv("MAX_PARALLEL_CRAWL", 4))
MAX_PARALLEL_CHECKS = int(os.getenv("MAX_PARALLEL_CHECKS", 8))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", 2))
UNREGISTERED_MAX_EXTERNAL_LINKS = 10

# Network timeout for HTTP requests (seconds)
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", 15))
USER_AGENT = "Mozilla/5.0 (compatible; SiteAuditBot/1.0; +https://example.com/bot)"

# Snapshot handoff between the crawl engine and the executor
SETTLE_DELAY_SECONDS = float(os.getenv("SETTLE_DELAY_SECONDS", 5))
SNAPSHOT_LOAD_ATTEMPTS = 5
SNAPSHOT_BACKOFF_SECONDS = float(os.getenv("SNAPSHOT_BACKOFF_SECONDS", 1))

# Progress reporting
PROGRESS_DEDUP_WINDOW = float(os.getenv("PROGRESS_DEDUP_WINDOW", 0.5))
PROGRESS_CHANNEL_SIZE = int(os.getenv("PROGRESS_CHANNEL_SIZE", 256))

# Job scheduling
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", 1))
CACHE_MAX_AGE_HOURS = float(os.getenv("CACHE_MAX_AGE_HOURS", 24))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 60 * 60))

# Durable audit record storage
DB_CONFIG = {
    "host": os.getenv("DB_HOST", "localhost"),
    "port": int(os.getenv("DB_PORT", 3306)),
    "user": os.getenv("DB_USER", "root"),
    "password": os.getenv("DB_PASSWORD", ""),
    "database": os.getenv("DB_NAME", "auditdb"),
    "charset": "utf8mb4",
    "autocommit": False,
}


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', 'root')
        return f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"

def setup_logger(name="crawler", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    if name != "crawler":
        logger.propagate = True
        setup_logger("crawler", log_file=log_file, level=level)
        return logger

    formatter = CompanyFormatter()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (optional)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger

# Global logger instance
logger = setup_logger(log_file=os.getenv("LOG_FILE"))
