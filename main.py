"""
FILE DESCRIPTION: Command line entry point for site audits.
KEY FUNCTIONS/CLASSES: build_queue, cmd_run, cmd_list, cmd_delete, cmd_cleanup, cmd_stats

Usage:
    python main.py run example.com --max-pages 25
    python main.py list example.com
    python main.py stats example.com
    python main.py delete example.com
    python main.py cleanup example.com --keep 3
"""

import argparse
import logging
import sys
import uuid

from tabulate import tabulate

from crawler.core import DEFAULT_MAX_PAGES, MAX_PAGES_LIMIT
from crawler.engine import SubprocessCrawlEngine, default_engine_command
from crawler.reaper import ResourceReaper
from crawler.site_crawler import SiteCrawlEngine
from executor.engine import AuditExecutor
from jobs.models import RUN_AUDIT
from jobs.queue import JobQueue
from jobs.sessions import SessionRegistry
from jobs.storage import InMemoryAuditRecordStore, StaticTierLimitsProvider
from state.directory import AuditDirectoryManager
from state.page_data import PageDataStore
from state.snapshot_store import CorruptSnapshotError, StateSnapshotStore

logger = logging.getLogger("crawler")


def build_queue(args, directories: AuditDirectoryManager):
    """Wire engine -> executor -> job queue for one CLI invocation."""
    reaper = ResourceReaper()
    command = args.engine_cmd.split() if args.engine_cmd else default_engine_command()
    if command:
        engine = SubprocessCrawlEngine(command, audits_dir=directories.root)
    else:
        engine = SiteCrawlEngine(directory_manager=directories, reaper=reaper)

    executor = AuditExecutor(
        engine,
        directory_manager=directories,
        reaper=reaper,
        cleanup_run=not args.keep_run,
    )

    if args.mysql:
        from jobs.mysql_storage import MySQLAuditRecordStore, connect
        records = MySQLAuditRecordStore(connect())
    else:
        records = InMemoryAuditRecordStore()

    sessions = SessionRegistry()
    queue = JobQueue()
    queue.inject_dependencies(executor, sessions, records, StaticTierLimitsProvider())
    return queue, executor, sessions


def cmd_run(args) -> int:
    directories = AuditDirectoryManager(args.audits_dir)
    queue, executor, sessions = build_queue(args, directories)
    session_id = uuid.uuid4().hex
    channel = executor.open_channel(session_id)

    job_id = queue.add(RUN_AUDIT, {
        "url": args.domain,
        "session_id": session_id,
        "max_pages": args.max_pages,
        "force_new": args.force_new,
        "user_limits": {"is_registered": args.registered},
    })

    try:
        while True:
            event = channel.get(timeout=0.5)
            if event is not None:
                url = f" {event.current_url}" if event.current_url else ""
                print(f"[{event.progress:5.1f}%] {event.status:<15} {event.message}{url}")
                continue
            job = queue.get_job(job_id)
            if job is None or job.is_finished:
                break
    except KeyboardInterrupt:
        print("\nInterrupted; the running audit finishes in the background.")
        return 130
    finally:
        executor.close_channel(channel)
        queue.shutdown(wait=False)

    session = sessions.get(session_id) or {}
    if session.get("status") != "completed":
        print(f"\nAudit failed: {session.get('error', 'unknown error')}")
        return 1

    summary = (session.get("result") or {}).get("summary", {})
    print()
    print(tabulate(sorted(summary.items()), headers=["Metric", "Value"], tablefmt="grid"))
    issues = (session.get("result") or {}).get("top_issues", [])
    if issues:
        print("\nTOP ISSUES:")
        print(tabulate(
            [[i["type"], i["severity"], i["status"], i["url"]] for i in issues],
            headers=["Type", "Severity", "Status", "URL"],
            tablefmt="simple",
        ))
    return 0


def cmd_list(args) -> int:
    directories = AuditDirectoryManager(args.audits_dir)
    snapshots = StateSnapshotStore()
    rows = []
    for run_dir in directories.list_runs(args.domain):
        try:
            snapshot = snapshots.load_snapshot(snapshots.state_file_for(run_dir))
        except CorruptSnapshotError:
            rows.append([run_dir.name, "corrupt", "-", "-"])
            continue
        if snapshot is None:
            rows.append([run_dir.name, "missing", "-", "-"])
        else:
            rows.append([run_dir.name, "ok", len(snapshot.visited), len(snapshot.queue)])

    if not rows:
        print(f"No audit runs for {args.domain}")
        return 0
    print(tabulate(rows, headers=["Run", "Snapshot", "Visited", "Queued"], tablefmt="grid"))
    return 0


def cmd_delete(args) -> int:
    removed = AuditDirectoryManager(args.audits_dir).delete_run(args.domain)
    print(f"Deleted {removed}" if removed else f"No audit runs for {args.domain}")
    return 0


def cmd_cleanup(args) -> int:
    removed = AuditDirectoryManager(args.audits_dir).cleanup_old_runs(args.domain, keep=args.keep)
    print(f"Removed {len(removed)} old runs for {args.domain}")
    return 0


def cmd_stats(args) -> int:
    latest = AuditDirectoryManager(args.audits_dir).latest_run(args.domain)
    if latest is None:
        print(f"No audit runs for {args.domain}")
        return 1

    store = PageDataStore(latest)
    if args.migrate:
        migrated = store.migrate_to_compressed()
        print(f"Migrated {migrated['migrated']} entries, saved {migrated['total_saved']} bytes ({migrated['errors']} errors)")

    stats = store.compression_stats()
    print(f"Run: {latest.name}  entries: {store.size}")
    print(tabulate(sorted(stats.items()), headers=["Metric", "Value"], tablefmt="grid"))
    return 0


def _max_pages(value: str) -> int:
    pages = int(value)
    if not 1 <= pages <= MAX_PAGES_LIMIT:
        raise argparse.ArgumentTypeError(f"must be between 1 and {MAX_PAGES_LIMIT}")
    return pages


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Site Audit CLI")
    parser.add_argument("--audits-dir", default=None, help="Root folder for audit runs (default: AUDITS_DIR)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Crawl and audit a domain")
    run.add_argument("domain")
    run.add_argument("--max-pages", type=_max_pages, default=DEFAULT_MAX_PAGES)
    run.add_argument("--force-new", action="store_true", help="Ignore any resumable run")
    run.add_argument("--keep-run", action="store_true", help="Keep the run directory after the audit")
    run.add_argument("--engine-cmd", default=None, help="External crawler command (narration on stdout)")
    run.add_argument("--registered", action="store_true", help="Apply registered-user limits")
    run.add_argument("--mysql", action="store_true", help="Store audit records in MySQL (DB_CONFIG)")
    run.set_defaults(func=cmd_run)

    for name, func, help_text in (
        ("list", cmd_list, "List audit runs for a domain"),
        ("delete", cmd_delete, "Delete the latest audit run for a domain"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("domain")
        p.set_defaults(func=func)

    cleanup = sub.add_parser("cleanup", help="Delete all but the newest runs")
    cleanup.add_argument("domain")
    cleanup.add_argument("--keep", type=int, default=10)
    cleanup.set_defaults(func=cmd_cleanup)

    stats = sub.add_parser("stats", help="Page data compression stats of the latest run")
    stats.add_argument("domain")
    stats.add_argument("--migrate", action="store_true", help="Compress legacy plain entries first")
    stats.set_defaults(func=cmd_stats)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
