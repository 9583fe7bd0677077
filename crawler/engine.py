import json
import logging
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from crawler.core import AUDITS_DIR

# Narration stream: everything logged here is progress text for the executor
engine_logger = logging.getLogger("crawler.engine")


class CrawlEngineError(Exception):
    """Raised when the crawl engine itself fails."""
    pass


class CrawlEngine(ABC):
    """
    Contract the executor requires from a crawl engine.
    Contractual Requirements for Implementers:
    - MUST narrate progress as text lines on the `crawler.engine` logger.
    - MUST leave a compressed snapshot in the latest run directory of the
      domain (audits/<main-domain>/audit-<run_id>/) before returning.
    - MAY return a dict of extra crawl outcome fields.
    """

    @abstractmethod
    def run(
        self,
        origin_url: str,
        max_pages: int,
        force_new: bool,
        user_limits: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        pass


class SubprocessCrawlEngine(CrawlEngine):
    """
    Runs an external crawler command and forwards its stdout, line by line,
    into the narration stream. stderr is merged into stdout.

    Command arguments may use {origin}, {max_pages}, {force_new} and
    {audits_dir} placeholders. User limits are passed as JSON in the
    AUDIT_USER_LIMITS environment variable.
    """

    def __init__(self, command: Sequence[str], audits_dir=None, cwd: Optional[str] = None):
        if not command:
            raise ValueError("Crawl engine command is required")
        self.command = list(command)
        self.audits_dir = str(audits_dir or AUDITS_DIR)
        self.cwd = cwd
        self.process: Optional[subprocess.Popen] = None

    def build_command(self, origin_url: str, max_pages: int, force_new: bool) -> List[str]:
        values = {
            "origin": origin_url,
            "max_pages": max_pages,
            "force_new": "true" if force_new else "false",
            "audits_dir": self.audits_dir,
        }
        cmd = [part.format(**values) for part in self.command]
        # Force unbuffered output for python children so lines stream live
        if os.path.basename(cmd[0]).startswith("python") and "-u" not in cmd[1:2]:
            cmd.insert(1, "-u")
        return cmd

    def run(self, origin_url, max_pages, force_new, user_limits):
        cmd = self.build_command(origin_url, max_pages, force_new)
        env = dict(os.environ)
        env.update({
            "AUDITS_DIR": self.audits_dir,
            "AUDIT_USER_LIMITS": json.dumps(user_limits or {}),
            "SKIP_HTML_REPORT": "true",
            "PYTHONUNBUFFERED": "1",
        })

        engine_logger.info(f"[ENGINE] Command: {' '.join(cmd)}")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.cwd,
                env=env,
            )
        except OSError as e:
            raise CrawlEngineError(f"Failed to start crawl engine: {e}") from e

        try:
            for line in self.process.stdout:
                line = line.rstrip("\r\n")
                if line:
                    engine_logger.info(line)
            returncode = self.process.wait()
        finally:
            if self.process.poll() is None:
                self.process.kill()
                self.process.wait()
            self.process.stdout.close()

        if returncode != 0:
            raise CrawlEngineError(f"Crawl engine exited with status {returncode}")
        return {"engine_exit_code": returncode}


def default_engine_command() -> Optional[List[str]]:
    """CRAWL_ENGINE_CMD env var, split on whitespace, or None."""
    raw = os.getenv("CRAWL_ENGINE_CMD")
    return raw.split() if raw else None


def python_module_command(module: str) -> List[str]:
    """Command running a python module as the crawl engine in a child process."""
    return [sys.executable, "-m", module, "{origin}", "{max_pages}", "{force_new}"]
