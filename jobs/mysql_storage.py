import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pymysql

from crawler.core import DB_CONFIG
from jobs.storage import AuditRecordStore

logger = logging.getLogger("crawler.jobs")

# Columns update_status may touch besides status
UPDATABLE_COLUMNS = {
    "report_data", "score", "duration_ms", "pages_scanned",
    "external_links_checked", "error_message",
}

SELECT_COLUMNS = """
    id, user_id, url, type, config, status, report_data, score,
    duration_ms, pages_scanned, external_links_checked, error_message, created_at
"""


def connect(config: Optional[Dict[str, Any]] = None):
    """Open a pymysql connection from DB_CONFIG (or an override)."""
    return pymysql.connect(**(config or DB_CONFIG))


def _loads(value):
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class MySQLAuditRecordStore(AuditRecordStore):
    """
    MySQL implementation of AuditRecordStore.
    JSON columns (config, report_data) are stored as serialized text.
    """

    def __init__(self, connection_pool):
        self._pool = connection_pool

    def _row_to_record(self, row) -> Dict[str, Any]:
        return {
            "id": row[0],
            "user_id": row[1],
            "url": row[2],
            "type": row[3],
            "config": _loads(row[4]) or {},
            "status": row[5],
            "report_data": _loads(row[6]),
            "score": row[7],
            "duration_ms": row[8],
            "pages_scanned": row[9],
            "external_links_checked": row[10],
            "error_message": row[11],
            "created_at": row[12],
        }

    def create(self, url, report_type, config, user_id=None):
        sql = """
            INSERT INTO audits (user_id, url, type, config, status, created_at)
            VALUES (%s, %s, %s, %s, 'running', %s)
        """
        created_at = datetime.now(timezone.utc).replace(tzinfo=None)
        with self._pool.cursor() as cursor:
            cursor.execute(sql, (user_id, url, report_type, json.dumps(config or {}), created_at))
            audit_id = cursor.lastrowid
            self._pool.commit()
        return {
            "id": audit_id,
            "user_id": user_id,
            "url": url,
            "type": report_type,
            "config": dict(config or {}),
            "status": "running",
            "report_data": None,
            "created_at": created_at,
        }

    def update_status(self, audit_id, status, fields=None):
        fields = dict(fields or {})
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown audit columns: {', '.join(sorted(unknown))}")

        assignments = ["status = %s"]
        params = [status]
        for column, value in fields.items():
            assignments.append(f"{column} = %s")
            params.append(json.dumps(value) if isinstance(value, (dict, list)) else value)
        params.append(audit_id)
        sql = f"UPDATE audits SET {', '.join(assignments)} WHERE id = %s"

        with self._pool.cursor() as cursor:
            try:
                self._pool.begin()
                affected = cursor.execute(sql, tuple(params))
                if affected == 0:
                    self._pool.rollback()
                    raise KeyError(f"Audit record {audit_id} not found")
                self._pool.commit()
            except Exception as e:
                self._pool.rollback()
                if isinstance(e, KeyError):
                    raise
                raise RuntimeError(f"Failed to update audit {audit_id}: {str(e)}") from e

    def find_most_recent_by_domain(self, url):
        sql = f"""
            SELECT {SELECT_COLUMNS}
            FROM audits
            WHERE url = %s AND status = 'completed' AND report_data IS NOT NULL
            ORDER BY created_at DESC
            LIMIT 1
        """
        with self._pool.cursor() as cursor:
            cursor.execute(sql, (url,))
            row = cursor.fetchone()
        if not row:
            return None
        try:
            return self._row_to_record(row)
        except ValueError as e:
            logger.warning(f"[DB] Skipping audit {row[0]} with unreadable JSON: {e}")
            return None
