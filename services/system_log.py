# services/system_log.py
import json
import logging
from typing import Any, Dict, Optional

from db_mysql import execute, fetch_all, fetch_value

log = logging.getLogger(__name__)

LEVELS = ("debug", "info", "warning", "error")


def log_system_action(action: str, table_name: Optional[str] = None, record_id: Optional[str] = None,
                      user_id: Optional[str] = None, message: str = "", level: str = "info",
                      context: Optional[Dict[str, Any]] = None) -> bool:
    """Write an audit row. Never raises: a failed log must not break the caller."""
    if level not in LEVELS:
        level = "info"
    try:
        execute(
            """
            INSERT INTO system_logs (action, table_name, record_id, user_id, message, level, context)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                action,
                table_name,
                record_id,
                user_id,
                message,
                level,
                json.dumps(context, default=str, ensure_ascii=False) if context else None,
            ),
        )
        return True
    except Exception as e:
        log.warning(f"⚠️ Audit write failed ({action}): {e}")
        return False


def log_error(action: str, error: Exception, **context) -> bool:
    return log_system_action(action, message=str(error), level="error", context=context or None)


def recent_logs(limit: int = 100, offset: int = 0, level: Optional[str] = None, action: Optional[str] = None):
    where, params = [], []
    if level:
        where.append("level = %s")
        params.append(level)
    if action:
        where.append("action = %s")
        params.append(action)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    rows = fetch_all(
        f"""
        SELECT id, action, table_name, record_id, user_id, message, level, context, created_at
        FROM system_logs {clause}
        ORDER BY created_at DESC, id DESC
        LIMIT %s OFFSET %s
        """,
        tuple(params) + (limit, offset),
    )
    total = fetch_value(f"SELECT COUNT(*) AS c FROM system_logs {clause}", tuple(params))
    for r in rows:
        if isinstance(r.get("context"), str):
            try:
                r["context"] = json.loads(r["context"])
            except ValueError:
                pass
    return rows, int(total)
