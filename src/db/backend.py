"""
Backend query capability: (sql, bound parameters) -> rows.

Statements arrive with ``@name`` placeholders (BigQuery style).  The
SQLAlchemy backend rewrites them to ``:name`` binds, wraps the statement
in text() and lets the dialect render its own paramstyle, so user values
never reach the SQL string.
"""
from __future__ import annotations

import datetime
import decimal
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from sqlalchemy import bindparam, text

from src.db.connection import readonly_connection
from src.core.logging import get_logger

logger = get_logger(__name__)

# @name outside of quoted literals / backtick identifiers
_PLACEHOLDER_RE = re.compile(r"('(?:[^'\\]|\\.)*'|`[^`]*`)|@([A-Za-z_][A-Za-z0-9_]*)")


@dataclass
class BackendResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    bytes_processed: int | None = None


QueryBackend = Callable[[str, dict[str, Any]], Union[BackendResult, list]]


def to_named_binds(sql: str) -> str:
    """Rewrite ``@name`` placeholders to SQLAlchemy ``:name`` binds."""
    def _swap(m: re.Match) -> str:
        if m.group(1) is not None:
            return m.group(1)
        return f":{m.group(2)}"

    return _PLACEHOLDER_RE.sub(_swap, sql)


def placeholders(sql: str) -> set[str]:
    return {m.group(2) for m in _PLACEHOLDER_RE.finditer(sql) if m.group(2)}


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    return val


def _bytes_processed(cursor: Any) -> int | None:
    job = getattr(cursor, "query_job", None) or getattr(cursor, "_query_job", None)
    value = getattr(job, "total_bytes_processed", None)
    return int(value) if value is not None else None


class SqlAlchemyBackend:
    """Runs statements on the shared engine and returns serialisable rows.

    Connections in use are tracked per worker thread so a timed-out
    statement can be aborted with ``cancel``.  Only drivers whose DB-API
    connection has a ``cancel()`` method (psycopg, psycopg2) support it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._inflight: dict[int, Any] = {}

    def cancel(self, thread_id: int) -> bool:
        with self._lock:
            conn = self._inflight.get(thread_id)
        if conn is None:
            return False
        driver = conn.connection.driver_connection
        if not hasattr(driver, "cancel"):
            logger.warning("Driver %s cannot cancel a running statement", type(driver).__name__)
            return False
        driver.cancel()
        logger.info("Cancelled running statement on thread %d", thread_id)
        return True

    def __call__(self, sql: str, params: dict[str, Any]) -> BackendResult:
        stmt = text(to_named_binds(sql))
        expanding = [bindparam(k, expanding=True) for k, v in params.items() if isinstance(v, (list, tuple))]
        if expanding:
            stmt = stmt.bindparams(*expanding)

        ident = threading.get_ident()
        with readonly_connection() as conn:
            with self._lock:
                self._inflight[ident] = conn
            try:
                result = conn.execute(stmt, params)
                columns = list(result.keys())
                scanned = _bytes_processed(getattr(result, "cursor", None))
                rows = [
                    {col: _serialise_value(val) for col, val in zip(columns, row)}
                    for row in result.fetchall()
                ]
            finally:
                with self._lock:
                    self._inflight.pop(ident, None)

        logger.info("Backend returned %d rows", len(rows))
        return BackendResult(rows=rows, bytes_processed=scanned)
