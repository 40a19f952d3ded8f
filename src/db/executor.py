"""
Query executor with corrective retries.

``QueryExecutor.execute_query`` never raises.  Each call:
  1. Checks every ``@name`` placeholder has a bound value
  2. Serves repeated (sql, parameters) pairs from a TTL cache
  3. Runs the backend on a worker thread, bounded by a timeout
  4. Classifies failures: fatal (permissions, missing table) returns at once,
     recoverable (bad predicate, type mismatch, timeout) is rewritten by the
     corrector and retried up to ``max_retries`` times
  5. Returns an ExecutionResult carrying rows or the last error, plus
     elapsed time, bytes scanned and the retry count
"""
from __future__ import annotations

import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable

from src.core.cache import TTLCache
from src.core.config import get_settings
from src.core.logging import get_logger, summarise
from src.core.utils import timer
from src.db.backend import BackendResult, QueryBackend, SqlAlchemyBackend, placeholders

logger = get_logger(__name__)

Corrector = Callable[[str, str], "str | None"]

_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="query")

_FATAL_RE = re.compile(
    r"permission|access denied|forbidden|not authori[sz]ed|unauthori[sz]ed|\b403\b|"
    r"not found: (?:table|dataset|project)|relation \S+ does not exist|"
    r"table \S+ (?:was )?not found|no such table|credentials",
    re.IGNORECASE,
)
_NOT_FOUND_RE = re.compile(r"not found|does not exist|no such table", re.IGNORECASE)
_PERMISSION_RE = re.compile(r"permission|access denied|forbidden|authori[sz]ed|403|credentials", re.IGNORECASE)


# ── Result types ─────────────────────────────────────────

@dataclass
class ExecutionError:
    message: str
    details: str | None = None
    recoverable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "details": self.details, "recoverable": self.recoverable}


@dataclass
class ExecutionMetadata:
    execution_time_ms: int = 0
    bytes_processed: int | None = None
    retry_count: int = 0
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_time_ms": self.execution_time_ms,
            "bytes_processed": self.bytes_processed,
            "retry_count": self.retry_count,
            "cached": self.cached,
        }


@dataclass
class ExecutionResult:
    success: bool
    data: list[dict[str, Any]] | None = None
    error: ExecutionError | None = None
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)
    sql: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
            "metadata": self.metadata.to_dict(),
            "sql": self.sql,
        }


# ── Classification ───────────────────────────────────────

def classify_error(message: str) -> ExecutionError:
    """Split a backend failure into fatal / recoverable, with a remediation hint."""
    if _FATAL_RE.search(message):
        if _PERMISSION_RE.search(message):
            hint = "Check that your credentials have read access to the dataset."
        elif _NOT_FOUND_RE.search(message):
            hint = "Verify the project, dataset and table mapped for this session."
        else:
            hint = "Check the connection configuration."
        return ExecutionError(message=message, details=hint, recoverable=False)
    if "timed out" in message.lower() or "timeout" in message.lower():
        return ExecutionError(
            message=message,
            details="Try reducing the date range or adding filters.",
            recoverable=True,
        )
    return ExecutionError(message=message, details="Check column names and data types.", recoverable=True)


# ── Executor ─────────────────────────────────────────────

class QueryExecutor:
    """Runs statements against a backend with bounded corrective retries.

    Parameters
    ----------
    backend : callable, optional
        ``(sql, params) -> BackendResult | list[dict]``.  Defaults to the
        shared SQLAlchemy engine.
    corrector : callable, optional
        ``(sql, error_message) -> rewritten sql | None``.  Without one,
        recoverable failures are retried unchanged.
    max_retries, timeout_ms : int, optional
        Default to settings.  On timeout a backend exposing
        ``cancel(thread_id)`` is asked to abort the statement; otherwise the
        call keeps its pool worker until the database returns.
    cache : TTLCache | None
        Result cache; pass ``None`` to disable.
    """

    def __init__(
        self,
        backend: QueryBackend | None = None,
        corrector: Corrector | None = None,
        max_retries: int | None = None,
        timeout_ms: int | None = None,
        cache: TTLCache | None = None,
    ):
        settings = get_settings()
        self.backend = backend or SqlAlchemyBackend()
        self.corrector = corrector
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.timeout_ms = settings.query_timeout_ms if timeout_ms is None else timeout_ms
        self.cache = cache

    def execute_query(self, sql: str, parameters: dict[str, Any] | None = None) -> ExecutionResult:
        params = dict(parameters or {})
        logger.info("Executing SQL (%d chars, %d params)", len(sql), len(params))

        missing = sorted(placeholders(sql) - params.keys())
        if missing:
            return ExecutionResult(
                success=False,
                error=ExecutionError(
                    message=f"Missing values for query parameters: {', '.join(missing)}",
                    details="Every @parameter in the statement needs a bound value.",
                ),
                sql=sql,
            )

        cache_key = TTLCache.make_key(sql, params) if self.cache is not None else None
        if cache_key is not None:
            hit = self.cache.get(cache_key)
            if hit is not None:
                logger.info("Result cache HIT (%d rows)", len(hit.rows))
                return ExecutionResult(
                    success=True,
                    data=list(hit.rows),
                    metadata=ExecutionMetadata(bytes_processed=hit.bytes_processed, cached=True),
                    sql=sql,
                )

        current = sql
        retries = 0
        with timer() as t:
            while True:
                outcome, error = self._attempt(current, params)
                if outcome is not None or error is None:
                    break
                if not error.recoverable or retries >= self.max_retries:
                    break
                retries += 1
                rewritten = self._rewrite(current, error.message)
                logger.warning(
                    "Recoverable failure, retry %d/%d%s: %s",
                    retries, self.max_retries, " with rewrite" if rewritten else "", summarise(error.message),
                )
                current = rewritten or current

        meta = ExecutionMetadata(execution_time_ms=t["elapsed_ms"], retry_count=retries)
        if outcome is None:
            logger.warning("Execution failed after %d retries: %s", retries, summarise(error.message if error else ""))
            return ExecutionResult(success=False, error=error, metadata=meta, sql=current)

        meta.bytes_processed = outcome.bytes_processed
        if cache_key is not None:
            self.cache.put(cache_key, outcome)
        logger.info("Returned %d rows in %d ms (retries=%d)", len(outcome.rows), meta.execution_time_ms, retries)
        return ExecutionResult(success=True, data=list(outcome.rows), metadata=meta, sql=current)

    # ── Internals ────────────────────────────────────

    def _attempt(self, sql: str, params: dict[str, Any]) -> tuple[BackendResult | None, ExecutionError | None]:
        worker: dict[str, int] = {}

        def run() -> Any:
            worker["thread"] = threading.get_ident()
            return self.backend(sql, params)

        future = _POOL.submit(run)
        try:
            raw = future.result(timeout=self.timeout_ms / 1000)
        except FutureTimeout:
            if not future.cancel():
                self._cancel_running(worker.get("thread"))
            return None, classify_error(f"Query timed out after {self.timeout_ms} ms")
        except Exception as exc:
            return None, classify_error(str(exc) or type(exc).__name__)
        if isinstance(raw, BackendResult):
            return raw, None
        return BackendResult(rows=list(raw or [])), None

    def _cancel_running(self, thread_id: int | None) -> None:
        cancel = getattr(self.backend, "cancel", None)
        if cancel is None or thread_id is None:
            logger.warning("Timed-out query keeps running; backend has no cancel hook")
            return
        try:
            cancel(thread_id)
        except Exception:
            logger.exception("Cancelling timed-out query failed")

    def _rewrite(self, sql: str, message: str) -> str | None:
        if self.corrector is None:
            return None
        try:
            rewritten = self.corrector(sql, message)
        except Exception:
            logger.exception("SQL corrector failed")
            return None
        if rewritten and rewritten.strip() and rewritten.strip() != sql.strip():
            return rewritten
        return None
