"""
Unit tests -- query executor retry loop, classification, timeout and cache.
"""
import threading
import time
from types import SimpleNamespace

import pytest

from src.core.cache import TTLCache
from src.db.backend import BackendResult, SqlAlchemyBackend, placeholders, to_named_binds
from src.db.executor import QueryExecutor, classify_error


class FlakyBackend:
    """Fails the first *failures* calls with *message*, then returns rows."""

    def __init__(self, failures: int, message: str = "Unrecognized name: amount", rows=None):
        self.failures = failures
        self.message = message
        self.rows = rows if rows is not None else [{"n": 1}]
        self.calls: list[str] = []

    def __call__(self, sql, params):
        self.calls.append(sql)
        if len(self.calls) <= self.failures:
            raise RuntimeError(self.message)
        return BackendResult(rows=self.rows, bytes_processed=2048)


# ── Placeholders ─────────────────────────────────────────

def test_placeholders_ignore_literals():
    sql = "SELECT '@notaparam' AS x, `@col` FROM t WHERE a = @a AND b IN (@b_0, @b_1)"
    assert placeholders(sql) == {"a", "b_0", "b_1"}


def test_to_named_binds():
    assert to_named_binds("WHERE a = @a AND s = '@a'") == "WHERE a = :a AND s = '@a'"


# ── Classification ───────────────────────────────────────

@pytest.mark.parametrize("message", [
    "Access Denied: Table p:d.t: User does not have permission",
    "403 Forbidden",
    "Not found: Table p:d.t was not found in location US",
    "Not found: Dataset p:d",
    'relation "ledger" does not exist',
])
def test_fatal_errors(message):
    error = classify_error(message)
    assert not error.recoverable
    assert error.details


def test_recoverable_error_has_hint():
    error = classify_error("Unrecognized name: amount at [1:8]")
    assert error.recoverable
    assert error.details == "Check column names and data types."


def test_timeout_is_recoverable():
    error = classify_error("Query timed out after 10 ms")
    assert error.recoverable
    assert "date range" in error.details


# ── Retry loop ───────────────────────────────────────────

def test_success_first_try():
    backend = FlakyBackend(failures=0)
    result = QueryExecutor(backend=backend, max_retries=2).execute_query("SELECT 1")
    assert result.success
    assert result.data == [{"n": 1}]
    assert result.metadata.retry_count == 0
    assert result.metadata.bytes_processed == 2048
    assert result.metadata.execution_time_ms >= 0


def test_retry_once_then_success():
    backend = FlakyBackend(failures=1)
    executor = QueryExecutor(
        backend=backend,
        corrector=lambda sql, err: sql.replace("amount", "assetAmount"),
        max_retries=2,
    )
    result = executor.execute_query("SELECT amount FROM t")
    assert result.success
    assert result.metadata.retry_count == 1
    assert backend.calls == ["SELECT amount FROM t", "SELECT assetAmount FROM t"]
    assert result.sql == "SELECT assetAmount FROM t"


def test_retries_exhausted():
    backend = FlakyBackend(failures=10)
    result = QueryExecutor(backend=backend, max_retries=2).execute_query("SELECT 1")
    assert not result.success
    assert result.metadata.retry_count == 2
    assert len(backend.calls) == 3
    assert "Unrecognized name" in result.error.message


def test_fatal_error_not_retried():
    backend = FlakyBackend(failures=10, message="Access Denied: Table p:d.t")
    corrections = []
    executor = QueryExecutor(
        backend=backend,
        corrector=lambda sql, err: corrections.append(err) or "SELECT 2",
        max_retries=2,
    )
    result = executor.execute_query("SELECT 1")
    assert not result.success
    assert result.metadata.retry_count == 0
    assert len(backend.calls) == 1
    assert corrections == []
    assert not result.error.recoverable


def test_corrector_failure_retries_unchanged():
    def broken(sql, err):
        raise ValueError("cannot rewrite")

    backend = FlakyBackend(failures=1)
    result = QueryExecutor(backend=backend, corrector=broken, max_retries=1).execute_query("SELECT 1")
    assert result.success
    assert backend.calls == ["SELECT 1", "SELECT 1"]


def test_missing_parameter_rejected_before_backend():
    backend = FlakyBackend(failures=0)
    result = QueryExecutor(backend=backend).execute_query("SELECT * FROM t WHERE a = @a AND b = @b", {"a": 1})
    assert not result.success
    assert "b" in result.error.message
    assert backend.calls == []


def test_plain_list_backend():
    executor = QueryExecutor(backend=lambda sql, params: [{"x": params["a"]}])
    result = executor.execute_query("SELECT @a AS x", {"a": 7})
    assert result.success
    assert result.data == [{"x": 7}]
    assert result.metadata.bytes_processed is None


def test_timeout_counts_as_recoverable():
    def slow(sql, params):
        time.sleep(0.5)
        return []

    result = QueryExecutor(backend=slow, max_retries=0, timeout_ms=50).execute_query("SELECT 1")
    assert not result.success
    assert "timed out" in result.error.message
    assert result.error.recoverable


class CancellableBackend:
    def __init__(self):
        self.release = threading.Event()
        self.thread = None
        self.cancelled = []

    def __call__(self, sql, params):
        self.thread = threading.get_ident()
        self.release.wait(2)
        return []

    def cancel(self, thread_id):
        self.cancelled.append(thread_id)
        self.release.set()


def test_timeout_cancels_running_statement():
    backend = CancellableBackend()
    result = QueryExecutor(backend=backend, max_retries=0, timeout_ms=50).execute_query("SELECT 1")
    assert not result.success
    assert backend.cancelled == [backend.thread]


def test_sqlalchemy_backend_cancel_uses_driver_connection():
    calls = []
    driver = SimpleNamespace(cancel=lambda: calls.append("cancel"))
    backend = SqlAlchemyBackend()
    backend._inflight[42] = SimpleNamespace(connection=SimpleNamespace(driver_connection=driver))
    assert backend.cancel(42)
    assert calls == ["cancel"]
    assert not backend.cancel(7)


def test_sqlalchemy_backend_cancel_unsupported_driver():
    backend = SqlAlchemyBackend()
    backend._inflight[42] = SimpleNamespace(connection=SimpleNamespace(driver_connection=object()))
    assert not backend.cancel(42)


# ── Cache ────────────────────────────────────────────────

def test_result_cache_hit():
    backend = FlakyBackend(failures=0)
    executor = QueryExecutor(backend=backend, cache=TTLCache(ttl=60))
    first = executor.execute_query("SELECT @a", {"a": 1})
    second = executor.execute_query("SELECT @a", {"a": 1})
    third = executor.execute_query("SELECT @a", {"a": 2})
    assert first.success and second.success and third.success
    assert not first.metadata.cached
    assert second.metadata.cached
    assert second.data == first.data
    assert len(backend.calls) == 2


def test_failures_not_cached():
    backend = FlakyBackend(failures=1)
    executor = QueryExecutor(backend=backend, max_retries=0, cache=TTLCache(ttl=60))
    assert not executor.execute_query("SELECT 1").success
    assert executor.execute_query("SELECT 1").success
