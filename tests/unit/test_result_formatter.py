"""
Unit tests -- result formatting, truncation and visualization hints.
"""
from src.db.executor import ExecutionError, ExecutionMetadata, ExecutionResult
from src.nlq.intent import TranslationResult
from src.nlq.result_formatter import (
    ResultFormatter,
    format_currency,
    format_datetime,
    format_percent,
)
from datetime import datetime


def _ok(rows, elapsed=1234, scanned=None):
    return ExecutionResult(
        success=True,
        data=rows,
        metadata=ExecutionMetadata(execution_time_ms=elapsed, bytes_processed=scanned),
    )


def _formatter(**kwargs):
    defaults = dict(
        max_display_rows=100,
        download_row_limit=5000,
        include_performance_metrics=True,
        suggest_visualizations=True,
        percent_scale_threshold=10.0,
    )
    defaults.update(kwargs)
    return ResultFormatter(**defaults)


# ── Truncation ───────────────────────────────────────────

def test_truncates_to_display_rows():
    rows = [{"assetTicker": f"T{i}", "amount": i} for i in range(150)]
    out = _formatter().format_results(_ok(rows))
    assert out.raw_data.display_rows == 100
    assert len(out.raw_data.rows) == 100
    assert out.raw_data.truncated
    assert not out.raw_data.exceeds_download_limit
    assert out.metadata["row_count"] == 100
    assert out.metadata["total_rows"] == 150
    assert "Showing the first 100 of 150 rows." in out.text


def test_exceeds_download_limit():
    rows = [{"n": i} for i in range(6000)]
    out = _formatter().format_results(_ok(rows))
    assert out.raw_data.truncated
    assert out.raw_data.exceeds_download_limit
    assert "5000-row download limit" in out.text


def test_small_result_not_truncated():
    out = _formatter().format_results(_ok([{"n": 1}]))
    assert not out.raw_data.truncated
    assert out.raw_data.display_rows == 1


def test_empty_result():
    out = _formatter().format_results(_ok([]))
    assert out.text == "No results found for this query."
    assert out.metadata["row_count"] == 0


# ── Value formatting ─────────────────────────────────────

def test_format_helpers():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(-3) == "-$3.00"
    assert format_percent(0.25, 10) == "25.00%"
    assert format_percent(45, 10) == "45.00%"
    assert format_percent(0.25, 0) == "0.25%"
    assert format_datetime(datetime(2024, 1, 15, 10, 30)) == "Jan 15, 2024, 10:30 AM"
    assert format_datetime(datetime(2024, 1, 15, 0, 5)) == "Jan 15, 2024, 12:05 AM"


def test_format_value_by_header():
    f = _formatter()
    assert f.format_value("assetvalueInBaseCurrency", 1500) == "$1,500.00"
    assert f.format_value("growth_rate", 0.125) == "12.50%"
    assert f.format_value("assetAmount", 1234567) == "1,234,567"
    assert f.format_value("dateTime", "2024-01-15T10:30:00") == "Jan 15, 2024, 10:30 AM"
    assert f.format_value("assetTicker", "BTC") == "BTC"
    assert f.format_value("assetTicker", None) == ""


def test_percent_threshold_configurable():
    f = _formatter(percent_scale_threshold=1.0)
    assert f.format_value("rate", 5) == "5.00%"
    assert f.format_value("rate", 0.5) == "50.00%"


def test_format_value_never_raises():
    f = _formatter()
    assert f.format_value("dateTime", "2024-13-45 garbage") == "2024-13-45 garbage"
    assert f.format_value("dateTime", 10 ** 20) == str(10 ** 20)


def test_formatted_rows_are_strings():
    out = _formatter().format_results(_ok([{"feeAmount": 2.5, "assetTicker": "ETH"}]))
    assert out.raw_data.rows == [{"feeAmount": "$2.50", "assetTicker": "ETH"}]
    assert "| feeAmount | assetTicker |" in out.text


def test_positional_rows_get_generated_headers():
    out = _formatter().format_results(_ok([("BTC", 1.0), ("ETH", 2.5)]))
    assert out.raw_data.headers == ["col_0", "col_1"]
    assert out.raw_data.rows == [{"col_0": "BTC", "col_1": "1"}, {"col_0": "ETH", "col_1": "2.5"}]
    assert out.metadata["total_rows"] == 2


def test_ragged_and_scalar_rows_are_stringified():
    out = _formatter().format_results(_ok([{"assetTicker": "BTC"}, {"assetTicker": "ETH", "n": 3}, 7]))
    assert out.raw_data.headers == ["assetTicker", "n", "col_0"]
    assert out.raw_data.rows[0] == {"assetTicker": "BTC", "n": "", "col_0": ""}
    assert out.raw_data.rows[2]["col_0"] == "7"


# ── Visualization hints ──────────────────────────────────

def test_time_series_hint():
    rows = [{"date": "2024-01-01", "revenue": 10}, {"date": "2024-01-02", "revenue": 12}]
    assert _formatter().suggest_visualization(["date", "revenue"], rows) == "Line chart showing trends over time"


def test_bar_chart_hint_for_many_categories():
    rows = [{"category": f"c{i}", "count": i} for i in range(15)]
    assert _formatter().suggest_visualization(["category", "count"], rows) == "Bar chart"


def test_column_chart_hint_for_few_categories():
    rows = [{"category": f"c{i}", "count": i} for i in range(5)]
    assert _formatter().suggest_visualization(["category", "count"], rows) == "Column chart"


def test_multi_series_hint():
    rows = [{"asset": "BTC", "bought": 1, "sold": 2}]
    assert _formatter().suggest_visualization(["asset", "bought", "sold"], rows) == (
        "Multi-series bar chart or stacked column chart"
    )


def test_histogram_hint():
    rows = [{"amount": i} for i in range(30)]
    assert _formatter().suggest_visualization(["amount"], rows) == "Histogram showing distribution"


def test_treemap_hint():
    rows = [{"walletName": f"w{i}"} for i in range(12)]
    assert _formatter().suggest_visualization(["walletName"], rows) == "Treemap or pie chart"


def test_table_fallback_hint():
    rows = [{"walletName": "a", "toAddress": "b"}]
    assert _formatter().suggest_visualization(["walletName", "toAddress"], rows) == "Table view (current)"


def test_hint_and_metrics_in_output():
    rows = [{"period_month": "2024-01-01", "total_assetAmount": 3.0}]
    translation = TranslationResult(original_query="q", interpreted_query="Monthly totals")
    out = _formatter().format_results(_ok(rows, elapsed=1500, scanned=2 * 1024 * 1024), translation)
    assert out.content[0].text == "**Results for:** Monthly totals"
    assert "1 rows returned. Query executed in 1.50 seconds. 2.00 MB processed." in out.text
    assert "**Visualization Suggestion:** Line chart showing trends over time" in out.text
    assert out.metadata["visualization_hint"] == "Line chart showing trends over time"


def test_metrics_and_hints_can_be_disabled():
    out = _formatter(include_performance_metrics=False, suggest_visualizations=False).format_results(
        _ok([{"n": 1}])
    )
    assert "Query executed" not in out.text
    assert out.metadata["visualization_hint"] is None


# ── Errors ───────────────────────────────────────────────

def test_error_block():
    result = ExecutionResult(
        success=False,
        error=ExecutionError(message="Unrecognized name: amount", details="Check column names and data types."),
        metadata=ExecutionMetadata(execution_time_ms=10, retry_count=2),
    )
    out = _formatter().format_results(result)
    text = out.text
    assert text.startswith("**Query Execution Error**")
    assert "Unrecognized name: amount" in text
    assert "**Details:** Check column names and data types." in text
    assert "Attempted 2 automatic corrections without success." in text
    assert "- Try simplifying your query" in text
    assert out.metadata["error"] is True
    assert out.raw_data is None
