"""
Result formatter -- turns an ExecutionResult into a response envelope.

Given a successful result it:
  - truncates the rows to ``max_display_rows`` for display
  - formats currency / percentage / date-time values by column header
  - picks a visualization hint from the shape of the data
  - appends performance metrics when enabled

Failures become an error block with generic remediation steps.  A value
that cannot be formatted falls back to ``str()`` rather than failing the
response.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from collections.abc import Mapping, Sequence
from typing import Any

from src.core.config import get_settings
from src.core.logging import get_logger
from src.db.executor import ExecutionResult
from src.nlq.intent import TranslationResult

logger = get_logger(__name__)

_CURRENCY_KEYS = ("value", "price", "cost", "fee", "gain", "loss")
_PERCENT_KEYS = ("percent", "rate", "ratio")
_DATE_KEYS = ("date", "time", "timestamp")
_TIME_SERIES_KEYS = ("date", "time", "timestamp", "month", "period")
_ISO_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")

_ERROR_SUGGESTIONS = (
    "**Suggestions:**\n"
    "- Try simplifying your query\n"
    "- Check column names and data types\n"
    "- Ensure your filters use valid values\n"
)


# ── Envelope ─────────────────────────────────────────────

@dataclass
class TextBlock:
    text: str
    type: str = "text"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "text": self.text}


@dataclass
class RawData:
    headers: list[str]
    rows: list[dict[str, Any]]
    display_rows: int
    truncated: bool
    exceeds_download_limit: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "headers": self.headers,
            "rows": self.rows,
            "display_rows": self.display_rows,
            "truncated": self.truncated,
            "exceeds_download_limit": self.exceeds_download_limit,
        }


@dataclass
class FormattedResult:
    content: list[TextBlock] = field(default_factory=list)
    raw_data: RawData | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n\n".join(b.text for b in self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": [b.to_dict() for b in self.content],
            "raw_data": self.raw_data.to_dict() if self.raw_data else None,
            "metadata": self.metadata,
        }


# ── Value formatting ─────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def format_currency(value: float) -> str:
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def format_percent(value: float, threshold: float) -> str:
    """Values under *threshold* are read as fractions (0.25 -> 25.00%)."""
    pct = value * 100 if threshold > 0 and abs(value) < threshold else value
    return f"{pct:,.2f}%"


def format_number(value: float) -> str:
    if isinstance(value, int):
        return f"{value:,}"
    text = f"{value:,.2f}".rstrip("0").rstrip(".")
    return text or "0"


def format_datetime(value: datetime) -> str:
    """``Jan 15, 2024, 10:30 AM``."""
    hour = value.hour % 12 or 12
    return f"{value:%b} {value.day}, {value.year}, {hour}:{value:%M} {'AM' if value.hour < 12 else 'PM'}"


def _normalise_rows(data: Any) -> list[dict[str, Any]]:
    """Coerce backend rows to dicts; positional rows get col_0..col_n headers."""
    if isinstance(data, (Mapping, str, bytes)) or not hasattr(data, "__iter__"):
        data = [data]
    rows = []
    for row in data:
        if hasattr(row, "_mapping"):
            row = row._mapping
        if isinstance(row, Mapping):
            rows.append({str(k): v for k, v in row.items()})
        elif isinstance(row, Sequence) and not isinstance(row, (str, bytes)):
            rows.append({f"col_{i}": v for i, v in enumerate(row)})
        else:
            rows.append({"col_0": row})
    return rows


def _parse_datetime(value: str) -> datetime | None:
    text = value.strip().replace("Z", "+00:00")
    if " UTC" in text:
        text = text.replace(" UTC", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        try:
            return datetime.fromisoformat(text[:10])
        except ValueError:
            return None


class ResultFormatter:
    """Execution result -> FormattedResult.

    Parameters
    ----------
    max_display_rows : int, optional
        Rows rendered in the table (default from settings: 100).
    download_row_limit : int, optional
        Above this many rows the result is flagged as too large to download.
    percent_scale_threshold : float, optional
        Percent-column values below this are multiplied by 100; 0 disables.
    """

    def __init__(
        self,
        max_display_rows: int | None = None,
        download_row_limit: int | None = None,
        include_performance_metrics: bool | None = None,
        suggest_visualizations: bool | None = None,
        percent_scale_threshold: float | None = None,
    ):
        s = get_settings()
        self.max_display_rows = s.max_display_rows if max_display_rows is None else max_display_rows
        self.download_row_limit = s.download_row_limit if download_row_limit is None else download_row_limit
        self.include_performance_metrics = (
            s.include_performance_metrics if include_performance_metrics is None else include_performance_metrics
        )
        self.suggest_visualizations = (
            s.suggest_visualizations if suggest_visualizations is None else suggest_visualizations
        )
        self.percent_scale_threshold = (
            s.percent_scale_threshold if percent_scale_threshold is None else percent_scale_threshold
        )

    # ── Public API ───────────────────────────────────

    def format_results(
        self,
        result: ExecutionResult,
        translation: TranslationResult | None = None,
    ) -> FormattedResult:
        if not result.success:
            return self._format_error(result)

        data = _normalise_rows(result.data or [])
        total = len(data)
        meta = result.metadata

        if total == 0:
            logger.info("Formatting empty result")
            return FormattedResult(
                content=[TextBlock("No results found for this query.")],
                raw_data=RawData(headers=[], rows=[], display_rows=0, truncated=False, exceeds_download_limit=False),
                metadata={
                    "row_count": 0,
                    "total_rows": 0,
                    "execution_time_ms": meta.execution_time_ms,
                    "bytes_processed": meta.bytes_processed,
                    "visualization_hint": None,
                },
            )

        headers = list(dict.fromkeys(h for row in data for h in row))
        display = min(total, self.max_display_rows)
        truncated = display < total
        exceeds = total > self.download_row_limit
        rows = [
            {h: self.format_value(h, row.get(h)) for h in headers}
            for row in data[:display]
        ]

        blocks: list[TextBlock] = []
        if translation is not None:
            blocks.append(TextBlock(f"**Results for:** {translation.interpreted_query or translation.original_query}"))
        blocks.append(TextBlock(self._markdown_table(headers, rows)))
        if truncated:
            note = f"Showing the first {display} of {total} rows."
            if exceeds:
                note += (
                    f" The full result exceeds the {self.download_row_limit}-row download limit;"
                    " add filters to narrow it down."
                )
            blocks.append(TextBlock(note))

        if self.include_performance_metrics:
            blocks.append(TextBlock(self._metrics(display, total, meta.execution_time_ms, meta.bytes_processed)))

        hint = self.suggest_visualization(headers, data) if self.suggest_visualizations else None
        if hint:
            blocks.append(TextBlock(f"**Visualization Suggestion:** {hint}"))

        logger.info("Formatted %d of %d rows (hint=%s)", display, total, hint)
        return FormattedResult(
            content=blocks,
            raw_data=RawData(
                headers=headers,
                rows=rows,
                display_rows=display,
                truncated=truncated,
                exceeds_download_limit=exceeds,
            ),
            metadata={
                "row_count": display,
                "total_rows": total,
                "execution_time_ms": meta.execution_time_ms,
                "bytes_processed": meta.bytes_processed,
                "retry_count": meta.retry_count,
                "visualization_hint": hint,
            },
        )

    def format_value(self, header: str, value: Any) -> str:
        """Render one cell by its column header; never raises."""
        if value is None:
            return ""
        try:
            return self._format_value(header.lower(), value)
        except (TypeError, ValueError, OverflowError, OSError):
            return str(value)

    def suggest_visualization(self, headers: list[str], data: list[dict[str, Any]]) -> str | None:
        if not data:
            return None
        first = data[0]
        has_time = any(any(k in h.lower() for k in _TIME_SERIES_KEYS) for h in headers)
        numeric = [h for h in headers if _is_number(first.get(h))]
        categorical = [h for h in headers if isinstance(first.get(h), str) and "date" not in h.lower()]

        if has_time and numeric:
            return "Line chart showing trends over time"
        if len(categorical) == 1 and len(numeric) == 1:
            return "Bar chart" if len(data) > 10 else "Column chart"
        if len(numeric) > 1:
            return "Multi-series bar chart or stacked column chart"
        if len(numeric) == 1 and len(data) > 20:
            return "Histogram showing distribution"
        if len(numeric) == 2:
            return "Scatter plot"
        if len(categorical) == 1:
            distinct = {row.get(categorical[0]) for row in data}
            if len(distinct) > 10:
                return "Treemap or pie chart"
        return "Table view (current)"

    # ── Internals ────────────────────────────────────

    def _format_value(self, header: str, value: Any) -> str:
        is_date_column = any(k in header for k in _DATE_KEYS)
        if _is_number(value):
            if is_date_column and value > 0:
                return format_datetime(datetime.fromtimestamp(value, tz=timezone.utc))
            if any(k in header for k in _CURRENCY_KEYS):
                return format_currency(value)
            if any(k in header for k in _PERCENT_KEYS):
                return format_percent(value, self.percent_scale_threshold)
            return format_number(value)
        if is_date_column and isinstance(value, str) and _ISO_PREFIX_RE.match(value):
            parsed = _parse_datetime(value)
            return format_datetime(parsed) if parsed else value
        return str(value)

    @staticmethod
    def _markdown_table(headers: list[str], rows: list[dict[str, str]]) -> str:
        def cell(text: str) -> str:
            return text.replace("|", "\\|").replace("\n", " ")

        lines = [
            "| " + " | ".join(cell(h) for h in headers) + " |",
            "| " + " | ".join("---" for _ in headers) + " |",
        ]
        for row in rows:
            lines.append("| " + " | ".join(cell(row[h]) for h in headers) + " |")
        return "\n".join(lines)

    @staticmethod
    def _metrics(display: int, total: int, elapsed_ms: int, bytes_processed: int | None) -> str:
        text = f"Showing {display} of {total} rows. " if display < total else f"{total} rows returned. "
        text += f"Query executed in {elapsed_ms / 1000:.2f} seconds. "
        if bytes_processed:
            text += f"{bytes_processed / (1024 * 1024):.2f} MB processed."
        return text.strip()

    @staticmethod
    def _format_error(result: ExecutionResult) -> FormattedResult:
        error = result.error
        message = error.message if error else "Unknown error"
        text = f"**Query Execution Error**\n\n{message}\n\n"
        if error and error.details:
            text += f"**Details:** {error.details}\n\n"
        retries = result.metadata.retry_count
        if retries > 0:
            text += f"Attempted {retries} automatic corrections without success.\n\n"
        text += _ERROR_SUGGESTIONS
        logger.warning("Formatted execution error after %d retries: %s", retries, message)
        return FormattedResult(
            content=[TextBlock(text)],
            metadata={
                "error": True,
                "execution_time_ms": result.metadata.execution_time_ms,
                "retry_count": retries,
            },
        )
