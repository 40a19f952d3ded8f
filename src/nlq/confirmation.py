"""
Confirmation formatter -- renders a translation as a plain-text
interpretation the user approves, modifies or replaces before anything runs.

Also renders the two other prompts of the conversation: translation
errors, and "which column did you mean?" when the translator could not
resolve a required column.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from src.core.config import get_settings
from src.core.logging import get_logger
from src.nlq.intent import TranslationResult
from src.reports.base import ReportMetadata

logger = get_logger(__name__)

_CONFIDENCE_LEVELS: tuple[tuple[float, str], ...] = (
    (0.90, "Very High"),
    (0.75, "High"),
    (0.50, "Moderate"),
    (0.25, "Low"),
)

# first matching bucket wins; "Other" catches the rest
COLUMN_BUCKETS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Time", ("time", "date", "timestamp")),
    ("Asset", ("asset", "coin", "ticker")),
    ("Quantity", ("quantity", "amount", "balance", "total")),
    ("Transaction", ("transaction", "type", "direction", "trade", "transfer", "fee")),
    ("Identifier", ("id", "identifier")),
    ("Wallet", ("wallet",)),
    ("Pricing", ("price", "rate", "exchange")),
    ("Status", ("status", "categorized", "synced", "failed")),
    ("Valuation", ("gain", "loss", "cost", "basis", "value", "impairment", "revaluation", "adjustment")),
    ("Address", ("address",)),
    ("Tagging", ("category", "tag", "label", "contact")),
    ("Metadata", ("metadata",)),
    ("Error", ("error",)),
    ("Inventory", ("inventory",)),
    ("Entity", ("subsidiary", "organization", "department", "entity")),
    ("Currency", ("currency",)),
    ("Account", ("account",)),
)

_CONFIRM_FOOTER = (
    "Is this interpretation correct? You can:\n"
    "1. Confirm by saying \"yes\" or \"correct\"\n"
    "2. Modify specific parts (e.g., \"change the date range to last 30 days\")\n"
    "3. Provide a completely new query\n"
)

_ERROR_FOOTER = (
    "You can:\n"
    "1. Try rephrasing your query to be more specific\n"
    "2. Provide more context about what you're looking for\n"
    "3. Ask for help with a simpler query first\n"
)

_COLUMN_FOOTER = (
    "You can:\n"
    "1. Enter the number of the column you want to use\n"
    "2. Type \"use [column name]\" to select a specific column\n"
    "3. Provide a new query that specifies the column\n"
)


@dataclass
class ConfirmationResponse:
    content: str
    needs_confirmation: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "needs_confirmation": self.needs_confirmation,
            "metadata": self.metadata,
        }


def confidence_level(score: float) -> str:
    """0.92 -> "Very High", 0.6 -> "Moderate"; boundaries go to the higher bucket."""
    for threshold, label in _CONFIDENCE_LEVELS:
        if score >= threshold:
            return label
    return "Very Low"


def column_bucket(column: str) -> str:
    name = column.lower()
    for bucket, keywords in COLUMN_BUCKETS:
        if any(k in name for k in keywords):
            return bucket
    return "Other"


def group_columns(columns: Iterable[str]) -> list[tuple[str, list[str]]]:
    """Buckets in fixed order, empty ones dropped, columns in input order."""
    grouped: dict[str, list[str]] = {bucket: [] for bucket, _ in COLUMN_BUCKETS}
    grouped["Other"] = []
    for col in columns:
        grouped[column_bucket(col)].append(col)
    return [(bucket, cols) for bucket, cols in grouped.items() if cols]


class ConfirmationFormatter:
    """Pure text rendering; the only side effect is logging."""

    def __init__(self, include_sql: bool | None = None, suggest_alternatives: bool | None = None):
        settings = get_settings()
        self.include_sql = settings.include_sql if include_sql is None else include_sql
        self.suggest_alternatives = (
            settings.suggest_alternatives if suggest_alternatives is None else suggest_alternatives
        )

    # ── Interpretation ───────────────────────────────

    def format_confirmation(self, translation: TranslationResult) -> ConfirmationResponse:
        c = translation.components
        text = f"{translation.interpreted_query}\n\n"

        text += "**Identify data where:**\n"
        description = c.filter or "All records"
        if "\n" in description or description.startswith("- "):
            text += description
        else:
            text += f"- {description}"
        text += "\n\n"

        text += "**Calculate and show:**\n"
        if c.aggregation:
            text += f"- {c.aggregation}\n"
        if c.group_by:
            text += f"- Broken down by: {c.group_by}\n"
        if c.order_by:
            text += f"- Sorted by: {c.order_by}\n"
        if c.limit:
            text += f"- {c.limit}\n"
        text += "\n"

        if self.include_sql and translation.sql:
            text += f"**SQL Query:**\n```sql\n{translation.sql_preview or translation.sql}\n```\n\n"

        level = confidence_level(translation.confidence)
        text += f"Confidence: {level}\n\n"

        if self.suggest_alternatives and translation.alternatives:
            text += "**Alternative interpretations:**\n"
            for i, alt in enumerate(translation.alternatives, start=1):
                text += f"{i}. {alt}\n"
            text += "\n"

        text += _CONFIRM_FOOTER
        logger.info("Confirmation prompt built (confidence=%.2f, %s)", translation.confidence, level)
        return ConfirmationResponse(
            content=text,
            needs_confirmation=True,
            metadata={
                "type": "confirmation",
                "confidence": translation.confidence,
                "confidence_level": level,
                "sql": translation.sql,
            },
        )

    # ── Errors ───────────────────────────────────────

    def format_error(self, query: str, message: str, sql: str | None = None) -> ConfirmationResponse:
        text = f"I encountered an error while processing your query: \"{query}\"\n\n"
        text += f"**Error:** {message}\n\n"
        if self.include_sql and sql:
            text += f"**SQL Query:**\n```sql\n{sql}\n```\n\n"
        text += _ERROR_FOOTER
        logger.warning("Error prompt built: %s", message)
        return ConfirmationResponse(content=text, needs_confirmation=False, metadata={"type": "error", "error": message})

    # ── Column selection ─────────────────────────────

    def format_column_selection(
        self,
        columns: list[str],
        query: str,
        message: str | None = None,
    ) -> ConfirmationResponse:
        text = message or f"I'm not sure which columns you want to analyze for: \"{query}\"\n\n"
        text += "Please select from these available columns:\n\n"

        numbered: list[str] = []
        for bucket, cols in group_columns(columns):
            text += f"**{bucket} Columns:**\n"
            for col in cols:
                numbered.append(col)
                text += f"{len(numbered)}. {col}\n"
            text += "\n"

        text += _COLUMN_FOOTER
        logger.info("Column selection prompt built (%d columns)", len(numbered))
        return ConfirmationResponse(
            content=text,
            needs_confirmation=True,
            metadata={"type": "column_selection", "columns": numbered},
        )

    # ── Reports ──────────────────────────────────────

    def format_report_confirmation(
        self,
        report: ReportMetadata,
        parameters: dict[str, Any],
        missing: list[str] | None = None,
    ) -> ConfirmationResponse:
        text = f"This looks like a request for the **{report.name}**.\n\n"
        text += f"{report.description}\n\n"
        if parameters:
            text += "**Parameters:**\n"
            for name, value in parameters.items():
                shown = ", ".join(map(str, value)) if isinstance(value, (list, tuple)) else value
                text += f"- {name}: {shown}\n"
            text += "\n"
        if missing:
            text += "**Still needed:**\n"
            for name in missing:
                p = report.parameter(name)
                hint = f" ({p.description})" if p and p.description else ""
                text += f"- {name}{hint}\n"
            text += "\nPlease provide the missing values to run the report.\n"
            needs = False
        else:
            text += _CONFIRM_FOOTER
            needs = True
        return ConfirmationResponse(
            content=text,
            needs_confirmation=needs,
            metadata={"type": "report", "report_id": report.id, "parameters": parameters, "missing": missing or []},
        )
