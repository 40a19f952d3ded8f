"""
Report generator contract.

Every report kind implements the same four steps:

  validate(params)              -> normalised params (defaults applied)
  build_query(params, filters)  -> BuiltQuery (SQL with @named placeholders)
  transform(rows)               -> typed records (numeric fields coerced)
  summarize(records)            -> summary statistics

and inherits ``generate_report`` which runs them end-to-end through the
QueryExecutor.  The target table always comes from an explicit
ConnectionResolver; generators never read ambient configuration.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol, TYPE_CHECKING

from src.core.errors import ConnectionResolutionError, ReportExecutionError, ReportValidationError
from src.core.logging import get_logger
from src.core.utils import parse_bool, parse_numeric, split_list, timer

if TYPE_CHECKING:
    from src.db.executor import QueryExecutor

logger = get_logger(__name__)

PARAMETER_TYPES = ("string", "number", "date", "boolean")
TODAY = "today"  # default sentinel resolved at validation time
DEFAULT_ROW_LIMIT = 5000

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# ── Metadata ─────────────────────────────────────────────

@dataclass(frozen=True)
class ReportParameter:
    name: str
    type: str
    required: bool = False
    description: str = ""
    label: str = ""
    default: Any = None
    multiple: bool = False  # list value, accepts "a, b" strings too

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "required": self.required,
            "description": self.description,
            "default": self.default,
            "multiple": self.multiple,
        }


@dataclass(frozen=True)
class ReportMetadata:
    id: str
    name: str
    description: str
    keywords: tuple[str, ...] = ()
    parameters: tuple[ReportParameter, ...] = ()
    compatible_schema_types: tuple[str, ...] | None = None
    catalog: str | None = None

    def parameter(self, name: str) -> ReportParameter | None:
        return next((p for p in self.parameters if p.name == name), None)

    def required_parameters(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    def supports(self, schema_type: str) -> bool:
        return self.compatible_schema_types is None or schema_type in self.compatible_schema_types

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "keywords": list(self.keywords),
            "parameters": [p.to_dict() for p in self.parameters],
            "compatible_schema_types": (
                list(self.compatible_schema_types) if self.compatible_schema_types is not None else None
            ),
        }


# ── Connection resolution ────────────────────────────────

@dataclass(frozen=True)
class TableRef:
    project_id: str
    dataset_id: str
    table_id: str

    @property
    def qualified(self) -> str:
        return f"`{self.project_id}.{self.dataset_id}.{self.table_id}`"


class ConnectionResolver(Protocol):
    def resolve(self) -> TableRef | None: ...


class StaticConnectionResolver:
    """Resolver over fixed identifiers; any blank part resolves to None."""

    def __init__(self, project_id: str = "", dataset_id: str = "", table_id: str = ""):
        self.project_id = project_id
        self.dataset_id = dataset_id
        self.table_id = table_id

    def resolve(self) -> TableRef | None:
        if not (self.project_id and self.dataset_id and self.table_id):
            return None
        return TableRef(self.project_id, self.dataset_id, self.table_id)

    @classmethod
    def from_settings(cls) -> "StaticConnectionResolver":
        from src.core.config import get_settings

        s = get_settings()
        return cls(s.bigquery_project_id, s.bigquery_dataset_id, s.bigquery_table_id)


# ── Built queries ────────────────────────────────────────

def quote_literal(value: Any) -> str:
    """Render a value as a single-quoted SQL string literal (display only)."""
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


@dataclass
class BuiltQuery:
    """An executable statement plus its bound values.

    ``sql`` only ever carries ``@name`` placeholders.  ``preview`` swaps the
    IN-list placeholders for quoted literals so users can read the filter.
    """
    sql: str
    parameters: dict[str, Any] = field(default_factory=dict)
    list_previews: dict[str, str] = field(default_factory=dict)

    @property
    def preview(self) -> str:
        text = self.sql
        for placeholder, literal in self.list_previews.items():
            text = text.replace(placeholder, literal)
        return text


class ParamBinder:
    """Collects named parameters while a statement is assembled."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self._previews: dict[str, str] = {}

    def scalar(self, name: str, value: Any) -> str:
        self.values[name] = value
        return f"@{name}"

    def in_list(self, name: str, values: list[Any]) -> str:
        names = [f"{name}_{i}" for i in range(len(values))]
        for n, v in zip(names, values):
            self.values[n] = v
        placeholder = "(" + ", ".join(f"@{n}" for n in names) + ")"
        self._previews[placeholder] = "(" + ", ".join(quote_literal(v) for v in values) + ")"
        return placeholder

    def build(self, sql: str) -> BuiltQuery:
        return BuiltQuery(sql=sql, parameters=dict(self.values), list_previews=dict(self._previews))


# ── Results ──────────────────────────────────────────────

@dataclass
class ReportResult:
    report_id: str
    data: list[dict[str, Any]]
    columns: list[str]
    execution_time_ms: int
    bytes_processed: int
    sql: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "data": self.data,
            "columns": self.columns,
            "execution_time_ms": self.execution_time_ms,
            "bytes_processed": self.bytes_processed,
            "sql": self.sql,
            "metadata": self.metadata,
        }


# ── Generator base ───────────────────────────────────────

class ReportGenerator(ABC):
    """Base class for a single report kind."""

    metadata: ReportMetadata
    columns: tuple[str, ...] = ()
    numeric_columns: tuple[str, ...] = ()

    def __init__(self, resolver: ConnectionResolver, executor: "QueryExecutor | None" = None):
        self.resolver = resolver
        self.executor = executor

    # ── Contract ─────────────────────────────────────

    def validate(self, params: dict[str, Any]) -> dict[str, Any]:
        """Apply defaults, coerce types and reject missing required values."""
        out: dict[str, Any] = {}
        for p in self.metadata.parameters:
            raw = params.get(p.name)
            if raw is None or raw == "" or raw == []:
                raw = date.today().isoformat() if p.default == TODAY else p.default
            if raw is None or raw == "" or raw == []:
                if p.required:
                    label = p.label or p.name
                    raise ReportValidationError(
                        f"Missing required parameter '{p.name}': {label} is required for {self.metadata.name}",
                        field=p.name,
                    )
                continue
            out[p.name] = self._coerce(p, raw)
        return out

    @abstractmethod
    def build_query(self, params: dict[str, Any], filters: dict[str, Any] | None = None) -> BuiltQuery:
        ...

    def transform(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        records = []
        for row in rows:
            record: dict[str, Any] = {}
            for col in self.columns:
                value = row.get(col)
                record[col] = parse_numeric(value) if col in self.numeric_columns else value
            records.append(record)
        return records

    @abstractmethod
    def summarize(self, records: list[dict[str, Any]]) -> dict[str, Any]:
        ...

    # ── Shared helpers ───────────────────────────────

    def table(self) -> TableRef:
        ref = self.resolver.resolve()
        if ref is None:
            raise ConnectionResolutionError(
                "Missing required connection information: projectId, datasetId, or tableId"
            )
        return ref

    def period(self, params: dict[str, Any]) -> dict[str, Any]:
        """Echo of the parameters that bound the report window."""
        return {k: params[k] for k in ("startDate", "endDate", "asOfDate", "walletId") if k in params}

    @staticmethod
    def _coerce(p: ReportParameter, raw: Any) -> Any:
        if p.multiple:
            return split_list(raw)
        if p.type == "date":
            text = str(raw).strip()
            if not _DATE_RE.match(text):
                raise ReportValidationError(
                    f"Parameter '{p.name}' must be a date in YYYY-MM-DD format, got '{text}'",
                    field=p.name,
                )
            try:
                date.fromisoformat(text)
            except ValueError as exc:
                raise ReportValidationError(f"Parameter '{p.name}' is not a valid date: {text}", field=p.name) from exc
            return text
        if p.type == "number":
            try:
                return float(raw) if "." in str(raw) else int(raw)
            except (TypeError, ValueError) as exc:
                raise ReportValidationError(f"Parameter '{p.name}' must be a number, got '{raw}'", field=p.name) from exc
        if p.type == "boolean":
            return parse_bool(raw)
        return str(raw).strip()

    # ── End-to-end ───────────────────────────────────

    def generate_report(self, params: dict[str, Any], filters: dict[str, Any] | None = None) -> ReportResult:
        """Validate, build, execute, transform and summarise.

        Raises
        ------
        ReportValidationError, ConnectionResolutionError
            Before any backend call.
        ReportExecutionError
            When the executor returns a failed result.
        """
        if self.executor is None:
            raise ReportExecutionError(f"No query executor bound to report '{self.metadata.id}'")

        with timer() as t:
            clean = self.validate(params)
            query = self.build_query(clean, filters)
            logger.info("Report[%s] executing (%d params)", self.metadata.id, len(query.parameters))
            result = self.executor.execute_query(query.sql, query.parameters)
            if not result.success:
                message = result.error.message if result.error else "Unknown error"
                raise ReportExecutionError(f"Query execution failed: {message}")
            records = self.transform(result.data or [])
            summary = self.summarize(records)

        logger.info("Report[%s] produced %d records", self.metadata.id, len(records))
        return ReportResult(
            report_id=self.metadata.id,
            data=records,
            columns=list(self.columns),
            execution_time_ms=t["elapsed_ms"],
            bytes_processed=result.metadata.bytes_processed or 0,
            sql=query.preview,
            metadata={
                "summary": summary,
                "total_records": len(records),
                "period": self.period(clean),
            },
        )
