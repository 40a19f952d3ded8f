"""
Structured intent -- the intermediate representation between a
plain-language question and the SQL that answers it.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

IntentKind = Literal["list", "filter", "aggregation", "comparison", "trend", "balance"]

FilterOperator = Literal[
    "=", "!=", "<>", ">", "<", ">=", "<=",
    "IN", "NOT IN", "LIKE", "NOT LIKE", "BETWEEN",
    "IS NULL", "IS NOT NULL", "IS DISTINCT FROM", "IS NOT DISTINCT FROM",
]

AggregateFunction = Literal["sum", "count", "avg", "min", "max"]

INTENTS: tuple[str, ...] = ("list", "filter", "aggregation", "comparison", "trend", "balance")
NULLARY_OPERATORS = frozenset({"IS NULL", "IS NOT NULL"})


class TimeRange(BaseModel):
    """A resolved window; ``value`` keeps the phrase the user wrote."""

    type: Literal["relative", "absolute"]
    value: str
    start_date: date | None = None
    end_date: date | None = None

    def describe(self) -> str:
        if self.start_date and self.end_date:
            return f"{self.value} ({self.start_date.isoformat()} to {self.end_date.isoformat()})"
        if self.start_date:
            return f"{self.value} (from {self.start_date.isoformat()})"
        return self.value


class FilterCondition(BaseModel):
    column: str
    operator: FilterOperator = "="
    value: Any = None
    logical_operator: Literal["AND", "OR"] = "AND"
    negate: bool = Field(False, alias="not")

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _check_value_shape(self) -> "FilterCondition":
        if self.operator == "BETWEEN":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2 or None in self.value:
                raise ValueError(f"BETWEEN on {self.column} needs a [low, high] pair, got {self.value!r}")
            self.value = list(self.value)
        elif self.operator in ("IN", "NOT IN"):
            if self.value is not None and not isinstance(self.value, (list, tuple)):
                self.value = [self.value]
            if not self.value:
                raise ValueError(f"{self.operator} on {self.column} needs at least one value")
            self.value = list(self.value)
        return self


class Aggregation(BaseModel):
    column: str | None = Field(None, description="None means COUNT(*)")
    function: AggregateFunction = "sum"
    alias: str = ""
    distinct: bool = False

    @property
    def output_name(self) -> str:
        """Result-column name: the alias, else ``total_<col>`` style."""
        if self.alias:
            return self.alias
        if self.column is None:
            return "record_count"
        prefix = {"sum": "total", "count": "count", "avg": "avg", "min": "min", "max": "max"}[self.function]
        return f"{prefix}_{self.column}"


class GroupByClause(BaseModel):
    column: str
    interval: Literal["day", "week", "month", "quarter", "year"] | None = None


class OrderByClause(BaseModel):
    column: str
    direction: Literal["ASC", "DESC"] = "DESC"
    nulls: Literal["FIRST", "LAST"] | None = None


class ColumnMapping(BaseModel):
    """How one phrase in the question was mapped onto a catalog column."""

    user_term: str
    column: str
    match: Literal["exact", "substring"] = "exact"
    score: float = 1.0
    confirmed: bool = False


class QueryParseResult(BaseModel):
    """Parsed representation of a question."""

    intent: IntentKind = "list"
    assets: list[str] = Field(default_factory=list)
    time_range: TimeRange | None = None
    filters: list[FilterCondition] = Field(default_factory=list)
    aggregations: list[Aggregation] = Field(default_factory=list)
    group_by: list[GroupByClause] = Field(default_factory=list)
    order_by: list[OrderByClause] = Field(default_factory=list)
    columns: list[ColumnMapping] = Field(default_factory=list)
    limit: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def referenced_columns(self) -> set[str]:
        """Every column the intent would put into SQL."""
        cols = {f.column for f in self.filters}
        cols |= {a.column for a in self.aggregations if a.column}
        cols |= {g.column for g in self.group_by}
        cols |= {m.column for m in self.columns}
        # ORDER BY may point at an aggregate alias
        aliases = {a.output_name for a in self.aggregations}
        cols |= {o.column for o in self.order_by if o.column not in aliases}
        return cols


class ClauseDescriptions(BaseModel):
    filter: str | None = None
    aggregation: str | None = None
    group_by: str | None = None
    order_by: str | None = None
    limit: str | None = None


class TranslationResult(BaseModel):
    """Everything the confirmation step needs to show the user."""

    original_query: str
    interpreted_query: str = ""
    sql: str = ""
    sql_preview: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    components: ClauseDescriptions = Field(default_factory=ClauseDescriptions)
    alternatives: list[str] = Field(default_factory=list)
    requires_confirmation: bool = True
    parse: QueryParseResult | None = None
    column_candidates: list[str] = Field(
        default_factory=list,
        description="Set when a required column could not be resolved; no SQL is produced",
    )
    mode: str = "mock"

    @property
    def needs_column_selection(self) -> bool:
        return bool(self.column_candidates) and not self.sql
