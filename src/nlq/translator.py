"""
Query translator -- converts a plain-language question into a structured
intent, a parameterized SQL statement and a confidence score.

Two modes:
  mock               -> deterministic rule-based parsing (no API key needed)
  openai / anthropic -> LLM returns a JSON intent, validated against the catalog

Either way the SQL comes from the same deterministic builder, every
free-text value is a bound ``@parameter``, and no column outside the
active field catalog ever reaches the statement.  When a clause needs a
column the question does not pin down, the result carries
``column_candidates`` instead of SQL.
"""
from __future__ import annotations

import difflib
import json
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from pydantic import ValidationError

from src.catalog.field_catalog import FieldCatalog, FieldMetadata
from src.core.config import get_settings
from src.core.errors import TranslationError
from src.core.logging import get_logger, summarise
from src.nlq.intent import (
    NULLARY_OPERATORS,
    Aggregation,
    ClauseDescriptions,
    ColumnMapping,
    FilterCondition,
    GroupByClause,
    OrderByClause,
    QueryParseResult,
    TranslationResult,
)
from src.nlq.time_range import extract_time_range
from src.reports.base import BuiltQuery, ConnectionResolver, ParamBinder

logger = get_logger(__name__)

# ── Vocabulary ───────────────────────────────────────────

_ASSET_NAMES: dict[str, str] = {
    "bitcoin": "BTC", "btc": "BTC",
    "ethereum": "ETH", "ether": "ETH", "eth": "ETH",
    "tether": "USDT", "usdt": "USDT",
    "usd coin": "USDC", "usdc": "USDC",
    "binance coin": "BNB", "bnb": "BNB",
    "ripple": "XRP", "xrp": "XRP",
    "cardano": "ADA", "ada": "ADA",
    "solana": "SOL", "sol": "SOL",
    "dogecoin": "DOGE", "doge": "DOGE",
    "avalanche": "AVAX", "avax": "AVAX",
    "polygon": "MATIC", "matic": "MATIC",
    "polkadot": "DOT", "dot": "DOT",
    "uniswap": "UNI",
    "chainlink": "LINK",
    "litecoin": "LTC", "ltc": "LTC",
    "canton coin": "CC", "canton": "CC",
}

# upper-case tokens that look like tickers but are not
_NOT_TICKERS = frozenset({
    "USD", "EUR", "GBP", "ID", "IDS", "SQL", "YTD", "MTD", "FMV", "GL", "API",
    "AND", "OR", "NOT", "THE", "FOR", "BY", "IN", "ALL", "TOP", "AVG", "MAX", "MIN",
    "SUM", "QTY", "I", "A", "ME", "MY", "VS", "ISO", "UTC", "STCG", "LTCG",
})

_OPERATION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "buy": ("buy", "buys", "bought", "purchase", "purchases", "purchased"),
    "sell": ("sell", "sells", "sold", "sale", "sales"),
    "transfer": ("transfer", "transfers", "transferred"),
    "reward": ("reward", "rewards", "staking"),
    "fee": ("fee transactions", "fee operations", "fee payments"),
}

_INTENT_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("comparison", ("vs", "versus", "compare", "compared", "comparison", "against")),
    ("trend", ("over time", "trend", "trends", "growth", "monthly", "weekly", "daily", "quarterly",
               "by month", "per month", "by week", "per week", "by day", "per day", "by quarter", "by year")),
    ("balance", ("balance", "balances", "holdings", "holding", "position", "positions", "how much do i have",
                 "how much do we have", "how much do i own")),
    ("aggregation", ("total", "sum", "count", "how many", "number of", "average", "avg", "mean",
                     "maximum", "max", "highest", "largest", "minimum", "min", "lowest", "smallest")),
    ("list", ("list", "show", "display", "which", "what are", "find", "all")),
]

_FUNCTION_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("count", ("how many", "number of", "count")),
    ("avg", ("average", "avg", "mean")),
    ("max", ("maximum", "max", "highest", "largest", "biggest")),
    ("min", ("minimum", "min", "lowest", "smallest")),
    ("sum", ("total", "sum")),
]

_GRAINS: dict[str, tuple[str, ...]] = {
    "day": ("daily", "by day", "per day", "each day"),
    "week": ("weekly", "by week", "per week", "each week"),
    "month": ("monthly", "by month", "per month", "each month"),
    "quarter": ("quarterly", "by quarter", "per quarter"),
    "year": ("yearly", "annually", "by year", "per year"),
}

_STOP_PHRASES = frozenset({
    "when", "from", "to", "on", "at", "in", "by", "of", "the", "a", "an", "and", "or",
    "for", "with", "all", "me", "show", "what", "which", "how", "many", "much",
})

# words that drive intent / function detection rather than naming a column
_KEYWORD_WORDS = frozenset(
    word
    for table in (_INTENT_KEYWORDS, _FUNCTION_KEYWORDS, list(_GRAINS.items()))
    for _, phrases in table
    for phrase in phrases
    for word in phrase.split()
)

_COMPARATORS: list[tuple[str, str]] = [
    ("greater than or equal to", ">="), ("at least", ">="), ("no less than", ">="),
    ("less than or equal to", "<="), ("at most", "<="), ("no more than", "<="),
    ("greater than", ">"), ("more than", ">"), ("above", ">"), ("over", ">"), ("exceeding", ">"),
    ("less than", "<"), ("below", "<"), ("under", "<"),
    (">=", ">="), ("<=", "<="), (">", ">"), ("<", "<"), ("equal to", "="), ("equals", "="), ("=", "="),
]
_COMPARE_RE = re.compile(
    r"\b([a-z][a-z ]{1,40}?)\s+(?:is\s+|was\s+|of\s+)?("
    + "|".join(re.escape(c) for c, _ in _COMPARATORS)
    + r")\s+\$?(-?[\d,]+(?:\.\d+)?)",
)
_COMPARATOR_MAP = dict(_COMPARATORS)

_GROUP_RE = re.compile(
    r"\b(?:by|per|for each|each)\s+([a-z][a-z ]*?)"
    r"(?=$|[,.?!;]|\s+(?:for|in|during|over|since|from|between|last|this|with|where|and|sorted|ordered|"
    r"order|sort|top|limit|excluding|except|only|that|which)\b)"
)
_ORDER_RE = re.compile(r"\b(?:sorted|ordered|order|sort)\s+by\s+([a-z][a-z ]*?)(?:\s+(asc|ascending|desc|descending))?(?=$|[,.?!;]|\s+(?:limit|top)\b)")
_LIMIT_RE = re.compile(r"\b(top|bottom|first|limit|last)\s+(\d+)\b(?!\s+(?:day|week|month|year)s?\b)")
_WALLET_RE = re.compile(r"\bwallet(?:\s+id)?\s+['\"]?([A-Za-z0-9][\w\-.:]{2,})['\"]?", re.IGNORECASE)
_EXCLUDE_RE = re.compile(r"\b(?:excluding|except|without|not including|other than)\s+([a-z0-9 ,]+?)(?=$|[.?!;]|\s+(?:for|in|during|over|since|by|per)\b)")

_UNKNOWN_NAME_RES = (
    re.compile(r"Unrecognized name: `?(\w+)`?", re.IGNORECASE),
    re.compile(r"column \"?(\w+)\"? does not exist", re.IGNORECASE),
    re.compile(r"no such column: (?:\w+\.)?(\w+)", re.IGNORECASE),
    re.compile(r"Name (\w+) not found inside", re.IGNORECASE),
)

_SQL_FENCE_RE = re.compile(r"```(?:sql)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


# ── Shared extraction helpers ────────────────────────────

def _contains(q: str, phrase: str) -> bool:
    return re.search(rf"(?<![\w]){re.escape(phrase)}(?![\w])", q) is not None


def extract_assets(question: str) -> list[str]:
    """Crypto names and tickers mentioned in *question*, as upper-case tickers."""
    q = question.lower()
    found: list[tuple[int, str]] = []
    for name, ticker in _ASSET_NAMES.items():
        m = re.search(rf"(?<![\w]){re.escape(name)}(?![\w])", q)
        if m and ticker not in (t for _, t in found):
            found.append((m.start(), ticker))
    letters = [c for c in question if c.isalpha()]
    shouting = bool(letters) and sum(c.isupper() for c in letters) > len(letters) / 2
    for m in ([] if shouting else re.finditer(r"\b[A-Z]{2,5}\b", question)):
        token = m.group(0)
        if token not in _NOT_TICKERS and token not in (t for _, t in found):
            found.append((m.start(), token))
    return [t for _, t in sorted(found)]


def extract_operations(question: str) -> list[str]:
    q = question.lower()
    ops = []
    for op, words in _OPERATION_KEYWORDS.items():
        if any(_contains(q, w) for w in words):
            ops.append(op)
    return ops


def extract_wallet(question: str) -> str | None:
    m = _WALLET_RE.search(question)
    if not m:
        return None
    value = m.group(1)
    # bare words ("wallet balances") are not identifiers
    if not re.search(r"[\d\-_:.]", value):
        return None
    return value


def extract_limit(question: str) -> tuple[int, str] | None:
    m = _LIMIT_RE.search(question.lower())
    if not m:
        return None
    return int(m.group(2)), m.group(1)


# ── Alias matching ───────────────────────────────────────

@dataclass
class _Match:
    term: str
    columns: list[str]
    match: str
    start: int


@dataclass
class _Candidates:
    """Working state while a question is being parsed."""
    penalties: list[tuple[str, float]] = field(default_factory=list)
    alternatives: list[tuple[float, str]] = field(default_factory=list)
    candidates: list[str] = field(default_factory=list)

    def penalise(self, reason: str, amount: float) -> None:
        self.penalties.append((reason, amount))


def match_aliases(question: str, catalog: FieldCatalog, skip: set[str] | None = None) -> list[_Match]:
    """Map phrases in *question* onto catalog columns.

    Whole-word alias matches (plurals included) are taken longest first and
    consume their span.  Leftover words are then tried as substrings: a
    word containing a phrase ("gasfees" -> "gas"), or a long word that is
    the start of a single-word phrase.
    """
    q = question.lower()
    skip = skip or set()
    index = {p: cols for p, cols in catalog.phrase_index().items() if p not in _STOP_PHRASES and p not in skip}
    consumed = [False] * len(q)
    matches: list[_Match] = []

    for phrase in sorted(index, key=len, reverse=True):
        for m in re.finditer(rf"(?<![\w]){re.escape(phrase)}(?:s|es)?(?![\w])", q):
            if any(consumed[m.start():m.end()]):
                continue
            for i in range(m.start(), m.end()):
                consumed[i] = True
            matches.append(_Match(term=phrase, columns=list(index[phrase]), match="exact", start=m.start()))

    for m in re.finditer(r"[a-z][a-z0-9]{3,}", q):
        word = m.group(0)
        if any(consumed[m.start():m.end()]) or word in _STOP_PHRASES or word in _KEYWORD_WORDS or word in skip:
            continue
        cols: list[str] = []
        for phrase, phrase_cols in index.items():
            if len(phrase) < 4:
                continue
            single = " " not in phrase
            if phrase in word or (single and len(word) >= 6 and phrase.startswith(word)):
                cols.extend(c for c in phrase_cols if c not in cols)
        if cols:
            matches.append(_Match(term=word, columns=cols, match="substring", start=m.start()))

    matches.sort(key=lambda mt: mt.start)
    return matches


def resolve_phrase(phrase: str, catalog: FieldCatalog) -> list[str]:
    """Columns a short phrase ("asset", "month", "wallet") refers to."""
    phrase = phrase.strip().lower()
    if not phrase:
        return []
    index = catalog.phrase_index()
    if phrase in index:
        return list(index[phrase])
    singular = phrase[:-1] if phrase.endswith("s") else phrase
    if singular in index:
        return list(index[singular])
    # longest trailing sub-phrase ("each asset ticker" -> "asset ticker")
    words = phrase.split()
    for i in range(1, len(words)):
        tail = " ".join(words[i:])
        if tail in index:
            return list(index[tail])
    return [m.columns[0] for m in match_aliases(phrase, catalog)]


# ── Catalog roles ────────────────────────────────────────

def _first_present(catalog: FieldCatalog, names: tuple[str, ...]) -> FieldMetadata | None:
    for name in names:
        f = catalog.get(name)
        if f is not None:
            return f
    return None


def time_field(catalog: FieldCatalog) -> FieldMetadata | None:
    temporal = catalog.temporal_fields()
    for preferred in (("timestamp", "date"), ("number",), ("string",)):
        for f in temporal:
            if f.type in preferred:
                return f
    return None


def asset_field(catalog: FieldCatalog) -> FieldMetadata | None:
    return _first_present(catalog, ("assetTicker", "asset"))


def operation_field(catalog: FieldCatalog) -> FieldMetadata | None:
    return _first_present(catalog, ("operation", "action"))


def wallet_field(catalog: FieldCatalog) -> FieldMetadata | None:
    return _first_present(catalog, ("walletId", "wallet"))


def quantity_field(catalog: FieldCatalog) -> FieldMetadata | None:
    for f in catalog.numeric_fields():
        if {"quantity", "amount", "qty"} & {a.lower() for a in f.aliases}:
            return f
    return None


def date_expression(f: FieldMetadata) -> str:
    if f.type == "number":
        return f"DATE(TIMESTAMP_SECONDS(CAST({f.column} AS INT64)))"
    return f"DATE({f.column})"


# ── SQL builder ──────────────────────────────────────────

def _group_alias(g: GroupByClause) -> str:
    return f"period_{g.interval}" if g.interval else g.column


def _render_filter(f: FilterCondition, catalog: FieldCatalog, binder: ParamBinder, n: int) -> str:
    meta = catalog.get(f.column)
    name = f"p_{f.column}_{n}" if n else f"p_{f.column}"
    op = f.operator
    if op in NULLARY_OPERATORS:
        clause = f"{f.column} {op}"
    elif op == "BETWEEN":
        low, high = f.value
        if meta is not None and meta.is_temporal:
            expr = date_expression(meta)
            clause = (
                f"{expr} BETWEEN DATE({binder.scalar(name + '_start', str(low))}) "
                f"AND DATE({binder.scalar(name + '_end', str(high))})"
            )
        else:
            clause = f"{f.column} BETWEEN {binder.scalar(name + '_low', low)} AND {binder.scalar(name + '_high', high)}"
    elif op in ("IN", "NOT IN"):
        clause = f"{f.column} {op} {binder.in_list(name, f.value)}"
    else:
        clause = f"{f.column} {op} {binder.scalar(name, f.value)}"
    return f"NOT ({clause})" if f.negate else clause


def build_sql(parse: QueryParseResult, catalog: FieldCatalog, table: str) -> BuiltQuery:
    """Deterministic intent -> parameterized SQL.

    Raises
    ------
    ValueError
        If the intent references a column absent from *catalog*.
    """
    unknown = sorted(c for c in parse.referenced_columns() if not catalog.has_column(c))
    if unknown:
        raise ValueError(f"Columns not in catalog '{catalog.name}': {', '.join(unknown)}")

    binder = ParamBinder()
    select: list[str] = []
    group_keys: list[str] = []

    for g in parse.group_by:
        meta = catalog.get(g.column)
        if g.interval and meta is not None:
            select.append(f"DATE_TRUNC({date_expression(meta)}, {g.interval.upper()}) AS {_group_alias(g)}")
        else:
            select.append(g.column)
        group_keys.append(_group_alias(g))

    for agg in parse.aggregations:
        alias = agg.output_name
        if agg.column is None:
            select.append(f"COUNT(*) AS {alias}")
        else:
            distinct = "DISTINCT " if agg.distinct else ""
            select.append(f"{agg.function.upper()}({distinct}{agg.column}) AS {alias}")

    if not select:
        wanted = {m.column for m in parse.columns} | {f.column for f in parse.filters}
        for role in (time_field(catalog), asset_field(catalog), operation_field(catalog), quantity_field(catalog)):
            if role is not None:
                wanted.add(role.column)
        select = [c for c in catalog.column_names() if c in wanted]

    lines = ["SELECT", "  " + ",\n  ".join(select), f"FROM {table}"]

    where: list[str] = []
    for n, f in enumerate(parse.filters):
        clause = _render_filter(f, catalog, binder, n)
        where.append(clause if not where else f"{f.logical_operator} {clause}")
    if where:
        lines.append("WHERE " + "\n  ".join(where))

    if group_keys and parse.aggregations:
        lines.append("GROUP BY " + ", ".join(group_keys))

    if parse.order_by:
        group_by_column = {g.column: _group_alias(g) for g in parse.group_by}
        order_parts = []
        for o in parse.order_by:
            target = group_by_column.get(o.column, o.column)
            nulls = f" NULLS {o.nulls}" if o.nulls else ""
            order_parts.append(f"{target} {o.direction}{nulls}")
        lines.append("ORDER BY " + ", ".join(order_parts))

    if parse.limit:
        lines.append(f"LIMIT {int(parse.limit)}")

    return binder.build("\n".join(lines))


# ── Descriptions ─────────────────────────────────────────

_FUNCTION_WORDS = {"sum": "Total", "count": "Count", "avg": "Average", "min": "Minimum", "max": "Maximum"}
_OPERATOR_WORDS = {
    "=": "is", "!=": "is not", "<>": "is not", ">": "greater than", "<": "less than",
    ">=": "at least", "<=": "at most", "IN": "is one of", "NOT IN": "is not one of",
    "LIKE": "matches", "NOT LIKE": "does not match", "BETWEEN": "between",
    "IS NULL": "is empty", "IS NOT NULL": "is present",
    "IS DISTINCT FROM": "differs from", "IS NOT DISTINCT FROM": "equals",
}


def _describe_filter(f: FilterCondition) -> str:
    words = _OPERATOR_WORDS.get(f.operator, f.operator)
    if f.operator in NULLARY_OPERATORS:
        text = f"{f.column} {words}"
    elif f.operator == "BETWEEN":
        low, high = f.value
        text = f"{f.column} between {low} and {high}"
    elif isinstance(f.value, (list, tuple)):
        text = f"{f.column} {words} {', '.join(str(v) for v in f.value)}"
    else:
        text = f"{f.column} {words} {f.value}"
    return f"NOT ({text})" if f.negate else text


def _describe_aggregation(agg: Aggregation) -> str:
    if agg.column is None:
        return "Count of records"
    distinct = "distinct " if agg.distinct else ""
    return f"{_FUNCTION_WORDS[agg.function]} of {distinct}{agg.column}"


def describe(parse: QueryParseResult) -> ClauseDescriptions:
    filters = [_describe_filter(f) for f in parse.filters]
    if not filters:
        filter_text = "All records"
    elif len(filters) == 1:
        filter_text = filters[0]
    else:
        filter_text = "\n".join(f"- {f}" for f in filters)

    aggregation = ", ".join(_describe_aggregation(a) for a in parse.aggregations) or None
    group_by = ", ".join(
        f"{g.interval} of {g.column}" if g.interval else g.column for g in parse.group_by
    ) or None
    order_by = ", ".join(
        f"{o.column} {'descending' if o.direction == 'DESC' else 'ascending'}" for o in parse.order_by
    ) or None
    limit = None
    if parse.limit:
        limit = f"Top {parse.limit} results" if parse.metadata.get("top_n") else f"Limited to {parse.limit} rows"
    return ClauseDescriptions(filter=filter_text, aggregation=aggregation, group_by=group_by, order_by=order_by, limit=limit)


def interpret(parse: QueryParseResult) -> str:
    """One-sentence restatement of the intent."""
    if parse.aggregations:
        what = " and ".join(_describe_aggregation(a).lower() for a in parse.aggregations)
    else:
        what = "matching records"
    parts = [f"You want to see the {what}"]
    if parse.group_by:
        parts.append(" per " + ", ".join(
            g.interval if g.interval else g.column for g in parse.group_by
        ))
    if parse.assets:
        parts.append(f" for {', '.join(parse.assets)}")
    if parse.time_range:
        parts.append(f" covering {parse.time_range.describe()}")
    return "".join(parts) + f" ({parse.intent} query)."


# ── Translator ───────────────────────────────────────────

_LLM_PROMPT = """\
Convert the question into a JSON query intent over the table described below.

Columns:
{columns}

Return a JSON object with exactly these fields:
  intent        : one of list, filter, aggregation, comparison, trend, balance
  assets        : list of asset tickers mentioned
  time_range    : {{"type": "relative"|"absolute", "value": str, "start_date": "YYYY-MM-DD", "end_date": "YYYY-MM-DD"}} or null
  filters       : list of {{"column", "operator", "value", "logical_operator"}}
  aggregations  : list of {{"column" (null for COUNT(*)), "function": sum|count|avg|min|max, "alias"}}
  group_by      : list of {{"column", "interval": day|week|month|quarter|year|null}}
  order_by      : list of {{"column", "direction": ASC|DESC}}
  limit         : integer or null
  confidence    : number between 0 and 1
  alternatives  : list of other plausible readings, most likely first

Only use the column names listed above.  Today is {today}.
{history}
Question: {question}

JSON:"""

_CORRECTION_PROMPT = """\
The following BigQuery statement failed.

Error: {error}

Statement:
```sql
{sql}
```

Available columns:
{columns}

Rewrite the statement so it runs.  Keep every @parameter unchanged.
Answer with the corrected statement in a ```sql fenced block and nothing else."""


class QueryTranslator:
    """Question + field catalog -> TranslationResult.

    Parameters
    ----------
    catalog : FieldCatalog
        The active catalog; the only source of column names.
    resolver : ConnectionResolver, optional
        Supplies the table reference.  Without one (or when it cannot
        resolve) the catalog name is used as the table.
    mode : str, optional
        "mock", "openai" or "anthropic"; defaults to ``llm_provider``.
    today : date, optional
        Anchor for relative time ranges.
    """

    def __init__(
        self,
        catalog: FieldCatalog,
        resolver: ConnectionResolver | None = None,
        mode: str | None = None,
        today: date | None = None,
        always_confirm: bool | None = None,
    ):
        settings = get_settings()
        self.catalog = catalog
        self.resolver = resolver
        self.mode = (mode or settings.llm_provider).lower()
        self.today = today
        self.threshold = settings.confirmation_threshold
        self.always_confirm = settings.always_confirm if always_confirm is None else always_confirm
        self.default_limit = settings.default_query_limit

    # ── Public API ───────────────────────────────────

    def translate(
        self,
        question: str,
        history: list[str] | None = None,
        selected_column: str | None = None,
    ) -> TranslationResult:
        """Translate *question*; raises TranslationError if the LLM call fails."""
        logger.info("Translator[%s] <- %s", self.mode, summarise(question))
        if selected_column is not None and not self.catalog.has_column(selected_column):
            raise ValueError(f"Column '{selected_column}' is not in catalog '{self.catalog.name}'")

        if self.mode == "mock":
            parse, work = self._parse_rules(question, history, selected_column)
            llm_confidence = None
        else:
            parse, work, llm_confidence = self._parse_llm(question, history, selected_column)

        result = self._finalise(question, parse, work, llm_confidence)
        logger.info(
            "Translator[%s] -> intent=%s confidence=%.2f sql=%s",
            self.mode, parse.intent if parse else "-", result.confidence, bool(result.sql),
        )
        return result

    def correct_sql(self, sql: str, error: str) -> str | None:
        """Rewrite *sql* after a recoverable backend error, or None."""
        rewritten = correct_sql(sql, error, self.catalog)
        if rewritten is None and self.mode != "mock":
            rewritten = self._correct_with_llm(sql, error)
        return rewritten

    def table_name(self) -> str:
        ref = self.resolver.resolve() if self.resolver is not None else None
        return ref.qualified if ref is not None else self.catalog.name.replace("-", "_")

    # ── Rule-based parsing ───────────────────────────

    def _parse_rules(
        self,
        question: str,
        history: list[str] | None,
        selected_column: str | None,
    ) -> tuple[QueryParseResult | None, _Candidates]:
        work = _Candidates()
        today = self.today or date.today()
        own_range = extract_time_range(question, today)
        text = question
        if history and _is_refinement(question):
            text = f"{history[-1]} {question}"
        q = text.lower()

        catalog = self.catalog
        time_col = time_field(catalog)
        asset_col = asset_field(catalog)
        op_col = operation_field(catalog)

        intent, intent_hits = _classify_intent(q)
        if not intent_hits:
            work.penalise("no intent keywords", 0.1)

        # tickers and operation words are values, not column references
        asset_words = {n for n in _ASSET_NAMES if _contains(q, n)}
        op_words = {w for words in _OPERATION_KEYWORDS.values() for w in words if _contains(q, w)}
        time_range = own_range or extract_time_range(text, today)
        matches = match_aliases(text, catalog, skip=asset_words | op_words)

        for mt in matches:
            if mt.match == "substring":
                work.penalise(f"'{mt.term}' matched by substring only", 0.15)
            if len(mt.columns) > 1:
                work.penalise(f"'{mt.term}' is ambiguous", 0.1)
                for i, alt in enumerate(mt.columns[1:], start=1):
                    work.alternatives.append(
                        (0.9 - 0.1 * i, f'"{mt.term}" could refer to {alt} instead of {mt.columns[0]}')
                    )
        extra = max(0, len(matches) - 3)
        if extra:
            work.penalise("many column references", 0.02 * extra)

        assets = extract_assets(text)
        operations = extract_operations(text)
        excluded = _excluded_terms(q)
        excluded_assets = [a for a in assets if a in {_ASSET_NAMES.get(t, t.upper()) for t in excluded}]
        excluded_ops = [o for o in operations if any(w in excluded for w in _OPERATION_KEYWORDS[o])]
        assets = [a for a in assets if a not in excluded_assets]
        operations = [o for o in operations if o not in excluded_ops]

        if not matches and not assets and not operations and time_range is None:
            work.penalise("nothing in the question maps to the catalog", 0.35)

        parse = QueryParseResult(intent=intent, assets=assets, time_range=time_range)
        parse.columns = [
            ColumnMapping(
                user_term=mt.term,
                column=mt.columns[0],
                match=mt.match,
                score=1.0 if mt.match == "exact" else 0.6,
                confirmed=selected_column == mt.columns[0],
            )
            for mt in matches
        ]

        # ── Filters ──────────────────────────────────
        if asset_col is not None:
            if assets:
                parse.filters.append(FilterCondition(column=asset_col.column, operator="IN", value=assets))
            if excluded_assets:
                parse.filters.append(FilterCondition(column=asset_col.column, operator="NOT IN", value=excluded_assets))
        if op_col is not None:
            if operations:
                parse.filters.append(FilterCondition(column=op_col.column, operator="IN", value=operations))
            if excluded_ops:
                parse.filters.append(FilterCondition(column=op_col.column, operator="NOT IN", value=excluded_ops))
        wallet = extract_wallet(text)
        wallet_col = wallet_field(catalog)
        if wallet and wallet_col is not None:
            parse.filters.append(FilterCondition(column=wallet_col.column, operator="=", value=wallet))
        parse.filters.extend(_numeric_filters(q, catalog))
        if time_range is not None and time_col is not None:
            parse.filters.append(FilterCondition(
                column=time_col.column,
                operator="BETWEEN",
                value=[time_range.start_date.isoformat(), (time_range.end_date or today).isoformat()],
            ))

        # ── Measure ──────────────────────────────────
        function = _aggregate_function(q)
        numeric = [m for m in parse.columns if catalog.get(m.column).is_numeric and catalog.get(m.column).aggregatable]
        needs_measure = intent in ("aggregation", "trend", "comparison", "balance")
        if needs_measure:
            if function == "count" and not numeric:
                parse.aggregations.append(Aggregation(column=None, function="count", alias="transaction_count"))
            else:
                measure = self._pick_measure(numeric, selected_column, intent, bool(assets), work)
                if measure is None:
                    return None, _column_selection(work, catalog.numeric_fields())
                parse.aggregations.append(Aggregation(column=measure, function=function))

        # ── Grouping ─────────────────────────────────
        rank_by: str | None = None
        grain = _grain(q)
        if intent == "trend" and grain is None:
            grain = "month"
        if grain and time_col is not None and needs_measure:
            parse.group_by.append(GroupByClause(column=time_col.column, interval=grain))

        for phrase in _group_phrases(q):
            if phrase in {w for words in _GRAINS.values() for w in words} or phrase in _GRAINS:
                continue
            cols = resolve_phrase(phrase, catalog)
            if not cols and selected_column and not catalog.get(selected_column).is_numeric:
                cols = [selected_column]
            if not cols:
                if needs_measure:
                    return None, _column_selection(work, [f for f in catalog.fields if not f.is_numeric])
                work.penalise(f"could not place 'by {phrase}'", 0.2)
                continue
            if len(cols) > 1:
                work.penalise(f"'by {phrase}' is ambiguous", 0.1)
                for alt in cols[1:]:
                    work.alternatives.append((0.8, f"Group by {alt} instead of {cols[0]}"))
            col = cols[0]
            meta = catalog.get(col)
            if meta.is_numeric and not meta.is_temporal:
                # "top 5 transactions by amount" ranks rather than groups
                rank_by = rank_by or col
                continue
            if meta.is_temporal and needs_measure:
                if not any(g.column == col for g in parse.group_by):
                    parse.group_by.append(GroupByClause(column=col, interval=grain or "month"))
            elif needs_measure and not any(g.column == col for g in parse.group_by):
                parse.group_by.append(GroupByClause(column=col))

        if needs_measure and not any(not g.interval for g in parse.group_by):
            if intent == "balance" and asset_col is not None:
                parse.group_by.append(GroupByClause(column=asset_col.column))
            elif intent == "comparison":
                if len(operations) > 1 and op_col is not None:
                    parse.group_by.append(GroupByClause(column=op_col.column))
                elif asset_col is not None:
                    parse.group_by.append(GroupByClause(column=asset_col.column))

        # ── Ordering and limit ───────────────────────
        limit = extract_limit(q)
        measure_alias = parse.aggregations[0].output_name if parse.aggregations else None
        order = _explicit_order(q, catalog)
        if order is not None:
            parse.order_by.append(order)
        elif rank_by and not parse.aggregations:
            parse.order_by.append(OrderByClause(column=rank_by, direction="ASC" if limit and limit[1] == "bottom" else "DESC"))
        elif limit and measure_alias:
            parse.order_by.append(OrderByClause(column=measure_alias, direction="ASC" if limit[1] == "bottom" else "DESC"))
        elif any(g.interval for g in parse.group_by):
            time_group = next(g for g in parse.group_by if g.interval)
            parse.order_by.append(OrderByClause(column=time_group.column, direction="ASC"))
        elif parse.group_by and measure_alias:
            parse.order_by.append(OrderByClause(column=measure_alias, direction="DESC"))
        elif not parse.aggregations and time_col is not None:
            parse.order_by.append(OrderByClause(column=time_col.column, direction="DESC"))

        if limit:
            parse.limit = limit[0]
            parse.metadata["top_n"] = limit[1] in ("top", "bottom")
        elif not parse.aggregations:
            parse.limit = self.default_limit

        if intent == "list" and parse.filters:
            parse.intent = "filter"
        if selected_column:
            parse.metadata["selected_column"] = selected_column
        parse.metadata["source"] = "rules"
        return parse, work

    def _pick_measure(
        self,
        numeric: list[ColumnMapping],
        selected_column: str | None,
        intent: str,
        names_asset: bool,
        work: _Candidates,
    ) -> str | None:
        if selected_column and self.catalog.get(selected_column).is_numeric:
            return selected_column
        if numeric:
            for other in numeric[1:]:
                if other.column != numeric[0].column:
                    work.alternatives.append((0.7, f"Aggregate {other.column} instead of {numeric[0].column}"))
            return numeric[0].column
        # "how much bitcoin" measures the asset quantity
        if intent == "balance" or names_asset:
            qty = quantity_field(self.catalog)
            if qty is not None:
                work.penalise("assumed the quantity column", 0.05)
                return qty.column
        return None

    # ── LLM parsing ──────────────────────────────────

    def _parse_llm(
        self,
        question: str,
        history: list[str] | None,
        selected_column: str | None,
    ) -> tuple[QueryParseResult | None, _Candidates, float | None]:
        from src.nlq.llm_client import call_llm

        prior = ""
        if history:
            prior = "Earlier questions in this conversation:\n" + "\n".join(f"- {h}" for h in history[-5:]) + "\n"
        if selected_column:
            prior += f"The user chose the column {selected_column}.\n"
        prompt = _LLM_PROMPT.format(
            columns=self.catalog.describe(),
            today=(self.today or date.today()).isoformat(),
            history=prior,
            question=question,
        )
        response = call_llm(prompt, provider=self.mode)
        data = _parse_json(response)
        if not data:
            logger.warning("LLM returned no usable intent, falling back to rules")
            parse, work = self._parse_rules(question, history, selected_column)
            return parse, work, None

        work = _Candidates()
        try:
            parse = QueryParseResult.model_validate({
                k: data[k] for k in (
                    "intent", "assets", "time_range", "filters", "aggregations",
                    "group_by", "order_by", "limit",
                ) if data.get(k) is not None
            })
        except ValidationError as exc:
            logger.warning("LLM intent failed validation, falling back to rules: %s", summarise(exc))
            parse, work = self._parse_rules(question, history, selected_column)
            return parse, work, None

        unknown = sorted(c for c in parse.referenced_columns() if not self.catalog.has_column(c))
        if unknown:
            logger.warning("LLM referenced unknown columns %s", unknown)
            work.penalise(f"unknown columns {', '.join(unknown)}", 0.3)
            return None, _column_selection(work, list(self.catalog.fields)), None

        for i, alt in enumerate(data.get("alternatives") or []):
            work.alternatives.append((0.6 - 0.05 * i, str(alt)))
        if parse.limit is None and not parse.aggregations:
            parse.limit = self.default_limit
        parse.metadata["source"] = self.mode
        confidence = data.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        return parse, work, confidence

    def _correct_with_llm(self, sql: str, error: str) -> str | None:
        from src.nlq.llm_client import call_llm

        prompt = _CORRECTION_PROMPT.format(error=error, sql=sql, columns=self.catalog.describe())
        try:
            response = call_llm(prompt, provider=self.mode)
        except TranslationError:
            return None
        m = _SQL_FENCE_RE.search(response)
        candidate = (m.group(1) if m else response).strip().rstrip(";")
        if not re.match(r"^\s*(SELECT|WITH)\b", candidate, re.IGNORECASE):
            logger.warning("LLM correction was not a SELECT statement, ignoring")
            return None
        return candidate

    # ── Assembly ─────────────────────────────────────

    def _finalise(
        self,
        question: str,
        parse: QueryParseResult | None,
        work: _Candidates,
        llm_confidence: float | None,
    ) -> TranslationResult:
        base = llm_confidence if llm_confidence is not None else 0.95
        confidence = base - sum(amount for _, amount in work.penalties)
        confidence = round(min(1.0, max(0.0, confidence)), 2)
        alternatives = [text for _, text in sorted(work.alternatives, key=lambda a: -a[0])]
        if parse is not None:
            parse.metadata["penalties"] = [reason for reason, _ in work.penalties]

        if parse is None:
            return TranslationResult(
                original_query=question,
                interpreted_query="I could not tell which column this question is about.",
                confidence=min(confidence, 0.5),
                alternatives=alternatives,
                requires_confirmation=True,
                column_candidates=list(work.candidates),
                mode=self.mode,
            )

        built = build_sql(parse, self.catalog, self.table_name())
        return TranslationResult(
            original_query=question,
            interpreted_query=interpret(parse),
            sql=built.sql,
            sql_preview=built.preview,
            parameters=built.parameters,
            confidence=confidence,
            components=describe(parse),
            alternatives=alternatives,
            requires_confirmation=self.always_confirm or confidence < self.threshold,
            parse=parse,
            mode=self.mode,
        )


# ── Module helpers ───────────────────────────────────────

def _classify_intent(q: str) -> tuple[str, int]:
    for intent, words in _INTENT_KEYWORDS:
        hits = sum(1 for w in words if _contains(q, w))
        if hits:
            return intent, hits
    return "list", 0


def _aggregate_function(q: str) -> str:
    best, best_pos = "sum", len(q) + 1
    for fn, words in _FUNCTION_KEYWORDS:
        for w in words:
            m = re.search(rf"(?<![\w]){re.escape(w)}(?![\w])", q)
            if m and m.start() < best_pos:
                best, best_pos = fn, m.start()
    return best


def _grain(q: str) -> str | None:
    for grain, words in _GRAINS.items():
        if any(_contains(q, w) for w in words):
            return grain
    return None


def _group_phrases(q: str) -> list[str]:
    phrases = []
    for m in _GROUP_RE.finditer(q):
        before = q[max(0, m.start() - 8):m.start()]
        if re.search(r"(sorted|ordered|order|sort)\s*$", before):
            continue
        phrases.append(m.group(1).strip())
    return phrases


def _explicit_order(q: str, catalog: FieldCatalog) -> OrderByClause | None:
    m = _ORDER_RE.search(q)
    if not m:
        return None
    cols = resolve_phrase(m.group(1), catalog)
    if not cols:
        return None
    direction = "ASC" if (m.group(2) or "").startswith("asc") else "DESC"
    return OrderByClause(column=cols[0], direction=direction)


def _numeric_filters(q: str, catalog: FieldCatalog) -> list[FilterCondition]:
    out = []
    for m in _COMPARE_RE.finditer(q):
        subject, comparator, raw = m.group(1), m.group(2), m.group(3)
        words = subject.split()
        column = None
        for i in range(len(words)):
            cols = resolve_phrase(" ".join(words[i:]), catalog)
            numeric = [c for c in cols if catalog.get(c).is_numeric]
            if numeric:
                column = numeric[0]
                break
        if column is None:
            continue
        value = float(raw.replace(",", ""))
        out.append(FilterCondition(column=column, operator=_COMPARATOR_MAP[comparator], value=value))
    return out


def _excluded_terms(q: str) -> set[str]:
    terms: set[str] = set()
    for m in _EXCLUDE_RE.finditer(q):
        for part in re.split(r",|\band\b|\bor\b", m.group(1)):
            part = part.strip()
            if part:
                terms.add(part)
                terms.update(part.split())
    return terms


def _is_refinement(question: str) -> bool:
    return re.match(
        r"^\s*(change|instead|make it|now|what about|how about|only|also|but|use|same|and)\b",
        question,
        re.IGNORECASE,
    ) is not None


def _column_selection(work: _Candidates, fields: list[FieldMetadata]) -> _Candidates:
    work.penalise("a required column could not be resolved", 0.3)
    work.candidates = [f.column for f in fields]
    return work


def _parse_json(text: str) -> dict[str, Any] | None:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("LLM returned invalid JSON: %s", exc)
        return None
    return data if isinstance(data, dict) and data else None


def correct_sql(sql: str, error: str, catalog: FieldCatalog) -> str | None:
    """Remap an unknown column named in *error* onto a catalog column.

    Returns the rewritten statement, or None when the error names no column
    or no catalog column is a plausible replacement.
    """
    bad = None
    for pattern in _UNKNOWN_NAME_RES:
        m = pattern.search(error)
        if m:
            bad = m.group(1)
            break
    if bad is None or catalog.has_column(bad):
        return None

    replacement = None
    by_lower = {c.lower(): c for c in catalog.column_names()}
    if bad.lower() in by_lower:
        replacement = by_lower[bad.lower()]
    else:
        cols = resolve_phrase(re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", bad).replace("_", " "), catalog)
        if cols:
            replacement = cols[0]
        else:
            close = difflib.get_close_matches(bad.lower(), list(by_lower), n=1, cutoff=0.75)
            if close:
                replacement = by_lower[close[0]]
    if replacement is None:
        return None

    rewritten = re.sub(rf"(?<![@\w]){re.escape(bad)}(?!\w)", replacement, sql)
    if rewritten == sql:
        return None
    logger.info("Corrected column %s -> %s", bad, replacement)
    return rewritten
