"""
Unit tests -- rule-based and LLM-backed question translation.
"""
from datetime import date

import pytest
from pydantic import ValidationError

import src.nlq.llm_client as llm_client
from src.catalog.field_catalog import FieldCatalog, FieldMetadata, get_catalog
from src.core.config import get_settings
from src.nlq.translator import (
    QueryTranslator,
    build_sql,
    extract_assets,
    extract_limit,
    extract_operations,
    extract_wallet,
    match_aliases,
    resolve_phrase,
)
from src.nlq.intent import FilterCondition, QueryParseResult
from src.reports.base import StaticConnectionResolver

TODAY = date(2024, 6, 15)


@pytest.fixture
def catalog():
    return get_catalog("canton_transaction")


@pytest.fixture
def translator(catalog):
    return QueryTranslator(catalog, mode="mock", today=TODAY, always_confirm=False)


# ── Extraction helpers ───────────────────────────────────

def test_extract_assets_names_and_tickers():
    assert extract_assets("bitcoin and ETH fees") == ["BTC", "ETH"]
    assert extract_assets("show SOL and canton coin") == ["SOL", "CC"]


def test_extract_assets_ignores_shouting_and_stopwords():
    assert extract_assets("SHOW ME ALL THE FEES") == []
    assert extract_assets("total in USD") == []


def test_extract_operations():
    assert extract_operations("bought and sold bitcoin") == ["buy", "sell"]
    assert extract_operations("staking rewards") == ["reward"]
    assert extract_operations("average fee") == []


def test_extract_wallet_requires_identifier():
    assert extract_wallet("activity for wallet w-123") == "w-123"
    assert extract_wallet("wallet balances") is None


def test_extract_limit():
    assert extract_limit("top 5 assets") == (5, "top")
    assert extract_limit("last 30 days") is None


# ── Alias matching ───────────────────────────────────────

def test_match_aliases_exact_and_plural(catalog):
    matches = match_aliases("fees and transactions", catalog)
    assert [(m.term, m.columns[0], m.match) for m in matches] == [
        ("fees", "feeAmount", "exact"),
        ("transaction", "parenttransactionId", "exact"),
    ]


def test_match_aliases_substring(catalog):
    matches = match_aliases("gasfees", catalog)
    assert matches and matches[0].match == "substring"
    assert "feeAmount" in matches[0].columns


def test_resolve_phrase(catalog):
    assert resolve_phrase("asset", catalog) == ["assetTicker"]
    assert resolve_phrase("wallets", catalog) == ["walletId"]
    assert resolve_phrase("", catalog) == []


# ── Rule-based translation ───────────────────────────────

def test_total_for_asset_and_operation(translator):
    result = translator.translate("total bitcoin bought last month")
    assert result.sql == (
        "SELECT\n"
        "  SUM(assetAmount) AS total_assetAmount\n"
        "FROM canton_transaction\n"
        "WHERE assetTicker IN (@p_assetTicker_0)\n"
        "  AND operation IN (@p_operation_1_0)\n"
        "  AND DATE(dateTime) BETWEEN DATE(@p_dateTime_2_start) AND DATE(@p_dateTime_2_end)"
    )
    assert result.parameters == {
        "p_assetTicker_0": "BTC",
        "p_operation_1_0": "buy",
        "p_dateTime_2_start": "2024-05-01",
        "p_dateTime_2_end": "2024-05-31",
    }
    assert "assetTicker IN ('BTC')" in result.sql_preview
    assert "'BTC'" not in result.sql
    assert result.parse.intent == "aggregation"
    assert result.confidence == pytest.approx(0.9)
    assert not result.requires_confirmation


def test_count_question(translator):
    result = translator.translate("how many transactions in 2024")
    assert "COUNT(*) AS transaction_count" in result.sql
    assert result.parameters == {"p_dateTime_start": "2024-01-01", "p_dateTime_end": "2024-12-31"}
    assert result.components.aggregation == "Count of records"
    assert result.confidence == pytest.approx(0.95)


def test_monthly_trend(translator):
    result = translator.translate("monthly ETH volume")
    assert result.parse.intent == "trend"
    assert "DATE_TRUNC(DATE(dateTime), MONTH) AS period_month" in result.sql
    assert "SUM(assetAmount) AS total_assetAmount" in result.sql
    assert "GROUP BY period_month" in result.sql
    assert result.sql.endswith("ORDER BY period_month ASC")


def test_list_with_filters_becomes_filter_query(translator):
    result = translator.translate("show all BTC sells")
    assert result.parse.intent == "filter"
    assert result.sql.startswith("SELECT\n  dateTime,\n  operation,\n  assetTicker,\n  assetAmount\n")
    assert "ORDER BY dateTime DESC" in result.sql
    assert result.sql.endswith(f"LIMIT {get_settings().default_query_limit}")


def test_unresolved_measure_asks_for_column(translator):
    result = translator.translate("average of everything")
    assert result.needs_column_selection
    assert result.sql == ""
    assert "assetAmount" in result.column_candidates
    assert "assetTicker" not in result.column_candidates
    assert result.confidence <= 0.5
    assert result.requires_confirmation


def test_selected_column_fills_measure(translator):
    result = translator.translate("average of everything", selected_column="assetAmount")
    assert "AVG(assetAmount) AS avg_assetAmount" in result.sql
    assert result.parse.metadata["selected_column"] == "assetAmount"
    # low confidence still forces confirmation
    assert result.requires_confirmation


def test_unknown_selected_column_rejected(translator):
    with pytest.raises(ValueError, match="not in catalog"):
        translator.translate("average of everything", selected_column="flavour")


def test_always_confirm(catalog):
    t = QueryTranslator(catalog, mode="mock", today=TODAY, always_confirm=True)
    assert t.translate("how many transactions in 2024").requires_confirmation


def test_resolved_table_name(catalog):
    t = QueryTranslator(
        catalog, resolver=StaticConnectionResolver("proj", "ds", "tbl"), mode="mock", today=TODAY,
    )
    assert "FROM `proj.ds.tbl`" in t.translate("how many transactions in 2024").sql


def test_confidence_is_bounded(translator):
    for question in ("", "blah", "total by flavour", "how many transactions in 2024"):
        assert 0.0 <= translator.translate(question).confidence <= 1.0


# ── SQL builder ──────────────────────────────────────────

def test_build_sql_rejects_unknown_columns(catalog):
    parse = QueryParseResult(filters=[FilterCondition(column="password", operator="=", value="x")])
    with pytest.raises(ValueError, match="password"):
        build_sql(parse, catalog, "t")


# ── Correction ───────────────────────────────────────────

def test_correct_sql_remaps_alias(translator):
    sql = "SELECT SUM(amount) AS total FROM t WHERE a = @amount"
    fixed = translator.correct_sql(sql, "Unrecognized name: amount at [1:12]")
    assert fixed == "SELECT SUM(assetAmount) AS total FROM t WHERE a = @amount"


def test_correct_sql_gives_up(translator):
    assert translator.correct_sql("SELECT 1", "Syntax error") is None
    assert translator.correct_sql("SELECT zzzz FROM t", "Unrecognized name: zzzz") is None


# ── LLM mode ─────────────────────────────────────────────

def test_llm_intent_is_built_deterministically(catalog, monkeypatch):
    payload = (
        '{"intent": "aggregation", "assets": ["ETH"], '
        '"filters": [{"column": "assetTicker", "operator": "IN", "value": ["ETH"]}], '
        '"aggregations": [{"column": "feeAmount", "function": "sum"}], '
        '"confidence": 0.88, "alternatives": ["Average fee instead"]}'
    )
    monkeypatch.setattr(llm_client, "call_llm", lambda prompt, provider=None: payload)
    t = QueryTranslator(catalog, mode="openai", today=TODAY, always_confirm=False)
    result = t.translate("total ETH fees")
    assert "SUM(feeAmount) AS total_feeAmount" in result.sql
    assert result.parameters == {"p_assetTicker_0": "ETH"}
    assert result.confidence == pytest.approx(0.88)
    assert result.alternatives == ["Average fee instead"]
    assert result.mode == "openai"


def test_llm_unknown_column_asks_for_column(catalog, monkeypatch):
    payload = '{"intent": "aggregation", "aggregations": [{"column": "profit", "function": "sum"}]}'
    monkeypatch.setattr(llm_client, "call_llm", lambda prompt, provider=None: payload)
    result = QueryTranslator(catalog, mode="openai", today=TODAY).translate("total profit")
    assert result.needs_column_selection
    assert result.sql == ""


def test_llm_garbage_falls_back_to_rules(catalog, monkeypatch):
    monkeypatch.setattr(llm_client, "call_llm", lambda prompt, provider=None: "I am not JSON")
    result = QueryTranslator(catalog, mode="openai", today=TODAY).translate("how many transactions in 2024")
    assert result.parse.metadata["source"] == "rules"
    assert "COUNT(*)" in result.sql


def test_llm_malformed_between_falls_back_to_rules(catalog, monkeypatch):
    payload = (
        '{"intent": "aggregation", "assets": ["BTC"], '
        '"filters": [{"column": "dateTime", "operator": "BETWEEN", "value": "2024-01-01 and 2024-02-01"}], '
        '"aggregations": [{"column": "assetAmount", "function": "sum"}]}'
    )
    monkeypatch.setattr(llm_client, "call_llm", lambda prompt, provider=None: payload)
    result = QueryTranslator(catalog, mode="openai", today=TODAY).translate("total bitcoin bought last month")
    assert result.parse.metadata["source"] == "rules"
    assert result.parameters["p_dateTime_2_start"] == "2024-05-01"
    assert result.parameters["p_dateTime_2_end"] == "2024-05-31"


# ── Filter value shapes ──────────────────────────────────

@pytest.mark.parametrize("value", ["2024-01-01 and 2024-02-01", None, ["2024-01-01"], ["2024-01-01", None]])
def test_between_requires_a_pair(value):
    with pytest.raises(ValidationError, match="BETWEEN"):
        FilterCondition(column="dateTime", operator="BETWEEN", value=value)


@pytest.mark.parametrize("operator", ["IN", "NOT IN"])
def test_in_list_must_not_be_empty(operator):
    with pytest.raises(ValidationError, match="at least one value"):
        FilterCondition(column="assetTicker", operator=operator, value=[])


def test_in_list_scalar_is_wrapped(catalog):
    f = FilterCondition(column="assetTicker", operator="IN", value="BTC")
    assert f.value == ["BTC"]
    built = build_sql(QueryParseResult(filters=[f]), catalog, "t")
    assert "assetTicker IN (@p_assetTicker_0)" in built.sql


# ── Alias precedence and ambiguity ───────────────────────

@pytest.fixture
def ledger():
    def number(column, *aliases):
        return FieldMetadata(column=column, description="", type="number", category="amount",
                             aliases=aliases, aggregatable=True)

    return FieldCatalog(name="ledger", fields=(
        FieldMetadata(column="dateTime", description="", type="timestamp", category="temporal"),
        number("feeAmount", "fees", "charges"),
        number("costBasis", "cost", "charges", "outlay"),
        number("gasAmount", "gas", "charges", "outlay"),
    ))


def test_exact_alias_outranks_substring(ledger):
    t = QueryTranslator(ledger, mode="mock", today=TODAY, always_confirm=False)
    exact = t.translate("show all fees")
    partial = t.translate("show all networkfees")

    assert [(m.column, m.match, m.score) for m in exact.parse.columns] == [("feeAmount", "exact", 1.0)]
    assert [(m.column, m.match) for m in partial.parse.columns] == [("feeAmount", "substring")]
    assert partial.parse.columns[0].score < 1.0
    assert exact.confidence == pytest.approx(0.95)
    assert partial.confidence == pytest.approx(0.80)
    assert exact.alternatives == [] and partial.alternatives == []


def test_ambiguous_aliases_lower_confidence_and_rank_alternatives(ledger):
    t = QueryTranslator(ledger, mode="mock", today=TODAY, always_confirm=False)
    result = t.translate("show all charges and outlays")

    assert [m.column for m in result.parse.columns] == ["feeAmount", "costBasis"]
    assert result.confidence == pytest.approx(0.75)
    assert result.confidence < t.translate("show all fees").confidence
    assert result.alternatives == [
        '"charges" could refer to costBasis instead of feeAmount',
        '"outlay" could refer to gasAmount instead of costBasis',
        '"charges" could refer to gasAmount instead of feeAmount',
    ]
