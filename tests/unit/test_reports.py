"""
Unit tests -- report registry and report SQL generators.
"""
import pytest

from src.core.errors import ConnectionResolutionError, ReportExecutionError, ReportValidationError
from src.db.executor import QueryExecutor
from src.reports.base import ParamBinder, ReportMetadata, StaticConnectionResolver, quote_literal
from src.reports.inventory_balance import InventoryBalanceReport
from src.reports.lots import LotsReport
from src.reports.monthly_activity import MonthlyActivityReport
from src.reports.registry import ReportRegistry, build_registry, get_registry
from src.reports.valuation_rollforward import ValuationRollforwardReport


RESOLVER = StaticConnectionResolver("proj", "ledger", "transactions")


def _executor(rows):
    return QueryExecutor(backend=lambda sql, params: rows, max_retries=0, timeout_ms=5000, cache=None)


# ── Registry ─────────────────────────────────────────────

def test_builtin_reports_registered():
    registry = get_registry()
    ids = {m.id for m in registry.all()}
    assert ids == {"monthly-activity-report", "inventory-balance", "valuation-rollforward", "lots-report"}


def test_duplicate_registration_rejected():
    registry = ReportRegistry()
    registry.register(MonthlyActivityReport.metadata, MonthlyActivityReport)
    with pytest.raises(ValueError, match="already registered"):
        registry.register(MonthlyActivityReport.metadata, MonthlyActivityReport)


def test_registry_frozen_after_build():
    registry = build_registry()
    with pytest.raises(RuntimeError):
        registry.register(ReportMetadata(id="x", name="X", description="x"), MonthlyActivityReport)


def test_get_by_id_returns_fresh_generator():
    registry = get_registry()
    first = registry.get_by_id("monthly-activity-report", RESOLVER)
    second = registry.get_by_id("monthly-activity-report", RESOLVER)
    assert first.found and second.found
    assert first.metadata.id == "monthly-activity-report"
    assert first.generator is not second.generator
    assert first.generator.resolver is RESOLVER


def test_get_by_id_unknown():
    lookup = get_registry().get_by_id("no-such-report", RESOLVER)
    assert not lookup.found
    assert "not found" in lookup.error


def test_get_by_id_construction_failure_is_reported():
    def broken(resolver, executor):
        raise RuntimeError("boom")

    registry = ReportRegistry()
    registry.register(ReportMetadata(id="broken", name="Broken", description=""), broken)
    lookup = registry.get_by_id("broken", RESOLVER)
    assert not lookup.found
    assert "boom" in lookup.error
    assert lookup.metadata.id == "broken"


def test_list_for_schema_type():
    registry = get_registry()
    assert len(registry.list_for_schema_type(None)) == 4
    canton = [m.id for m in registry.list_for_schema_type("canton_transaction")]
    assert canton == ["monthly-activity-report"]
    actions = {m.id for m in registry.list_for_schema_type("actions")}
    assert actions == {"inventory-balance", "valuation-rollforward", "lots-report"}


def test_universal_report_matches_every_schema_type():
    registry = ReportRegistry()
    registry.register(ReportMetadata(id="u", name="Universal", description=""), MonthlyActivityReport)
    assert [m.id for m in registry.list_for_schema_type("anything")] == ["u"]


def test_search_case_insensitive_union():
    registry = get_registry()
    assert [m.id for m in registry.search("LOTS")] == ["lots-report"]
    # keyword only
    assert "inventory-balance" in [m.id for m in registry.search("holdings")]
    assert registry.search("   ") == []


# ── Binding helpers ──────────────────────────────────────

def test_param_binder_in_list_and_preview():
    binder = ParamBinder()
    placeholder = binder.in_list("assets", ["BTC", "ETH"])
    built = binder.build(f"SELECT 1 WHERE assetTicker IN {placeholder}")
    assert placeholder == "(@assets_0, @assets_1)"
    assert built.parameters == {"assets_0": "BTC", "assets_1": "ETH"}
    assert "assetTicker IN ('BTC', 'ETH')" in built.preview
    assert "'BTC'" not in built.sql


def test_quote_literal_escapes_quotes():
    assert quote_literal("O'Brien") == "'O\\'Brien'"


# ── Monthly activity ─────────────────────────────────────

def test_monthly_activity_filters_in_preview():
    gen = MonthlyActivityReport(RESOLVER)
    params = gen.validate({"walletId": "w1", "startDate": "2024-01-01"})
    built = gen.build_query(params, {"assets": ["BTC", "ETH"], "operations": ["buy"]})
    assert "assetTicker IN ('BTC', 'ETH')" in built.preview
    assert "operation IN ('buy')" in built.preview
    assert "walletId = @walletId" in built.sql
    assert built.parameters["walletId"] == "w1"
    assert built.parameters["startDate"] == "2024-01-01"
    assert "FROM `proj.ledger.transactions`" in built.sql
    assert "LIMIT 5000" in built.sql


def test_monthly_activity_values_never_inlined():
    gen = MonthlyActivityReport(RESOLVER)
    params = gen.validate({"walletId": "x' OR '1'='1", "startDate": "2024-01-01", "endDate": "2024-02-01"})
    built = gen.build_query(params)
    assert "OR '1'='1" not in built.sql
    assert built.parameters["walletId"] == "x' OR '1'='1"


def test_monthly_activity_missing_wallet():
    gen = MonthlyActivityReport(RESOLVER)
    with pytest.raises(ReportValidationError) as exc_info:
        gen.validate({"startDate": "2024-01-01"})
    assert exc_info.value.field == "walletId"
    assert "walletId" in str(exc_info.value)


def test_monthly_activity_end_date_defaults_today():
    gen = MonthlyActivityReport(RESOLVER)
    params = gen.validate({"walletId": "w1", "startDate": "2024-01-01"})
    assert len(params["endDate"]) == 10


def test_invalid_date_rejected():
    gen = MonthlyActivityReport(RESOLVER)
    with pytest.raises(ReportValidationError) as exc_info:
        gen.validate({"walletId": "w1", "startDate": "01/02/2024"})
    assert exc_info.value.field == "startDate"


def test_list_parameter_accepts_comma_string():
    gen = MonthlyActivityReport(RESOLVER)
    params = gen.validate({"walletId": "w1", "startDate": "2024-01-01", "assets": "BTC, ETH"})
    assert params["assets"] == ["BTC", "ETH"]


def test_unresolved_connection():
    gen = MonthlyActivityReport(StaticConnectionResolver("proj", "", "transactions"))
    params = gen.validate({"walletId": "w1", "startDate": "2024-01-01"})
    with pytest.raises(ConnectionResolutionError, match="projectId, datasetId, or tableId"):
        gen.build_query(params)


def test_monthly_activity_generate_report():
    rows = [
        {"year_month": "2024-01", "operation": "buy", "assetTicker": "BTC", "totalAssetAmount": "1.5", "totaltxncount": 3},
        {"year_month": "2024-02", "operation": "sell", "assetTicker": "BTC", "totalAssetAmount": None, "totaltxncount": "2"},
        {"year_month": "2024-02", "operation": "buy", "assetTicker": "ETH", "totalAssetAmount": "abc", "totaltxncount": 1},
    ]
    gen = MonthlyActivityReport(RESOLVER, _executor(rows))
    result = gen.generate_report({"walletId": "w1", "startDate": "2024-01-01", "endDate": "2024-02-29"})
    assert result.report_id == "monthly-activity-report"
    assert result.metadata["total_records"] == 3
    assert result.data[1]["totalAssetAmount"] == 0.0
    assert result.data[2]["totalAssetAmount"] == 0.0
    summary = result.metadata["summary"]
    assert summary["totalMonths"] == 2
    assert summary["totalOperations"] == 2
    assert summary["totalAssets"] == 2
    assert summary["totalTransactionCount"] == 6
    assert summary["totalAssetAmount"] == 1.5
    assert result.metadata["period"]["walletId"] == "w1"


def test_generate_report_execution_failure():
    def failing(sql, params):
        raise RuntimeError("Access Denied: Table proj:ledger.transactions")

    gen = MonthlyActivityReport(RESOLVER, QueryExecutor(backend=failing, max_retries=2, cache=None))
    with pytest.raises(ReportExecutionError, match="Access Denied"):
        gen.generate_report({"walletId": "w1", "startDate": "2024-01-01"})


# ── Inventory balance ────────────────────────────────────

def test_inventory_balance_defaults_and_filters():
    gen = InventoryBalanceReport(RESOLVER)
    params = gen.validate({"assets": ["BTC"], "subsidiaries": "sub-1", "groupBy": "subsidiary"})
    assert params["asOfDate"] == "2050-12-31"
    assert params["excludeZeroBalances"] is True
    built = gen.build_query(params)
    assert "t.asset IN ('BTC')" in built.preview
    assert "t.subsidiaryId IN ('sub-1')" in built.preview
    assert "GROUP BY asset, assetId, inventory, subsidiaryId" in built.sql
    assert "HAVING (SUM(qty) != 0" in built.sql


def test_inventory_balance_include_zero_and_min_value():
    gen = InventoryBalanceReport(RESOLVER)
    params = gen.validate({"excludeZeroBalances": "false", "minValue": "100"})
    built = gen.build_query(params)
    assert "SUM(qty) != 0" not in built.sql
    assert "@minValue" in built.sql
    assert built.parameters["minValue"] == 100


def test_inventory_balance_summary_percentages():
    gen = InventoryBalanceReport(RESOLVER)
    records = gen.transform([
        {"asset": "BTC", "inventory": "main", "qty": 1, "costBasis": 60, "costBasisAcquired": 60, "carryingValue": 75},
        {"asset": "ETH", "inventory": "main", "qty": 2, "costBasis": 20, "costBasisAcquired": 20, "carryingValue": 25},
    ])
    summary = gen.summarize(records)
    assert summary["portfolioSummary"]["totalPortfolioValue"] == 100
    assert summary["portfolioSummary"]["totalUnrealizedGL"] == 20
    assert summary["assetBreakdown"]["BTC"]["percentOfPortfolio"] == 75.0
    assert summary["inventoryBreakdown"]["main"]["assetCount"] == 2


# ── Valuation rollforward ────────────────────────────────

def test_rollforward_requires_both_dates():
    gen = ValuationRollforwardReport(RESOLVER)
    with pytest.raises(ReportValidationError) as exc_info:
        gen.validate({"startDate": "2024-01-01"})
    assert exc_info.value.field == "endDate"


def test_rollforward_grouping():
    gen = ValuationRollforwardReport(RESOLVER)
    params = gen.validate({"startDate": "2024-01-01", "endDate": "2024-03-31", "groupBy": ["wallet"]})
    built = gen.build_query(params)
    assert "GROUP BY asset, original_wallet" in built.sql
    assert "sb.original_wallet = inc.original_wallet" in built.sql
    assert built.parameters["startDate"] == "2024-01-01"


def test_rollforward_summary():
    gen = ValuationRollforwardReport(RESOLVER)
    records = gen.transform([{
        "asset": "BTC", "starting_cost_basis": 100, "cost_basis_acquired": 50, "cost_basis_disposed": 30,
        "ending_cost_basis": 120, "ending_carrying_value": 110, "period_shortterm_gainloss": 5,
        "period_longterm_gainloss": 7, "impairment_expense": 10, "impairment_reversal": 2,
    }])
    summary = gen.summarize(records)
    assert summary["periodActivity"]["netCostBasisChange"] == 20
    assert summary["periodActivity"]["totalRealizedGainLoss"] == 12
    assert summary["portfolioMovement"]["portfolioChange"] == 10
    assert summary["impairmentActivity"]["netImpairmentChange"] == 8


# ── Lots ─────────────────────────────────────────────────

def test_lots_having_clauses():
    gen = LotsReport(RESOLVER)
    params = gen.validate({"minQty": "0.5", "onlyImpaired": "yes"})
    built = gen.build_query(params)
    assert "SUM(assetUnitAdj) > 0" in built.sql
    assert "SUM(assetUnitAdj) >= @minQty" in built.sql
    assert "SUM(impairmentExpense) > 0" in built.sql


def test_lots_summary():
    gen = LotsReport(RESOLVER)
    records = gen.transform([
        {"lotId": "l1", "asset": "BTC", "qty": 1, "costBasis": 10, "carryingValue": 9,
         "adjustedToValue": 12, "impairmentExpense": 1, "timestampSEC": 0},
        {"lotId": "l2", "asset": "BTC", "qty": 3, "costBasis": 30, "carryingValue": 30,
         "adjustedToValue": 30, "impairmentExpense": 0, "timestampSEC": None},
    ])
    summary = gen.summarize(records)
    assert summary["totalLots"] == 2
    assert summary["impairedLots"] == 1
    assert summary["totalUnrealizedGL"] == 2
    assert summary["assetBreakdown"]["BTC"]["avgLotSize"] == 2


# ── Row cap ──────────────────────────────────────────────

@pytest.mark.parametrize("report_cls,raw", [
    (MonthlyActivityReport, {"walletId": "w1", "startDate": "2024-01-01"}),
    (InventoryBalanceReport, {}),
    (ValuationRollforwardReport, {"startDate": "2024-01-01", "endDate": "2024-03-31"}),
    (LotsReport, {}),
])
def test_row_cap_defaults_to_5000(report_cls, raw):
    gen = report_cls(RESOLVER)
    params = gen.validate(raw)
    assert params["limit"] == 5000
    assert gen.build_query(params).sql.endswith("LIMIT 5000")


@pytest.mark.parametrize("report_cls", [InventoryBalanceReport, LotsReport])
def test_row_cap_override(report_cls):
    gen = report_cls(RESOLVER)
    assert gen.build_query(gen.validate({"limit": "25"})).sql.endswith("LIMIT 25")
