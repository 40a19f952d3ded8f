"""
Inventory balance report -- point-in-time snapshot of positions.

Per asset / inventory (optionally per subsidiary) as of a date:
  - quantity held
  - net cost basis (acquired - relieved)
  - carrying value (cost basis adjusted for impairments and reversals)
  - fair value / revaluation adjustment components
"""
from __future__ import annotations

from typing import Any

from src.core.logging import get_logger
from src.reports.base import (
    DEFAULT_ROW_LIMIT,
    BuiltQuery,
    ParamBinder,
    ReportGenerator,
    ReportMetadata,
    ReportParameter,
)

logger = get_logger(__name__)

DEFAULT_AS_OF = "2050-12-31"

_AMOUNT_COLUMNS = (
    "qty",
    "costBasisAcquired",
    "costBasisRelieved",
    "impairmentExpense",
    "impairmentExpenseReversal",
    "fairValueAdjustmentUpward",
    "fairValueAdjustmentDownward",
    "revaluationAdjustmentUpward",
    "revaluationAdjustmentDownward",
    "impairmentExpenseDisposed",
    "costBasis",
    "carryingValue",
)

# source column -> alias in the actions CTE
_CTE_COLUMNS = (
    ("assetUnitAdj", "qty"),
    ("costBasisAcquired", "costBasisAcquired"),
    ("originalCostBasisDisposed", "costBasisRelieved"),
    ("impairmentExpense", "impairmentExpense"),
    ("impairmentReversal", "impairmentExpenseReversal"),
    ("fairValueAdjustmentUpward", "fairValueAdjustmentUpward"),
    ("fairValueAdjustmentDownward", "fairValueAdjustmentDownward"),
    ("revaluationAdjustmentUpward", "revaluationAdjustmentUpward"),
    ("revaluationAdjustmentDownward", "revaluationAdjustmentDownward"),
    ("impairmentExpenseDisposed", "impairmentExpenseDisposed"),
)

_CARRYING_VALUE = (
    "SUM(costBasisAcquired) - SUM(costBasisRelieved) - SUM(impairmentExpense)"
    " + SUM(impairmentExpenseReversal) + SUM(impairmentExpenseDisposed)"
)

METADATA = ReportMetadata(
    id="inventory-balance",
    name="Inventory Balance Report",
    description="Point-in-time inventory positions with quantity, cost basis and carrying value",
    keywords=("inventory", "balance", "position", "holdings", "assets", "snapshot", "current", "portfolio"),
    parameters=(
        ReportParameter("asOfDate", "date", default=DEFAULT_AS_OF, label="As-of date",
                        description="Snapshot date (end of day, YYYY-MM-DD)"),
        ReportParameter("runId", "string", description="Calculation run identifier"),
        ReportParameter("orgId", "string", description="Organization identifier"),
        ReportParameter("assets", "string", multiple=True, description="Asset tickers to include"),
        ReportParameter("inventories", "string", multiple=True, description="Inventories to include"),
        ReportParameter("subsidiaries", "string", multiple=True, description="Subsidiaries to include"),
        ReportParameter("groupBy", "string", multiple=True,
                        description="Extra grouping: asset, inventory, subsidiary"),
        ReportParameter("excludeZeroBalances", "boolean", default=True,
                        description="Hide positions with zero quantity and cost basis"),
        ReportParameter("minValue", "number", description="Minimum absolute carrying value"),
        ReportParameter("limit", "number", default=DEFAULT_ROW_LIMIT, description="Maximum rows returned"),
    ),
    compatible_schema_types=("actions",),
    catalog="inventory-balance",
)


class InventoryBalanceReport(ReportGenerator):
    metadata = METADATA
    columns = ("asset", "assetId", "inventory", "subsidiaryId") + _AMOUNT_COLUMNS
    numeric_columns = _AMOUNT_COLUMNS

    @staticmethod
    def _group_columns(group_by: list[str]) -> list[str]:
        cols = ["asset", "assetId", "inventory"]
        if "subsidiary" in group_by:
            cols.append("subsidiaryId")
        return cols

    def build_query(self, params: dict[str, Any], filters: dict[str, Any] | None = None) -> BuiltQuery:
        filters = filters or {}
        table = self.table()
        binder = ParamBinder()

        where: list[str] = []
        if params.get("runId"):
            where.append(f"t.runId = {binder.scalar('runId', params['runId'])}")
        if params.get("orgId"):
            where.append(f"t.orgId = {binder.scalar('orgId', params['orgId'])}")
        as_of = binder.scalar("asOfDate", params.get("asOfDate") or DEFAULT_AS_OF)
        where.append(f"t.timestampSEC <= UNIX_SECONDS(TIMESTAMP(DATE({as_of}) || ' 23:59:59'))")
        for key, column in (("assets", "asset"), ("inventories", "inventory"), ("subsidiaries", "subsidiaryId")):
            values = params.get(key) or filters.get(key) or []
            if values:
                where.append(f"t.{column} IN {binder.in_list(key, values)}")

        having: list[str] = []
        if params.get("excludeZeroBalances", True):
            having.append("(SUM(qty) != 0 OR (SUM(costBasisAcquired) - SUM(costBasisRelieved)) != 0)")
        if params.get("minValue"):
            having.append(f"ABS({_CARRYING_VALUE}) >= {binder.scalar('minValue', params['minValue'])}")

        group_cols = self._group_columns(params.get("groupBy") or [])
        cte_select = ",\n    ".join(
            f"IFNULL(CAST({src} AS BIGNUMERIC), 0) AS {alias}" for src, alias in _CTE_COLUMNS
        )

        lines = [
            "WITH deduplicated_actions AS (",
            "  SELECT AS VALUE ANY_VALUE(t)",
            f"  FROM {table.qualified} AS t",
            "  WHERE " + "\n    AND ".join(where),
            "  GROUP BY t.eventId, t.lotId, t.inventory",
            "),",
            "actions AS (",
            "  SELECT",
            "    asset, assetId, inventory,",
            "    COALESCE(subsidiaryId, 'DEFAULT') AS subsidiaryId,",
            f"    {cte_select}",
            "  FROM deduplicated_actions",
            ")",
            "SELECT",
            f"  {', '.join(group_cols)},",
            "  SUM(qty) AS qty,",
            "  SUM(costBasisAcquired) AS costBasisAcquired,",
            "  SUM(costBasisRelieved) AS costBasisRelieved,",
            "  SUM(impairmentExpense) - SUM(impairmentExpenseDisposed) AS impairmentExpense,",
            "  SUM(impairmentExpenseReversal) AS impairmentExpenseReversal,",
            "  SUM(fairValueAdjustmentUpward) AS fairValueAdjustmentUpward,",
            "  SUM(fairValueAdjustmentDownward) AS fairValueAdjustmentDownward,",
            "  SUM(revaluationAdjustmentUpward) AS revaluationAdjustmentUpward,",
            "  SUM(revaluationAdjustmentDownward) AS revaluationAdjustmentDownward,",
            "  SUM(impairmentExpenseDisposed) AS impairmentExpenseDisposed,",
            "  (SUM(costBasisAcquired) - SUM(costBasisRelieved)) AS costBasis,",
            f"  ({_CARRYING_VALUE}) AS carryingValue",
            "FROM actions",
            "GROUP BY " + ", ".join(group_cols),
        ]
        if having:
            lines.append("HAVING " + " AND ".join(having))
        lines.append("ORDER BY asset ASC, inventory ASC")
        lines.append(f"LIMIT {int(params.get('limit') or DEFAULT_ROW_LIMIT)}")
        return binder.build("\n".join(lines))

    def transform(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        records = super().transform(rows)
        for r in records:
            r["asset"] = r.get("asset") or ""
            r["inventory"] = r.get("inventory") or ""
            if r.get("subsidiaryId") == "DEFAULT":
                r["subsidiaryId"] = None
            if abs(r["costBasis"] - (r["costBasisAcquired"] - r["costBasisRelieved"])) > 0.01:
                logger.warning("Cost basis mismatch for %s/%s", r["asset"], r["inventory"])
        return records

    def summarize(self, records: list[dict[str, Any]]) -> dict[str, Any]:
        total_value = sum(r["carryingValue"] for r in records)
        total_cost = sum(r["costBasis"] for r in records)

        def pct(v: float) -> float:
            return round(v / total_value * 100, 2) if total_value else 0.0

        assets: dict[str, dict[str, Any]] = {}
        inventories: dict[str, dict[str, Any]] = {}
        for r in records:
            a = assets.setdefault(r["asset"], {"totalQty": 0.0, "totalValue": 0.0, "totalCostBasis": 0.0, "inventoryCount": 0})
            a["totalQty"] += r["qty"]
            a["totalValue"] += r["carryingValue"]
            a["totalCostBasis"] += r["costBasis"]
            a["inventoryCount"] += 1
            inv = inventories.setdefault(r["inventory"], {"assetCount": 0, "totalValue": 0.0})
            inv["assetCount"] += 1
            inv["totalValue"] += r["carryingValue"]
        for bucket in (*assets.values(), *inventories.values()):
            bucket["percentOfPortfolio"] = pct(bucket["totalValue"])

        return {
            "totalRecords": len(records),
            "totalAssets": len(assets),
            "totalInventories": len(inventories),
            "portfolioSummary": {
                "totalPortfolioValue": total_value,
                "totalCostBasis": total_cost,
                "totalUnrealizedGL": total_value - total_cost,
                "totalImpairments": sum(r["impairmentExpense"] for r in records),
            },
            "assetBreakdown": assets,
            "inventoryBreakdown": inventories,
        }
