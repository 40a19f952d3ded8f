"""
Lots report -- open tax lots with remaining quantity as of a date.
"""
from __future__ import annotations

import time
from typing import Any

from src.core.logging import get_logger
from src.core.utils import parse_int
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
    "unitsAcquired",
    "unitsDisposed",
    "qty",
    "costBasisAcquired",
    "costBasisRelieved",
    "costBasis",
    "impairmentExpense",
    "impairmentReversal",
    "revaluationAdjustmentUpward",
    "revaluationAdjustmentDownward",
    "carryingValue",
    "adjustedToValue",
)

_CARRYING = (
    "SUM(costBasisAcquired) - SUM(costBasisRelieved) - SUM(impairmentExpense)"
    " + SUM(impairmentReversal) + SUM(impairmentExpenseDisposed)"
)

METADATA = ReportMetadata(
    id="lots-report",
    name="Lots Report",
    description="Open acquisition lots with remaining quantity, cost basis and carrying value",
    keywords=("lots", "lot", "tax lots", "acquisitions", "cost basis", "unrealized", "impaired"),
    parameters=(
        ReportParameter("asOfDate", "date", default=DEFAULT_AS_OF, label="As-of date",
                        description="Snapshot date (end of day, YYYY-MM-DD)"),
        ReportParameter("runId", "string", description="Calculation run identifier"),
        ReportParameter("orgId", "string", description="Organization identifier"),
        ReportParameter("assets", "string", multiple=True, description="Asset tickers to include"),
        ReportParameter("includeDisposed", "boolean", default=False,
                        description="Keep fully disposed lots"),
        ReportParameter("minQty", "number", description="Minimum remaining quantity"),
        ReportParameter("onlyImpaired", "boolean", default=False, description="Only lots with impairments"),
        ReportParameter("maxAgeDays", "number", description="Only lots acquired within this many days"),
        ReportParameter("limit", "number", default=DEFAULT_ROW_LIMIT, description="Maximum rows returned"),
    ),
    compatible_schema_types=("actions",),
    catalog="lots-report",
)


class LotsReport(ReportGenerator):
    metadata = METADATA
    columns = ("lotId", "txnId", "asset", "assetId", "timestampSEC") + _AMOUNT_COLUMNS
    numeric_columns = _AMOUNT_COLUMNS

    def build_query(self, params: dict[str, Any], filters: dict[str, Any] | None = None) -> BuiltQuery:
        filters = filters or {}
        table = self.table()
        binder = ParamBinder()

        where: list[str] = []
        if params.get("runId"):
            where.append(f"runId = {binder.scalar('runId', params['runId'])}")
        if params.get("orgId"):
            where.append(f"orgId = {binder.scalar('orgId', params['orgId'])}")
        as_of = binder.scalar("asOfDate", params.get("asOfDate") or DEFAULT_AS_OF)
        where.append(f"timestampSEC <= UNIX_SECONDS(TIMESTAMP(DATE({as_of}) || ' 23:59:59'))")
        assets = params.get("assets") or filters.get("assets") or []
        if assets:
            where.append(f"asset IN {binder.in_list('assets', assets)}")
        if params.get("maxAgeDays"):
            cutoff = int(time.time()) - int(params["maxAgeDays"]) * 86400
            where.append(f"lotAcquisitionTimestampSEC >= {binder.scalar('minAcquiredSEC', cutoff)}")

        having: list[str] = []
        if not params.get("includeDisposed"):
            having.append("SUM(assetUnitAdj) > 0")
        if params.get("minQty"):
            having.append(f"SUM(assetUnitAdj) >= {binder.scalar('minQty', params['minQty'])}")
        if params.get("onlyImpaired"):
            having.append("SUM(impairmentExpense) > 0")

        units = "IFNULL(CAST(assetUnitAdj AS BIGNUMERIC), 0)"
        lines = [
            "WITH actions AS (",
            "  SELECT",
            "    runId, lotId, lotAcquisitionTimestampSEC, asset, assetId, action, status, inventory,",
            f"    {units} AS assetUnitAdj,",
            f"    IF({units} > 0, {units}, 0) AS unitsAcquired,",
            f"    IF({units} > 0, 0, ABS({units})) AS unitsDisposed,",
            "    IFNULL(CAST(costBasisAcquired AS BIGNUMERIC), 0) AS costBasisAcquired,",
            "    IFNULL(CAST(originalCostBasisDisposed AS BIGNUMERIC), 0) AS costBasisRelieved,",
            "    IFNULL(CAST(impairmentExpense AS BIGNUMERIC), 0) AS impairmentExpense,",
            "    IFNULL(CAST(impairmentReversal AS BIGNUMERIC), 0) AS impairmentReversal,",
            "    IFNULL(CAST(revaluationAdjustmentUpward AS BIGNUMERIC), 0) AS revaluationAdjustmentUpward,",
            "    IFNULL(CAST(revaluationAdjustmentDownward AS BIGNUMERIC), 0) AS revaluationAdjustmentDownward,",
            "    IFNULL(CAST(impairmentExpenseDisposed AS BIGNUMERIC), 0) AS impairmentExpenseDisposed,",
            "    txnId, eventId",
            f"  FROM {table.qualified}",
            "  WHERE " + "\n    AND ".join(where),
            "),",
            "lot_to_txn AS (",
            "  SELECT txnId, lotId",
            "  FROM actions",
            "  WHERE LOWER(actions.action) = 'buy'",
            "  GROUP BY txnId, lotId",
            ")",
            "SELECT",
            "  actions.lotId,",
            "  ltt.txnId,",
            "  asset,",
            "  assetId,",
            "  lotAcquisitionTimestampSEC AS timestampSEC,",
            "  SUM(unitsAcquired) AS unitsAcquired,",
            "  SUM(unitsDisposed) AS unitsDisposed,",
            "  SUM(assetUnitAdj) AS qty,",
            "  SUM(costBasisAcquired) AS costBasisAcquired,",
            "  SUM(costBasisRelieved) AS costBasisRelieved,",
            "  SUM(impairmentExpense) AS impairmentExpense,",
            "  SUM(impairmentReversal) AS impairmentReversal,",
            "  SUM(revaluationAdjustmentUpward) AS revaluationAdjustmentUpward,",
            "  SUM(revaluationAdjustmentDownward) AS revaluationAdjustmentDownward,",
            "  (SUM(costBasisAcquired) - SUM(costBasisRelieved)) AS costBasis,",
            f"  ({_CARRYING}) AS carryingValue,",
            f"  ({_CARRYING} + SUM(revaluationAdjustmentUpward) - SUM(revaluationAdjustmentDownward)) AS adjustedToValue",
            "FROM actions",
            "LEFT JOIN lot_to_txn ltt ON ltt.lotId = actions.lotId",
            "GROUP BY actions.lotId, ltt.txnId, lotAcquisitionTimestampSEC, asset, assetId",
        ]
        if having:
            lines.append("HAVING " + " AND ".join(having))
        lines.append("ORDER BY lotAcquisitionTimestampSEC DESC, actions.lotId DESC")
        lines.append(f"LIMIT {int(params.get('limit') or DEFAULT_ROW_LIMIT)}")
        return binder.build("\n".join(lines))

    def transform(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        records = super().transform(rows)
        for r in records:
            r["lotId"] = r.get("lotId") or ""
            r["asset"] = r.get("asset") or ""
            r["timestampSEC"] = parse_int(r.get("timestampSEC"))
            if r["qty"] < 0:
                logger.warning("Lot %s has negative quantity: %s", r["lotId"], r["qty"])
        return records

    def summarize(self, records: list[dict[str, Any]]) -> dict[str, Any]:
        now = int(time.time())
        assets: dict[str, dict[str, Any]] = {}
        for r in records:
            a = assets.setdefault(r["asset"], {
                "lotCount": 0, "totalQty": 0.0, "totalCostBasis": 0.0, "totalCarryingValue": 0.0,
            })
            a["lotCount"] += 1
            a["totalQty"] += r["qty"]
            a["totalCostBasis"] += r["costBasis"]
            a["totalCarryingValue"] += r["carryingValue"]
        for a in assets.values():
            a["avgLotSize"] = a["totalQty"] / a["lotCount"]

        ages = [(now - r["timestampSEC"]) / 86400 for r in records if r["timestampSEC"]]
        return {
            "totalLots": len(records),
            "totalPortfolioValue": sum(r["carryingValue"] for r in records),
            "totalCostBasis": sum(r["costBasis"] for r in records),
            "totalUnrealizedGL": sum(r["adjustedToValue"] - r["costBasis"] for r in records),
            "impairedLots": sum(1 for r in records if r["impairmentExpense"] > 0),
            "averageLotAgeDays": round(sum(ages) / len(ages), 1) if ages else 0.0,
            "assetBreakdown": assets,
        }
