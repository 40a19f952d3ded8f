"""
Monthly activity report -- total activity by month and operation type.

Aggregates canton wallet transactions by calendar month, operation, asset,
addresses and fee / reward classification, with the transferred amount and
transaction count per group.
"""
from __future__ import annotations

from typing import Any

from src.reports.base import (
    DEFAULT_ROW_LIMIT,
    TODAY,
    BuiltQuery,
    ParamBinder,
    ReportGenerator,
    ReportMetadata,
    ReportParameter,
)

_DIMENSIONS = (
    "year_month",
    "operation",
    "assetTicker",
    "fromAddress",
    "toAddress",
    "feeType",
    "rewardFeeType",
    "rewardType",
)

METADATA = ReportMetadata(
    id="monthly-activity-report",
    name="Total Activity Report - By Month and Type",
    description="Monthly totals of wallet activity grouped by operation, asset and fee / reward type",
    keywords=("activity", "monthly", "transactions", "summary", "canton", "wallet", "operations"),
    parameters=(
        ReportParameter("walletId", "string", required=True, label="Wallet ID",
                        description="Wallet to report on"),
        ReportParameter("startDate", "date", required=True, label="Start date",
                        description="First day of the report window (YYYY-MM-DD)"),
        ReportParameter("endDate", "date", required=True, label="End date", default=TODAY,
                        description="Last day of the report window, inclusive"),
        ReportParameter("assets", "string", multiple=True,
                        description="Asset tickers to include, e.g. BTC, ETH"),
        ReportParameter("operations", "string", multiple=True,
                        description="Operations to include, e.g. buy, sell"),
        ReportParameter("limit", "number", default=DEFAULT_ROW_LIMIT, description="Maximum rows returned"),
    ),
    compatible_schema_types=("canton_transaction",),
    catalog="monthly-activity-report",
)


class MonthlyActivityReport(ReportGenerator):
    metadata = METADATA
    columns = _DIMENSIONS + ("totalAssetAmount", "totaltxncount")
    numeric_columns = ("totalAssetAmount", "totaltxncount")

    def build_query(self, params: dict[str, Any], filters: dict[str, Any] | None = None) -> BuiltQuery:
        filters = filters or {}
        table = self.table()
        binder = ParamBinder()

        where = [
            f"walletId = {binder.scalar('walletId', params['walletId'])}",
            f"TIMESTAMP(dateTime) >= TIMESTAMP({binder.scalar('startDate', params['startDate'])})",
            f"TIMESTAMP(dateTime) < TIMESTAMP(DATE_ADD({binder.scalar('endDate', params['endDate'])}, INTERVAL 1 DAY))",
        ]
        assets = params.get("assets") or filters.get("assets") or []
        if assets:
            where.append(f"assetTicker IN {binder.in_list('assets', assets)}")
        operations = params.get("operations") or filters.get("operations") or []
        if operations:
            where.append(f"operation IN {binder.in_list('operations', operations)}")

        lines = [
            "SELECT",
            "  FORMAT_DATE('%Y-%m', DATE(dateTime)) AS year_month,",
            "  " + ",\n  ".join(_DIMENSIONS[1:]) + ",",
            "  SUM(assetAmount) AS totalAssetAmount,",
            "  COUNT(parenttransactionId) AS totaltxncount",
            f"FROM {table.qualified} AS details",
            "WHERE " + "\n  AND ".join(where),
            "GROUP BY " + ", ".join(_DIMENSIONS),
            "ORDER BY year_month, operation, assetTicker",
            f"LIMIT {int(params.get('limit') or DEFAULT_ROW_LIMIT)}",
        ]
        return binder.build("\n".join(lines))

    def summarize(self, records: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "totalMonths": len({r["year_month"] for r in records}),
            "totalOperations": len({r["operation"] for r in records}),
            "totalAssets": len({r["assetTicker"] for r in records}),
            "totalTransactionCount": sum(r["totaltxncount"] for r in records),
            "totalAssetAmount": sum(r["totalAssetAmount"] for r in records),
        }
