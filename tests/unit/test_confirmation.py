"""
Unit tests -- confirmation, error and column-selection prompts.
"""
import pytest

from src.nlq.confirmation import ConfirmationFormatter, column_bucket, confidence_level, group_columns
from src.nlq.intent import ClauseDescriptions, TranslationResult
from src.reports.monthly_activity import METADATA as MONTHLY


def _translation(**kwargs):
    defaults = dict(
        original_query="total bitcoin bought last month",
        interpreted_query="You want to see the total asset amount.",
        sql="SELECT SUM(assetAmount) FROM t WHERE assetTicker = @p_assetTicker",
        sql_preview="SELECT SUM(assetAmount) FROM t WHERE assetTicker = @p_assetTicker",
        confidence=0.92,
        components=ClauseDescriptions(
            filter="assetTicker equals BTC",
            aggregation="Sum of assetAmount",
        ),
    )
    defaults.update(kwargs)
    return TranslationResult(**defaults)


# ── Confidence buckets ───────────────────────────────────

@pytest.mark.parametrize("score,label", [
    (0.92, "Very High"),
    (0.90, "Very High"),
    (0.75, "High"),
    (0.6, "Moderate"),
    (0.50, "Moderate"),
    (0.25, "Low"),
    (0.1, "Very Low"),
    (0.0, "Very Low"),
])
def test_confidence_level(score, label):
    assert confidence_level(score) == label


# ── Interpretation prompt ────────────────────────────────

def test_confirmation_layout():
    fmt = ConfirmationFormatter(include_sql=False, suggest_alternatives=True)
    out = fmt.format_confirmation(_translation())
    expected = (
        "You want to see the total asset amount.\n\n"
        "**Identify data where:**\n"
        "- assetTicker equals BTC\n\n"
        "**Calculate and show:**\n"
        "- Sum of assetAmount\n\n"
        "Confidence: Very High\n\n"
        "Is this interpretation correct? You can:\n"
        "1. Confirm by saying \"yes\" or \"correct\"\n"
        "2. Modify specific parts (e.g., \"change the date range to last 30 days\")\n"
        "3. Provide a completely new query\n"
    )
    assert out.content == expected
    assert out.needs_confirmation
    assert out.metadata["type"] == "confirmation"
    assert out.metadata["confidence_level"] == "Very High"


def test_confirmation_with_sql_and_alternatives():
    fmt = ConfirmationFormatter(include_sql=True, suggest_alternatives=True)
    out = fmt.format_confirmation(_translation(
        confidence=0.6,
        alternatives=["Use feeAmount instead of assetAmount", "Use assetvalueInBaseCurrency"],
        sql_preview="SELECT preview",
    ))
    assert "**SQL Query:**\n```sql\nSELECT preview\n```" in out.content
    assert "Confidence: Moderate" in out.content
    assert "**Alternative interpretations:**\n1. Use feeAmount instead of assetAmount\n2. Use" in out.content


def test_alternatives_suppressed():
    fmt = ConfirmationFormatter(include_sql=False, suggest_alternatives=False)
    out = fmt.format_confirmation(_translation(alternatives=["something else"]))
    assert "Alternative" not in out.content


def test_no_filters_reads_all_records():
    fmt = ConfirmationFormatter(include_sql=False)
    out = fmt.format_confirmation(_translation(components=ClauseDescriptions(aggregation="Count of records")))
    assert "**Identify data where:**\n- All records\n" in out.content


def test_multi_filter_list_kept():
    fmt = ConfirmationFormatter(include_sql=False)
    comps = ClauseDescriptions(filter="- assetTicker equals BTC\n- operation equals buy", limit="Limit to 10 results")
    out = fmt.format_confirmation(_translation(components=comps))
    assert "**Identify data where:**\n- assetTicker equals BTC\n- operation equals buy\n\n" in out.content
    assert "- Limit to 10 results\n" in out.content


# ── Errors ───────────────────────────────────────────────

def test_error_prompt():
    fmt = ConfirmationFormatter(include_sql=False)
    out = fmt.format_error("show me stuff", "Language model request failed: timeout")
    assert out.content.startswith('I encountered an error while processing your query: "show me stuff"\n\n')
    assert "**Error:** Language model request failed: timeout" in out.content
    assert "1. Try rephrasing your query to be more specific" in out.content
    assert not out.needs_confirmation
    assert out.metadata["type"] == "error"


# ── Column selection ─────────────────────────────────────

def test_column_buckets_first_match_wins():
    assert column_bucket("dateTime") == "Time"
    assert column_bucket("assetAmount") == "Asset"
    assert column_bucket("feeAmount") == "Quantity"
    assert column_bucket("walletId") == "Identifier"
    assert column_bucket("exchangeRate") == "Pricing"
    assert column_bucket("subsidiaryId") == "Identifier"
    assert column_bucket("xyz") == "Other"


def test_group_columns_drops_empty_buckets():
    groups = group_columns(["dateTime", "assetTicker", "zzz", "operation"])
    assert [b for b, _ in groups] == ["Time", "Asset", "Other"]
    assert groups[-1][1] == ["zzz", "operation"]


def test_column_selection_numbering():
    fmt = ConfirmationFormatter()
    out = fmt.format_column_selection(["zzz", "dateTime", "assetTicker"], "total by flavour")
    assert out.content.startswith("I'm not sure which columns you want to analyze for: \"total by flavour\"\n\n")
    assert "**Time Columns:**\n1. dateTime\n" in out.content
    assert "**Asset Columns:**\n2. assetTicker\n" in out.content
    assert "**Other Columns:**\n3. zzz\n" in out.content
    assert out.metadata["columns"] == ["dateTime", "assetTicker", "zzz"]
    assert '2. Type "use [column name]" to select a specific column' in out.content


# ── Reports ──────────────────────────────────────────────

def test_report_confirmation_missing_params():
    fmt = ConfirmationFormatter()
    out = fmt.format_report_confirmation(MONTHLY, {"startDate": "2024-01-01"}, ["walletId"])
    assert "**Total Activity Report - By Month and Type**" in out.content
    assert "- startDate: 2024-01-01" in out.content
    assert "- walletId (Wallet to report on)" in out.content
    assert not out.needs_confirmation


def test_report_confirmation_ready():
    fmt = ConfirmationFormatter()
    out = fmt.format_report_confirmation(MONTHLY, {"walletId": "w1", "assets": ["BTC", "ETH"]}, [])
    assert "- assets: BTC, ETH" in out.content
    assert out.needs_confirmation
    assert out.metadata["report_id"] == "monthly-activity-report"
