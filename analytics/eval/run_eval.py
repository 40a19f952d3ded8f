"""
Evaluation harness -- runs eval_questions.jsonl through the translator and
report detector, then generates analytics/reports/eval_report.md.

Checks:
  - Report routing       (report questions detected, ad-hoc ones not)
  - Intent correctness   (parsed intent matches expected)
  - Measure correctness  (aggregated column matches expected; null = COUNT(*))
  - Grouping correctness (grouped columns match expected, order-independent)
  - Column selection     (unresolvable questions ask instead of guessing)
  - SQL generation       (non-empty SQL for resolvable ad-hoc questions)
  - Latency              (translation ms)

Runs in mock mode against a fixed date so results are reproducible.
"""
from __future__ import annotations

import json
import sys
import datetime
from pathlib import Path
from typing import Any

EVAL_PATH = Path(__file__).resolve().parent / "eval_questions.jsonl"
REPORT_PATH = Path(__file__).resolve().parents[1] / "reports" / "eval_report.md"
EVAL_TODAY = datetime.date(2024, 6, 15)


def _load_questions() -> list[dict[str, Any]]:
    lines = EVAL_PATH.read_text().splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _run_one(q: dict[str, Any]) -> dict[str, Any]:
    """Run a single question through detection and translation."""
    from src.catalog.field_catalog import get_catalog
    from src.core.utils import timer
    from src.nlq.report_detector import detect_report
    from src.nlq.translator import QueryTranslator
    from src.reports.registry import get_registry

    question = q["question"]
    schema_type = q.get("schema_type", "canton_transaction")
    expected_report = q.get("expect_report")

    out: dict[str, Any] = {
        "question": question,
        "error": None,
        "report": None,
        "intent": None,
        "intent_ok": True,
        "measure_ok": True,
        "groups_ok": True,
        "selection_ok": True,
        "sql_generated": False,
        "generated_sql": "",
        "confidence": 0.0,
    }

    with timer() as t:
        try:
            detection = detect_report(question, get_registry(), schema_type, EVAL_TODAY)
            if detection.is_report_query and detection.confidence > 0.8:
                out["report"] = detection.report_id
            else:
                translator = QueryTranslator(get_catalog(schema_type), mode="mock", today=EVAL_TODAY)
                translation = translator.translate(question)
                out["confidence"] = translation.confidence
                out["generated_sql"] = translation.sql_preview or translation.sql
                out["sql_generated"] = bool(translation.sql)
                parse = translation.parse
                if parse is not None:
                    out["intent"] = parse.intent
                    measures = [a.column for a in parse.aggregations]
                    groups = {g.column for g in parse.group_by}
                    if "expected_intent" in q:
                        out["intent_ok"] = parse.intent == q["expected_intent"]
                    if "expected_measure" in q:
                        out["measure_ok"] = (measures[:1] or [None])[0] == q["expected_measure"]
                    if "expected_group_by" in q:
                        out["groups_ok"] = groups == set(q["expected_group_by"])
                out["selection_ok"] = translation.needs_column_selection == q.get("expect_column_selection", False)
        except Exception as exc:
            out["error"] = str(exc)

    out["latency_ms"] = t["elapsed_ms"]
    if out["error"]:
        out["success"] = False
    elif expected_report:
        out["success"] = out["report"] == expected_report
    elif q.get("expect_column_selection"):
        out["success"] = out["report"] is None and out["selection_ok"]
    else:
        out["success"] = (
            out["report"] is None
            and out["sql_generated"]
            and out["intent_ok"]
            and out["measure_ok"]
            and out["groups_ok"]
        )
    return out


def _rate(n: int, d: int) -> str:
    return f"**{(n / d * 100) if d else 0:.0f}%** ({n}/{d})"


def _generate_report(results: list[dict[str, Any]], questions: list[dict[str, Any]]) -> str:
    """Generate the Markdown eval report."""
    total = len(results)
    now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M")

    report_qs = [r for r, q in zip(results, questions) if q.get("expect_report")]
    adhoc_qs = [r for r, q in zip(results, questions) if not q.get("expect_report")]
    selection_qs = [r for r, q in zip(results, questions) if q.get("expect_column_selection")]
    resolvable_qs = [r for r in adhoc_qs if r not in selection_qs]

    successes = sum(1 for r in results if r["success"])
    routed = sum(1 for r in report_qs if r["success"])
    not_routed = sum(1 for r in adhoc_qs if r["report"] is None)
    intent_ok = sum(1 for r in resolvable_qs if r["intent_ok"])
    measure_ok = sum(1 for r in resolvable_qs if r["measure_ok"])
    groups_ok = sum(1 for r in resolvable_qs if r["groups_ok"])
    sql_gen = sum(1 for r in resolvable_qs if r["sql_generated"])
    selection_ok = sum(1 for r in selection_qs if r["selection_ok"])

    latencies = sorted(r["latency_ms"] for r in results)
    avg_lat = sum(latencies) / len(latencies) if latencies else 0
    p50_lat = latencies[len(latencies) // 2] if latencies else 0
    max_lat = latencies[-1] if latencies else 0

    lines: list[str] = []
    lines.append("# Evaluation Report")
    lines.append("")
    lines.append(
        f"> Generated: {now}  |  Questions: **{total}**  |  Mode: `mock`  |  Reference date: {EVAL_TODAY.isoformat()}"
    )
    lines.append("")
    lines.append("---")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Overall success rate | {_rate(successes, total)} |")
    lines.append(f"| Report routing | {_rate(routed, len(report_qs))} |")
    lines.append(f"| Ad-hoc kept out of reports | {_rate(not_routed, len(adhoc_qs))} |")
    lines.append(f"| Intent correctness | {_rate(intent_ok, len(resolvable_qs))} |")
    lines.append(f"| Measure correctness | {_rate(measure_ok, len(resolvable_qs))} |")
    lines.append(f"| Grouping correctness | {_rate(groups_ok, len(resolvable_qs))} |")
    lines.append(f"| SQL generation rate | {_rate(sql_gen, len(resolvable_qs))} |")
    lines.append(f"| Column selection prompts | {_rate(selection_ok, len(selection_qs))} |")
    lines.append("")
    lines.append("## Latency")
    lines.append("")
    lines.append("| Stat | ms |")
    lines.append("|------|-----|")
    lines.append(f"| Mean | {avg_lat:.0f} |")
    lines.append(f"| p50 | {p50_lat} |")
    lines.append(f"| Max | {max_lat} |")
    lines.append("")
    lines.append("---")
    lines.append("")

    example = next((r for r in resolvable_qs if r["sql_generated"]), None)
    if example:
        lines.append("## Example Translated SQL")
        lines.append("")
        lines.append(f"**Question:** *\"{example['question']}\"*")
        lines.append("")
        lines.append("```sql")
        lines.append(example["generated_sql"])
        lines.append("```")
        lines.append("")
        lines.append("---")
        lines.append("")

    lines.append("## Per-Question Results")
    lines.append("")
    lines.append("| # | Question | Route | Intent | Measure | Groups | SQL | Conf | Latency | Pass |")
    lines.append("|---|----------|-------|--------|---------|--------|-----|------|---------|------|")
    for i, r in enumerate(results, 1):
        route = r["report"] or "ad-hoc"
        qtext = r["question"][:55] + ("..." if len(r["question"]) > 55 else "")
        lines.append(
            f"| {i} | {qtext} | {route} | {r['intent'] or '--'} "
            f"| {'OK' if r['measure_ok'] else 'ERROR'} | {'OK' if r['groups_ok'] else 'ERROR'} "
            f"| {'OK' if r['sql_generated'] else '--'} | {r['confidence']:.2f} "
            f"| {r['latency_ms']} | {'OK' if r['success'] else 'ERROR'} |"
        )
    lines.append("")

    failures = [(i, r) for i, r in enumerate(results, 1) if not r["success"]]
    lines.append("## Failures")
    lines.append("")
    if failures:
        for i, r in failures:
            lines.append(f"### #{i}: {r['question']}")
            lines.append("")
            if r.get("error"):
                lines.append(f"**Error:** `{r['error']}`")
            lines.append(f"Routed to: `{r['report'] or 'ad-hoc'}`, intent: `{r['intent']}`")
            lines.append("")
    else:
        lines.append("None -- all questions handled correctly.")
        lines.append("")

    return "\n".join(lines)


def run():
    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[attr-defined]

    questions = _load_questions()
    print(f"Loaded {len(questions)} eval questions.")
    print("Running evaluation...\n")

    results = []
    for i, q in enumerate(questions, 1):
        r = _run_one(q)
        status = "PASS" if r["success"] else "FAIL"
        route = r["report"] or "ad-hoc"
        print(f"  [{i:2d}/{len(questions)}] {status}  {r['question'][:60]:<60}  {r['latency_ms']:>4d}ms  {route}")
        results.append(r)

    report = _generate_report(results, questions)

    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(report, encoding="utf-8")
    print(f"\nReport written to {REPORT_PATH}")

    total = len(results)
    successes = sum(1 for r in results if r["success"])
    print(f"\n{'='*50}")
    print(f"  Success: {successes}/{total} ({successes/total*100:.0f}%)")
    print(f"{'='*50}")


if __name__ == "__main__":
    run()
