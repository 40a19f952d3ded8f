"""
Report detector -- decides whether a question asks for one of the
registered reports and, if so, pulls the report parameters out of it.

mock mode scores reports by name / keyword overlap; LLM modes ask the
model and fall back to the rule-based score on unusable output.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.core.errors import TranslationError
from src.core.logging import get_logger
from src.nlq.time_range import extract_time_range
from src.nlq.translator import extract_assets, extract_limit, extract_operations, extract_wallet
from src.reports.base import ReportMetadata
from src.reports.registry import ReportRegistry

logger = get_logger(__name__)

REPORT_THRESHOLD = 0.5
_AS_OF_RE = re.compile(r"\bas\s+of\s+(\d{4}-\d{2}-\d{2})\b", re.IGNORECASE)
_RUN_RE = re.compile(r"\brun(?:\s*id)?\s+['\"]?([\w\-]{4,})['\"]?", re.IGNORECASE)
_ORG_RE = re.compile(r"\borg(?:anization|anisation)?(?:\s*id)?\s+['\"]?([\w\-]{4,})['\"]?", re.IGNORECASE)
_GROUP_RE = re.compile(r"\b(?:by|per)\s+(subsidiary|inventory|wallet)\b", re.IGNORECASE)


@dataclass
class ReportDetection:
    is_report_query: bool = False
    report_id: str | None = None
    confidence: float = 0.0
    parameters: dict[str, Any] = field(default_factory=dict)
    missing_required: list[str] = field(default_factory=list)
    suggested_reports: list[tuple[str, float]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_report_query": self.is_report_query,
            "report_id": self.report_id,
            "confidence": self.confidence,
            "parameters": self.parameters,
            "missing_required": self.missing_required,
            "suggested_reports": [{"report_id": r, "confidence": c} for r, c in self.suggested_reports],
        }


# ── Scoring ──────────────────────────────────────────────

def _name_phrases(report: ReportMetadata) -> list[str]:
    name = report.name.lower().split(" - ")[0]
    phrases = {name, name.replace(" report", "").strip(), report.id.replace("-", " ").replace(" report", "")}
    return [p for p in phrases if p]


def score_report(question: str, report: ReportMetadata) -> float:
    q = question.lower()
    keyword_hits = sum(1 for kw in report.keywords if re.search(rf"\b{re.escape(kw.lower())}\b", q))
    if any(re.search(rf"\b{re.escape(p)}\b", q) for p in _name_phrases(report)):
        score = 0.85 + (0.1 if "report" in q else 0.0) + min(0.05, 0.02 * keyword_hits)
    else:
        score = min(0.6, 0.2 * keyword_hits) + (0.1 if "report" in q and keyword_hits else 0.0)
    return round(min(1.0, score), 2)


# ── Parameter extraction ─────────────────────────────────

def extract_parameters(question: str, report: ReportMetadata, today: date | None = None) -> dict[str, Any]:
    """Values for *report*'s parameters that the question states outright."""
    names = {p.name for p in report.parameters}
    params: dict[str, Any] = {}

    window = extract_time_range(question, today)
    m = _AS_OF_RE.search(question)
    if "asOfDate" in names:
        if m:
            params["asOfDate"] = m.group(1)
        elif window and window.end_date:
            params["asOfDate"] = window.end_date.isoformat()
    if window and window.start_date:
        if "startDate" in names:
            params["startDate"] = window.start_date.isoformat()
        if "endDate" in names and window.end_date:
            params["endDate"] = window.end_date.isoformat()

    wallet = extract_wallet(question)
    if wallet and "walletId" in names:
        params["walletId"] = wallet
    assets = extract_assets(question)
    if assets and "assets" in names:
        params["assets"] = assets
    operations = extract_operations(question)
    if operations and "operations" in names:
        params["operations"] = operations
    for regex, name in ((_RUN_RE, "runId"), (_ORG_RE, "orgId")):
        m = regex.search(question)
        if m and name in names:
            params[name] = m.group(1)
    m = _GROUP_RE.search(question)
    if m and "groupBy" in names:
        params["groupBy"] = m.group(1).lower()
    limit = extract_limit(question)
    if limit and "limit" in names:
        params["limit"] = limit[0]
    return params


def missing_parameters(report: ReportMetadata, params: dict[str, Any]) -> list[str]:
    return [
        p.name for p in report.parameters
        if p.required and p.default is None and params.get(p.name) in (None, "", [])
    ]


# ── Public API ───────────────────────────────────────────

def detect_report(
    question: str,
    registry: ReportRegistry,
    schema_type: str | None = None,
    today: date | None = None,
    mode: str = "mock",
) -> ReportDetection:
    reports = registry.list_for_schema_type(schema_type)
    if not reports:
        return ReportDetection()

    if mode != "mock":
        detection = _detect_llm(question, reports, mode)
        if detection is not None:
            return detection

    scored = sorted(((score_report(question, r), r) for r in reports), key=lambda s: -s[0])
    best_score, best = scored[0]
    suggestions = [(r.id, s) for s, r in scored[1:] if s >= 0.3]

    if best_score < REPORT_THRESHOLD:
        logger.info("No report match (best=%s %.2f)", best.id, best_score)
        return ReportDetection(
            confidence=best_score,
            suggested_reports=[(r.id, s) for s, r in scored if s >= 0.3],
        )

    params = extract_parameters(question, best, today)
    missing = missing_parameters(best, params)
    logger.info("Report match %s (%.2f), params=%s missing=%s", best.id, best_score, sorted(params), missing)
    return ReportDetection(
        is_report_query=True,
        report_id=best.id,
        confidence=best_score,
        parameters=params,
        missing_required=missing,
        suggested_reports=suggestions,
    )


_LLM_PROMPT = """\
Decide whether the question asks for one of these predefined reports and
extract its parameters (dates as YYYY-MM-DD).

Reports:
{reports}

Question: "{question}"

Respond only with JSON:
{{"is_report_query": bool, "report_id": str | null, "confidence": number,
  "parameters": {{...}}, "missing_required": [str]}}"""


def _detect_llm(question: str, reports: list[ReportMetadata], mode: str) -> ReportDetection | None:
    from src.nlq.llm_client import call_llm

    described = "\n".join(
        f"- {r.id}: {r.name}. {r.description}. Parameters: "
        + ", ".join(f"{p.name} ({p.type}{', required' if p.required else ''})" for p in r.parameters)
        for r in reports
    )
    try:
        response = call_llm(_LLM_PROMPT.format(reports=described, question=question), provider=mode).strip()
    except TranslationError as exc:
        logger.warning("Report detection unavailable (%s), using keyword scoring", exc)
        return None
    if response.startswith("```"):
        response = re.sub(r"^```(?:json)?\s*|\s*```$", "", response)
    try:
        data = json.loads(response)
    except json.JSONDecodeError:
        logger.warning("Report detection returned invalid JSON, using keyword scoring")
        return None
    if not isinstance(data, dict) or "is_report_query" not in data:
        return None
    try:
        confidence = float(data.get("confidence") or 0.0)
    except (TypeError, ValueError):
        logger.warning("Report detection returned confidence %r, using keyword scoring", data.get("confidence"))
        return None

    known = {r.id: r for r in reports}
    report_id = data.get("report_id")
    if not data.get("is_report_query") or not isinstance(report_id, str) or report_id not in known:
        return ReportDetection(confidence=confidence)
    params = data.get("parameters")
    if not isinstance(params, dict):
        params = {}
    return ReportDetection(
        is_report_query=True,
        report_id=report_id,
        confidence=confidence,
        parameters=params,
        missing_required=missing_parameters(known[report_id], params),
    )
