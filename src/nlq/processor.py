"""
NLQ processor -- orchestrates the multi-turn conversation.

    question -> report detection / translation -> confirmation prompt
             -> user confirms / modifies / picks a column
             -> report generator or translated SQL -> executor (with retry)
             -> result formatter

Each conversation is a session keyed by a caller-supplied id and kept in a
TTL cache.  Nothing raises past ``process_query``: translator, validation
and execution failures all come back as a response with an explanation.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from functools import lru_cache
from datetime import date
from typing import Any

from src.catalog.field_catalog import FieldCatalog, get_catalog
from src.core.cache import TTLCache
from src.core.config import get_settings
from src.core.errors import CopilotError, TranslationError
from src.core.logging import get_logger, summarise
from src.db.backend import QueryBackend
from src.db.executor import ExecutionMetadata, ExecutionResult, QueryExecutor
from src.nlq.confirmation import ConfirmationFormatter, ConfirmationResponse
from src.nlq.intent import TranslationResult
from src.nlq.report_detector import ReportDetection, detect_report, extract_parameters, missing_parameters
from src.nlq.result_formatter import FormattedResult, ResultFormatter
from src.nlq.translator import QueryTranslator
from src.reports.base import ConnectionResolver, StaticConnectionResolver
from src.reports.registry import ReportRegistry, get_registry

logger = get_logger(__name__)

CONFIRMATION_WORDS = frozenset({
    "yes", "y", "yep", "yeah", "correct", "confirm", "confirmed", "ok", "okay",
    "looks good", "go ahead", "run it", "sure",
})
REPORT_CONFIDENCE = 0.8
_HISTORY_LIMIT = 10
_USE_COLUMN_RE = re.compile(r"^\s*(?:use|select|pick)\s+(?:column\s+)?['\"`]?([\w ]+?)['\"`]?\s*$", re.IGNORECASE)


def is_confirmation(text: str) -> bool:
    normalized = re.sub(r"[.!\s]+$", "", text.strip().lower())
    if normalized in CONFIRMATION_WORDS:
        return True
    return any(normalized.startswith(w + " ") or normalized.startswith(w + ",") for w in ("yes", "correct", "confirm"))


@dataclass
class SessionState:
    """What the conversation is waiting for."""
    original_query: str = ""
    translation: TranslationResult | None = None
    detection: ReportDetection | None = None
    column_candidates: list[str] = field(default_factory=list)
    history: list[str] = field(default_factory=list)

    def clear_pending(self) -> None:
        self.translation = None
        self.detection = None
        self.column_candidates = []

    def remember(self, question: str) -> None:
        self.history.append(question)
        del self.history[:-_HISTORY_LIMIT]


@dataclass
class ProcessorResponse:
    content: str
    needs_confirmation: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    result: FormattedResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "needs_confirmation": self.needs_confirmation,
            "metadata": self.metadata,
            "result": self.result.to_dict() if self.result else None,
        }

    @classmethod
    def from_confirmation(cls, response: ConfirmationResponse) -> "ProcessorResponse":
        return cls(content=response.content, needs_confirmation=response.needs_confirmation, metadata=dict(response.metadata))


class NLQProcessor:
    """Conversation front door for one schema type.

    Parameters
    ----------
    schema_type : str, optional
        Selects the field catalog and the compatible reports; defaults to
        ``Settings.schema_type``.
    resolver : ConnectionResolver, optional
        Table reference for reports and translated SQL.
    backend : callable, optional
        Backend query capability handed to the executor.
    mode : str, optional
        Translator mode ("mock", "openai", "anthropic").
    """

    def __init__(
        self,
        schema_type: str | None = None,
        catalog: FieldCatalog | None = None,
        resolver: ConnectionResolver | None = None,
        backend: QueryBackend | None = None,
        mode: str | None = None,
        registry: ReportRegistry | None = None,
        translator: QueryTranslator | None = None,
        today: date | None = None,
    ):
        settings = get_settings()
        self.schema_type = schema_type or settings.schema_type
        self.catalog = catalog or get_catalog(self.schema_type)
        self.resolver = resolver or StaticConnectionResolver.from_settings()
        self.mode = (mode or settings.llm_provider).lower()
        self.today = today
        self.translator = translator or QueryTranslator(self.catalog, self.resolver, mode=self.mode, today=today)
        self.registry = registry if registry is not None else get_registry()
        self.confirmations = ConfirmationFormatter()
        self.results = ResultFormatter()
        self.executor = QueryExecutor(
            backend,
            corrector=self.translator.correct_sql,
            cache=TTLCache(ttl=settings.query_cache_ttl_s),
        )
        self.sessions = TTLCache(ttl=settings.session_ttl_s, max_size=1024)

    # ── Public API ───────────────────────────────────

    def process_query(self, query: str, session_id: str | None = None) -> ProcessorResponse:
        session_id = session_id or uuid.uuid4().hex
        state: SessionState = self.sessions.get(session_id) or SessionState()
        text = query.strip()
        logger.info("NLQ[%s] <- %s", session_id[:8], summarise(text))

        if not text:
            response = ProcessorResponse.from_confirmation(
                self.confirmations.format_error(query, "The question is empty.")
            )
        elif state.translation is not None and is_confirmation(text):
            response = self._execute_translation(state.translation, state)
        elif state.detection is not None and not state.detection.missing_required and is_confirmation(text):
            response = self._run_report(state)
        elif state.detection is not None and state.detection.missing_required and self._fill_report(text, state):
            response = self._confirm_report(state.detection, state)
        elif state.column_candidates and (column := self._selected_column(text, state.column_candidates)):
            response = self._translate(state.original_query, state, selected_column=column)
        else:
            response = self._new_question(text, state)

        self.sessions.put(session_id, state)
        response.metadata["session_id"] = session_id
        logger.info("NLQ[%s] -> %s", session_id[:8], response.metadata.get("type"))
        return response

    def reset_session(self, session_id: str) -> bool:
        return self.sessions.pop(session_id) is not None

    def available_columns(self) -> list[str]:
        return self.catalog.column_names()

    # ── Turns ────────────────────────────────────────

    def _new_question(self, text: str, state: SessionState) -> ProcessorResponse:
        state.clear_pending()
        if self.registry is not None:
            detection = detect_report(text, self.registry, self.schema_type, self.today, mode=self.mode)
            if detection.is_report_query and detection.confidence > REPORT_CONFIDENCE:
                state.original_query = text
                state.remember(text)
                return self._confirm_report(detection, state)
        return self._translate(text, state)

    def _translate(self, text: str, state: SessionState, selected_column: str | None = None) -> ProcessorResponse:
        history = [h for h in state.history if h != text]
        state.clear_pending()
        try:
            translation = self.translator.translate(text, history=history, selected_column=selected_column)
        except TranslationError as exc:
            return ProcessorResponse.from_confirmation(self.confirmations.format_error(text, str(exc)))

        state.original_query = text
        if not selected_column:
            state.remember(text)

        if translation.needs_column_selection:
            prompt = self.confirmations.format_column_selection(translation.column_candidates, text)
            # numbers typed back refer to the prompt order
            state.column_candidates = list(prompt.metadata["columns"])
            return ProcessorResponse.from_confirmation(prompt)
        if translation.requires_confirmation:
            state.translation = translation
            return ProcessorResponse.from_confirmation(self.confirmations.format_confirmation(translation))
        return self._execute_translation(translation, state)

    def _execute_translation(self, translation: TranslationResult, state: SessionState) -> ProcessorResponse:
        state.clear_pending()
        result = self.executor.execute_query(translation.sql, translation.parameters)
        formatted = self.results.format_results(result, translation)
        return ProcessorResponse(
            content=formatted.text,
            needs_confirmation=False,
            metadata={
                "type": "result" if result.success else "execution_error",
                "sql": result.sql,
                "retry_count": result.metadata.retry_count,
            },
            result=formatted,
        )

    # ── Reports ──────────────────────────────────────

    def _confirm_report(self, detection: ReportDetection, state: SessionState) -> ProcessorResponse:
        report = self.registry.metadata(detection.report_id)
        state.detection = detection
        return ProcessorResponse.from_confirmation(
            self.confirmations.format_report_confirmation(report, detection.parameters, detection.missing_required)
        )

    def _fill_report(self, text: str, state: SessionState) -> bool:
        detection = state.detection
        report = self.registry.metadata(detection.report_id)
        found = extract_parameters(text, report, self.today)
        if not found:
            return False
        detection.parameters.update(found)
        detection.missing_required = missing_parameters(report, detection.parameters)
        return True

    def _run_report(self, state: SessionState) -> ProcessorResponse:
        detection = state.detection
        state.clear_pending()
        lookup = self.registry.get_by_id(detection.report_id, self.resolver, self.executor)
        if not lookup.found:
            return ProcessorResponse.from_confirmation(
                self.confirmations.format_error(state.original_query, lookup.error or "Report unavailable")
            )
        try:
            report = lookup.generator.generate_report(detection.parameters)
        except CopilotError as exc:
            logger.warning("Report %s failed: %s", detection.report_id, exc)
            response = self.confirmations.format_error(state.original_query, str(exc))
            response.metadata["suggestion"] = exc.suggestion
            return ProcessorResponse.from_confirmation(response)

        result = ExecutionResult(
            success=True,
            data=report.data,
            metadata=ExecutionMetadata(
                execution_time_ms=report.execution_time_ms,
                bytes_processed=report.bytes_processed or None,
            ),
            sql=report.sql,
        )
        formatted = self.results.format_results(result)
        return ProcessorResponse(
            content=formatted.text,
            needs_confirmation=False,
            metadata={"type": "report", "report_id": report.report_id, **report.metadata},
            result=formatted,
        )

    # ── Column selection ─────────────────────────────

    def _selected_column(self, text: str, candidates: list[str]) -> str | None:
        if text.isdigit():
            n = int(text)
            return candidates[n - 1] if 1 <= n <= len(candidates) else None
        m = _USE_COLUMN_RE.match(text)
        wanted = (m.group(1) if m else text).strip().lower()
        by_lower = {c.lower(): c for c in self.catalog.column_names()}
        return by_lower.get(wanted)


@lru_cache(maxsize=16)
def get_processor(schema_type: str | None = None, mode: str | None = None) -> NLQProcessor:
    """Process-wide processor per (schema type, mode); sessions live inside it."""
    return NLQProcessor(schema_type=schema_type, mode=mode)
