"""
Report registry -- report id -> (metadata, generator factory).

The built-in table is assembled once by ``get_registry()`` and frozen;
lookups construct a fresh generator per request, bound to the caller's
connection resolver and executor.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Callable, TYPE_CHECKING

from src.core.logging import get_logger
from src.reports.base import ConnectionResolver, ReportGenerator, ReportMetadata
from src.reports.inventory_balance import InventoryBalanceReport
from src.reports.lots import LotsReport
from src.reports.monthly_activity import MonthlyActivityReport
from src.reports.valuation_rollforward import ValuationRollforwardReport

if TYPE_CHECKING:
    from src.db.executor import QueryExecutor

logger = get_logger(__name__)

GeneratorFactory = Callable[[ConnectionResolver, "QueryExecutor | None"], ReportGenerator]


@dataclass
class ReportLookup:
    """Outcome of ``get_by_id``: a generator, or why there is none."""
    metadata: ReportMetadata | None = None
    generator: ReportGenerator | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.generator is not None


class ReportRegistry:
    def __init__(self) -> None:
        self._entries: dict[str, tuple[ReportMetadata, GeneratorFactory]] = {}
        self._frozen = False

    def register(self, metadata: ReportMetadata, factory: GeneratorFactory) -> None:
        if self._frozen:
            raise RuntimeError("Report registry is read-only after initialisation")
        if metadata.id in self._entries:
            raise ValueError(f"Report '{metadata.id}' is already registered")
        self._entries[metadata.id] = (metadata, factory)
        logger.debug("Registered report %s", metadata.id)

    def freeze(self) -> "ReportRegistry":
        self._entries = MappingProxyType(dict(self._entries))  # type: ignore[assignment]
        self._frozen = True
        return self

    # ── Look-ups ─────────────────────────────────────

    def get_by_id(
        self,
        report_id: str,
        resolver: ConnectionResolver,
        executor: "QueryExecutor | None" = None,
    ) -> ReportLookup:
        entry = self._entries.get(report_id)
        if entry is None:
            return ReportLookup(error=f"Report '{report_id}' not found")
        metadata, factory = entry
        try:
            generator = factory(resolver, executor)
        except Exception as exc:
            logger.exception("Failed to construct generator for report %s", report_id)
            return ReportLookup(metadata=metadata, error=f"Could not initialise report '{report_id}': {exc}")
        return ReportLookup(metadata=metadata, generator=generator)

    def metadata(self, report_id: str) -> ReportMetadata | None:
        entry = self._entries.get(report_id)
        return entry[0] if entry else None

    def all(self) -> list[ReportMetadata]:
        return [m for m, _ in self._entries.values()]

    def list_for_schema_type(self, schema_type: str | None = None) -> list[ReportMetadata]:
        """All reports, or those compatible with *schema_type* (unset = universal)."""
        if not schema_type:
            return self.all()
        return [m for m in self.all() if m.supports(schema_type)]

    def search(self, query: str) -> list[ReportMetadata]:
        """Case-insensitive substring match on name, description or any keyword."""
        q = query.lower().strip()
        if not q:
            return []
        return [
            m for m in self.all()
            if q in m.name.lower()
            or q in m.description.lower()
            or any(q in kw.lower() for kw in m.keywords)
        ]

    def __contains__(self, report_id: str) -> bool:
        return report_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


_BUILTIN: tuple[type[ReportGenerator], ...] = (
    InventoryBalanceReport,
    ValuationRollforwardReport,
    LotsReport,
    MonthlyActivityReport,
)


def build_registry() -> ReportRegistry:
    registry = ReportRegistry()
    for cls in _BUILTIN:
        registry.register(cls.metadata, cls)
    return registry.freeze()


@lru_cache
def get_registry() -> ReportRegistry:
    """Process-wide, read-only registry of the built-in reports."""
    return build_registry()
