"""GET /reports, POST /reports/{id}/run -- predefined report endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.core.errors import ConnectionResolutionError, ReportExecutionError, ReportValidationError
from src.core.logging import get_logger
from src.nlq.processor import get_processor
from src.reports.registry import get_registry

logger = get_logger(__name__)
router = APIRouter()


class ReportItem(BaseModel):
    id: str
    name: str
    description: str
    keywords: list[str]
    parameters: list[dict[str, Any]]
    compatible_schema_types: list[str] | None = None


class RunRequest(BaseModel):
    parameters: dict[str, Any] = Field(default_factory=dict)
    filters: dict[str, Any] | None = Field(None, description="Optional assets / operations IN-list filters")
    schema_type: str | None = None


class RunResponse(BaseModel):
    report_id: str
    data: list[dict[str, Any]]
    columns: list[str]
    execution_time_ms: int
    bytes_processed: int
    sql: str
    metadata: dict[str, Any]


@router.get("", response_model=list[ReportItem])
def list_reports(schema_type: str | None = None) -> list[ReportItem]:
    """Reports compatible with *schema_type* (all when omitted)."""
    return [ReportItem(**m.to_dict()) for m in get_registry().list_for_schema_type(schema_type)]


@router.get("/search", response_model=list[ReportItem])
def search_reports(q: str = "") -> list[ReportItem]:
    return [ReportItem(**m.to_dict()) for m in get_registry().search(q)]


@router.get("/{report_id}", response_model=ReportItem)
def get_report(report_id: str) -> ReportItem:
    metadata = get_registry().metadata(report_id)
    if metadata is None:
        raise HTTPException(status_code=404, detail=f"Report '{report_id}' not found")
    return ReportItem(**metadata.to_dict())


@router.post("/{report_id}/run", response_model=RunResponse)
def run_report(report_id: str, req: RunRequest):
    """Validate, build and execute a report with explicit parameters."""
    registry = get_registry()
    if report_id not in registry:
        raise HTTPException(status_code=404, detail=f"Report '{report_id}' not found")

    processor = get_processor(req.schema_type)
    lookup = registry.get_by_id(report_id, processor.resolver, processor.executor)
    if not lookup.found:
        raise HTTPException(status_code=500, detail=lookup.error)
    try:
        result = lookup.generator.generate_report(req.parameters, req.filters)
    except (ReportValidationError, ConnectionResolutionError) as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())
    except ReportExecutionError as exc:
        logger.warning("Report %s failed: %s", report_id, exc)
        raise HTTPException(status_code=502, detail=exc.to_dict())
    except Exception as exc:
        logger.exception("Report %s crashed", report_id)
        raise HTTPException(status_code=500, detail=str(exc))
    return RunResponse(**result.to_dict())
