"""POST /nlq/query -- conversational question -> confirmation -> result."""
from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from src.catalog.field_catalog import get_catalog
from src.core.config import get_settings
from src.core.logging import get_logger
from src.nlq.confirmation import ConfirmationFormatter
from src.nlq.processor import get_processor

logger = get_logger(__name__)
router = APIRouter()

ProviderMode = Literal["mock", "openai", "anthropic"]


class QueryRequest(BaseModel):
    question: str = Field("", max_length=1000, description="Plain-language question, or a reply to a prompt")
    session_id: str | None = Field(None, description="Conversation id; a new one is issued when omitted")
    mode: ProviderMode | None = Field(None, description="LLM provider for this turn")
    schema_type: str | None = Field(None, description="canton_transaction | actions")
    confirm: bool = Field(False, description="Confirm the pending interpretation instead of asking a question")


class QueryResponse(BaseModel):
    session_id: str
    content: str
    needs_confirmation: bool
    metadata: dict[str, Any]
    result: dict[str, Any] | None = None


class ColumnsResponse(BaseModel):
    schema_type: str
    columns: list[str]


class ColumnSelectRequest(BaseModel):
    question: str
    columns: list[str] | None = None
    schema_type: str | None = None
    message: str | None = None


class ColumnSelectResponse(BaseModel):
    content: str
    columns: list[str]


@router.post("/query", response_model=QueryResponse)
def query_endpoint(req: QueryRequest):
    """One conversation turn."""
    text = "yes" if req.confirm else req.question
    if not text.strip():
        raise HTTPException(status_code=400, detail="question must not be empty")
    try:
        processor = get_processor(req.schema_type, req.mode)
        response = processor.process_query(text, req.session_id)
    except KeyError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("NLQ query failed")
        raise HTTPException(status_code=500, detail=str(exc))

    payload = response.to_dict()
    return QueryResponse(session_id=response.metadata["session_id"], **payload)


@router.delete("/sessions/{session_id}")
def reset_session_endpoint(session_id: str, schema_type: str | None = None, mode: ProviderMode | None = None):
    """Forget a conversation."""
    removed = get_processor(schema_type, mode).reset_session(session_id)
    return {"session_id": session_id, "removed": removed}


@router.get("/columns", response_model=ColumnsResponse)
def columns_endpoint(schema_type: str | None = None):
    """Columns of the field catalog for *schema_type*."""
    schema_type = schema_type or get_settings().schema_type
    try:
        catalog = get_catalog(schema_type)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return ColumnsResponse(schema_type=schema_type, columns=catalog.column_names())


@router.post("/columns/select", response_model=ColumnSelectResponse)
def column_select_endpoint(req: ColumnSelectRequest):
    """Render the column-selection prompt for a question."""
    columns = req.columns
    if not columns:
        try:
            columns = get_catalog(req.schema_type or get_settings().schema_type).column_names()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
    prompt = ConfirmationFormatter().format_column_selection(columns, req.question, req.message)
    return ColumnSelectResponse(content=prompt.content, columns=prompt.metadata["columns"])
