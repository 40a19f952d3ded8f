"""
GET /catalog, GET /catalog/{report_id} -- field catalog endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from src.catalog.field_catalog import get_catalog, load_catalogs

router = APIRouter()


class FieldItem(BaseModel):
    column: str
    description: str
    type: str
    category: str
    aliases: list[str]
    common_queries: list[str]
    aggregatable: bool
    filterable: bool


class CatalogResponse(BaseModel):
    name: str
    fields: list[FieldItem]


class CatalogIndexResponse(BaseModel):
    catalogs: list[str]
    schema_types: dict[str, str]


@router.get("/catalog", response_model=CatalogIndexResponse)
def catalog_index() -> CatalogIndexResponse:
    """Catalog names and the schema type -> catalog mapping."""
    catalogs = load_catalogs()
    return CatalogIndexResponse(
        catalogs=sorted(catalogs.catalogs),
        schema_types={name: st.catalog for name, st in catalogs.schema_types.items()},
    )


@router.get("/catalog/{report_id}", response_model=CatalogResponse)
def catalog_detail(report_id: str) -> CatalogResponse:
    """Column metadata for a report id or schema type."""
    try:
        catalog = get_catalog(report_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return CatalogResponse(
        name=catalog.name,
        fields=[FieldItem(**f.to_dict()) for f in catalog.fields],
    )
