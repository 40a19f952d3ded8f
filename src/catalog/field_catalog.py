"""
Loads, parses, and caches the field catalogs YAML into strongly-typed objects.

A field catalog is the single source of truth, per table or report output, for:
  - which columns exist (the translator never emits anything else)
  - column type and semantic category
  - the natural-language aliases users reach for
  - typical questions asked about the column
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache
from typing import Any

import yaml

_CATALOG_PATH = Path(__file__).resolve().parents[2] / "semantic_layer" / "field_catalogs.yml"

FIELD_TYPES = ("string", "number", "date", "boolean", "timestamp")


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class FieldMetadata:
    column: str
    description: str
    type: str
    category: str
    aliases: tuple[str, ...] = ()
    common_queries: tuple[str, ...] = ()
    aggregatable: bool = False
    filterable: bool = True

    @property
    def is_numeric(self) -> bool:
        return self.type == "number"

    @property
    def is_temporal(self) -> bool:
        return self.category == "temporal" or self.type in ("date", "timestamp")

    @property
    def spoken_name(self) -> str:
        """``assetTicker`` -> ``asset ticker``, ``year_month`` -> ``year month``."""
        spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", self.column).replace("_", " ")
        return spaced.lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "column": self.column,
            "description": self.description,
            "type": self.type,
            "category": self.category,
            "aliases": list(self.aliases),
            "common_queries": list(self.common_queries),
            "aggregatable": self.aggregatable,
            "filterable": self.filterable,
        }


@dataclass(frozen=True)
class FieldCatalog:
    """Immutable, ordered set of column metadata for one table or report."""

    name: str
    fields: tuple[FieldMetadata, ...]
    _by_column: dict[str, FieldMetadata] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        index: dict[str, FieldMetadata] = {}
        for f in self.fields:
            if f.column in index:
                raise ValueError(f"Duplicate column '{f.column}' in catalog '{self.name}'")
            index[f.column] = f
        object.__setattr__(self, "_by_column", index)

    # ── Convenience look-ups ─────────────────────────

    def get(self, column: str) -> FieldMetadata | None:
        return self._by_column.get(column)

    def has_column(self, column: str) -> bool:
        return column in self._by_column

    def column_names(self) -> list[str]:
        return [f.column for f in self.fields]

    def numeric_fields(self) -> list[FieldMetadata]:
        return [f for f in self.fields if f.is_numeric and f.aggregatable]

    def temporal_fields(self) -> list[FieldMetadata]:
        return [f for f in self.fields if f.is_temporal]

    def phrase_index(self) -> dict[str, list[str]]:
        """Lower-cased phrase -> columns it can refer to.

        Phrases are the column name, its spoken form and every alias.
        A phrase shared by several columns lists all of them, in catalog order.
        """
        index: dict[str, list[str]] = {}
        for f in self.fields:
            phrases = {f.column.lower(), f.spoken_name, *(a.lower() for a in f.aliases)}
            for phrase in phrases:
                cols = index.setdefault(phrase, [])
                if f.column not in cols:
                    cols.append(f.column)
        return index

    def describe(self) -> str:
        """One line per column, for LLM prompts."""
        lines = []
        for f in self.fields:
            aliases = f" (aka {', '.join(f.aliases)})" if f.aliases else ""
            lines.append(f"- {f.column} [{f.type}, {f.category}]: {f.description}{aliases}")
        return "\n".join(lines)


@dataclass(frozen=True)
class SchemaType:
    name: str
    description: str
    catalog: str


@dataclass(frozen=True)
class CatalogSet:
    """Every catalog plus the schema-type → catalog mapping."""

    version: int
    catalogs: dict[str, FieldCatalog]
    schema_types: dict[str, SchemaType]

    def catalog(self, name: str) -> FieldCatalog | None:
        return self.catalogs.get(name)

    def for_schema_type(self, schema_type: str) -> FieldCatalog | None:
        st = self.schema_types.get(schema_type)
        return self.catalogs.get(st.catalog) if st else None


# ── Parsing ──────────────────────────────────────────────

def _parse_field(raw: dict[str, Any], catalog: str) -> FieldMetadata:
    ftype = raw.get("type", "string")
    if ftype not in FIELD_TYPES:
        raise ValueError(f"Column '{raw.get('column')}' in catalog '{catalog}' has unknown type '{ftype}'")
    return FieldMetadata(
        column=raw["column"],
        description=raw.get("description", ""),
        type=ftype,
        category=raw.get("category", "other"),
        aliases=tuple(raw.get("aliases") or ()),
        common_queries=tuple(raw.get("common_queries") or ()),
        aggregatable=bool(raw.get("aggregatable", False)),
        filterable=bool(raw.get("filterable", True)),
    )


def _parse_catalog_set(raw_yaml: dict[str, Any]) -> CatalogSet:
    catalogs = {
        name: FieldCatalog(name=name, fields=tuple(_parse_field(f, name) for f in raw_fields))
        for name, raw_fields in (raw_yaml.get("catalogs") or {}).items()
    }
    schema_types = {
        name: SchemaType(name=name, description=raw.get("description", ""), catalog=raw["catalog"])
        for name, raw in (raw_yaml.get("schema_types") or {}).items()
    }
    for st in schema_types.values():
        if st.catalog not in catalogs:
            raise ValueError(f"Schema type '{st.name}' points at missing catalog '{st.catalog}'")
    return CatalogSet(version=raw_yaml.get("version", 1), catalogs=catalogs, schema_types=schema_types)


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_catalogs() -> CatalogSet:
    """Load and cache every field catalog from YAML."""
    with open(_CATALOG_PATH) as f:
        raw = yaml.safe_load(f)
    return _parse_catalog_set(raw)


def get_catalog(name: str) -> FieldCatalog:
    """Catalog by report id or schema type; raises KeyError when unknown."""
    catalogs = load_catalogs()
    found = catalogs.catalog(name) or catalogs.for_schema_type(name)
    if found is None:
        raise KeyError(f"Unknown field catalog '{name}'")
    return found
