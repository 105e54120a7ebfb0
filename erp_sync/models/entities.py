"""
Entity Descriptors
==================
One sync engine serves every stream. What differs per stream (tables,
columns, upstream queries, manifest datasets, derived fields) is captured
in an EntityDescriptor declared in streams.py.

FIELD KINDS:
-----------
text       - trimmed string, blank becomes NULL
number     - float, compared with the numeric epsilon
integer    - int
date       - YYYY-MM-DD (M/D/YYYY input is accepted)
timestamp  - ISO-8601 UTC, millisecond precision
bool       - T/F, Y/N, TRUE/FALSE, 1/0
json       - lists/objects stored as canonical JSON text

QUERY TEMPLATES:
---------------
Templates are formatted with str.format. Available placeholders:
{ids}            comma-separated parent ids
{record_type}    the transaction type (CustInvc, ItemShip, SalesOrd)
{since_iso}      discovery lower bound, YYYY-MM-DDTHH:MM:SS.mmmZ
{since_date}     discovery lower bound, YYYY-MM-DD
{scope_filter}   "AND <entity column> IN (...)" or empty
Upstream columns are aliased to the local column names so that rows from
queries and rows from bulk files share one shape.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..utils.helpers import (
    coerce_text, normalize_timestamp, normalize_us_date, parse_bool,
    to_int_or_none, to_num_or_none
)
from ..utils.constants import SYNCED_AT_COLUMN, TOMBSTONE_COLUMN


SQL_TYPES = {
    "text": "TEXT",
    "number": "REAL",
    "integer": "INTEGER",
    "date": "TEXT",
    "timestamp": "TEXT",
    "bool": "INTEGER",
    "json": "TEXT",
}


def _normalize_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            value = json.loads(value)
        except ValueError:
            return json.dumps(value)
    return json.dumps(value, sort_keys=True, default=str)


_NORMALIZERS: Dict[str, Callable[[Any], Any]] = {
    "text": coerce_text,
    "number": to_num_or_none,
    "integer": to_int_or_none,
    "date": normalize_us_date,
    "timestamp": normalize_timestamp,
    "bool": parse_bool,
    "json": _normalize_json,
}


@dataclass
class FieldSpec:
    """A column of a stream table"""
    column: str
    kind: str = "text"
    aliases: Tuple[str, ...] = ()
    # False when the column only arrives through bulk files; query-driven
    # runs keep the stored value
    queried: bool = True

    @property
    def sql_type(self) -> str:
        return SQL_TYPES[self.kind]

    def read(self, raw: Dict[str, Any]) -> Any:
        """Pick this field out of an upstream row and normalize it"""
        value = raw.get(self.column)
        if value is None:
            for alias in self.aliases:
                if raw.get(alias) is not None:
                    value = raw[alias]
                    break
        return self.normalize(value)

    def normalize(self, value: Any) -> Any:
        return _NORMALIZERS[self.kind](value)


@dataclass
class RelatedQuery:
    """Discovery query returning parent ids whose related objects changed"""
    name: str
    template: str
    entity_column: str


@dataclass
class ChildSpec:
    """Child table replaced wholesale whenever its parent is written"""
    table: str
    key: str
    fields: List[FieldSpec]
    dataset: Optional[str] = None
    query: Optional[str] = None
    amount_column: Optional[str] = None

    @property
    def columns(self) -> List[str]:
        return [f.column for f in self.fields]


@dataclass
class EntityDescriptor:
    """Everything the engine needs to know about one stream"""
    stream: str
    table: str
    id_column: str
    record_type: str
    fields: List[FieldSpec]
    header_query: str
    foreign_fields: List[FieldSpec] = field(default_factory=list)
    children: List[ChildSpec] = field(default_factory=list)
    link_queries: List[str] = field(default_factory=list)
    related_queries: List[RelatedQuery] = field(default_factory=list)
    entity_column: str = "T.entity"
    required_columns: List[str] = field(default_factory=list)
    manifest_name: Optional[str] = None
    header_dataset: Optional[str] = None
    ui_path: Optional[str] = None
    detail_record: Optional[str] = None
    enriched_fields: List[str] = field(default_factory=list)
    derive: Optional[Callable[[Dict[str, Any], Dict[str, List[Dict[str, Any]]]], None]] = None
    notify_unpaid: bool = False
    totals_check: bool = False

    @property
    def cursor_key(self) -> str:
        return self.stream

    @property
    def snapshot_cursor_key(self) -> str:
        return f"{self.stream}:snapshot"

    @property
    def owned_columns(self) -> List[str]:
        """Columns the engine authors, in table order"""
        return [f.column for f in self.fields]

    @property
    def unqueried_columns(self) -> List[str]:
        return [f.column for f in self.fields if not f.queried]

    @property
    def foreign_columns(self) -> List[str]:
        return [f.column for f in self.foreign_fields]

    @property
    def write_columns(self) -> List[str]:
        return self.owned_columns + [TOMBSTONE_COLUMN, SYNCED_AT_COLUMN]

    def get_field(self, column: str) -> FieldSpec:
        for spec in self.fields:
            if spec.column == column:
                return spec
        raise KeyError(column)

    def record_id(self, raw: Dict[str, Any]) -> Optional[int]:
        """Positive integer id of an upstream row, or None when unusable"""
        value = to_int_or_none(raw.get(self.id_column))
        return value if value and value > 0 else None

    def normalize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Owned columns of an upstream row, normalized by kind"""
        return {f.column: f.read(raw) for f in self.fields}

    def normalize_child(self, child: ChildSpec, raw: Dict[str, Any]) -> Dict[str, Any]:
        row = {f.column: f.read(raw) for f in child.fields}
        row[self.id_column] = self.record_id(raw)
        return row

    def build_url(self, ui_host: str, record_id: int) -> Optional[str]:
        if not self.ui_path or not ui_host:
            return None
        return f"{ui_host.rstrip('/')}{self.ui_path.format(id=record_id)}"
