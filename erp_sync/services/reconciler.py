"""
Reconciler Module
=================
Compares a freshly fetched set of records against the stored set and
decides what the writer has to do.

CLASSIFICATION:
--------------
New        id not stored yet
Changed    a field differs (numbers within the epsilon count as equal), the
           child set differs (rows added, removed or altered), or the
           stored row is tombstoned and the record came back
Unchanged  everything matches; nothing is written
Missing    stored as active but absent from an authoritative listing

OWNERSHIP:
---------
Only descriptor.fields are compared or written. Foreign columns (created_at,
created_by, operational flags) are carried over from the stored row and
never part of the update set.

GRACE PERIOD:
------------
A Missing id whose stored row carries the provenance marker (created_by,
case-insensitive) and was created inside the window is exempted from
tombstoning for this run. Rows without the marker are never exempted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config import config
from ..models.entities import ChildSpec, EntityDescriptor, FieldSpec
from ..utils.constants import TOMBSTONE_COLUMN
from ..utils.decorators import timed
from ..utils.helpers import parse_timestamp, utc_now

# parent id -> rows, per child table
ChildRows = Dict[str, Dict[int, List[Dict[str, Any]]]]


@dataclass
class GracePolicy:
    """Exemption from tombstoning for records created recently through a side channel"""
    window: timedelta = timedelta(minutes=90)
    provenance: str = "order console"

    @classmethod
    def from_config(cls) -> "GracePolicy":
        return cls(
            window=timedelta(minutes=config.sync.grace_period_minutes),
            provenance=config.sync.grace_provenance,
        )

    def is_exempt(self, row: Optional[Dict[str, Any]], now: datetime) -> bool:
        if not row or not self.provenance:
            return False
        created_by = str(row.get("created_by") or "").strip().lower()
        if created_by != self.provenance.strip().lower():
            return False
        created_at = parse_timestamp(row.get("created_at"))
        return created_at is not None and created_at >= now - self.window


@dataclass
class FieldChange:
    column: str
    before: Any
    after: Any


@dataclass
class RecordDiff:
    record_id: int
    changes: List[FieldChange] = field(default_factory=list)
    children_changed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "fields": {c.column: {"before": c.before, "after": c.after} for c in self.changes},
            "children": self.children_changed,
        }


@dataclass
class ConsistencyIssue:
    record_id: int
    check: str
    expected: float
    actual: float

    @property
    def delta(self) -> float:
        return round(self.actual - self.expected, 2)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "check": self.check,
            "expected": self.expected,
            "actual": self.actual,
            "delta": self.delta,
        }


@dataclass
class Reconciliation:
    new: List[int] = field(default_factory=list)
    changed: List[RecordDiff] = field(default_factory=list)
    unchanged: List[int] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)
    tombstone: List[int] = field(default_factory=list)
    exempted: List[int] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    children: ChildRows = field(default_factory=dict)
    issues: List[ConsistencyIssue] = field(default_factory=list)

    @property
    def changed_ids(self) -> List[int]:
        return [diff.record_id for diff in self.changed]

    @property
    def write_ids(self) -> List[int]:
        return self.new + self.changed_ids


def dedupe_children(child: ChildSpec, rows: Iterable[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
    """Child rows keyed by their sub key; later rows win, rows without a key are dropped"""
    key_spec = next((f for f in child.fields if f.column == child.key), None)
    keyed = {}
    for row in rows:
        key = row.get(child.key)
        if key_spec is not None:
            key = key_spec.normalize(key)
        if key is not None:
            keyed[key] = row
    return keyed


class Reconciler:
    """Diff engine shared by both sync paths"""

    def __init__(self, epsilon: Optional[float] = None, grace: Optional[GracePolicy] = None):
        self.epsilon = config.sync.numeric_epsilon if epsilon is None else epsilon
        self.grace = grace or GracePolicy.from_config()

    def values_equal(self, spec: FieldSpec, before: Any, after: Any) -> bool:
        before = spec.normalize(before)
        after = spec.normalize(after)
        if before is None or after is None:
            return before is None and after is None
        if spec.kind == "number":
            return abs(before - after) <= self.epsilon
        return before == after

    def diff_fields(self, descriptor: EntityDescriptor, stored: Dict[str, Any], fresh: Dict[str, Any]) -> List[FieldChange]:
        changes = []
        for spec in descriptor.fields:
            before = spec.normalize(stored.get(spec.column))
            after = spec.normalize(fresh.get(spec.column))
            if not self.values_equal(spec, before, after):
                changes.append(FieldChange(spec.column, before, after))
        return changes

    def child_sets_equal(self, child: ChildSpec, stored: List[Dict[str, Any]], fresh: List[Dict[str, Any]]) -> bool:
        stored_keyed = dedupe_children(child, stored)
        fresh_keyed = dedupe_children(child, fresh)
        if set(stored_keyed) != set(fresh_keyed):
            return False
        for key, fresh_row in fresh_keyed.items():
            stored_row = stored_keyed[key]
            for spec in child.fields:
                if not self.values_equal(spec, stored_row.get(spec.column), fresh_row.get(spec.column)):
                    return False
        return True

    def check_consistency(
        self,
        descriptor: EntityDescriptor,
        record_id: int,
        row: Dict[str, Any],
        children: Dict[str, List[Dict[str, Any]]],
    ) -> List[ConsistencyIssue]:
        """Header total vs line amounts, and total vs paid + remaining"""
        issues = []
        total = row.get("total")
        if total is None:
            return issues

        for child in descriptor.children:
            if not child.amount_column or child.table not in children:
                continue
            line_sum = round(sum(r.get(child.amount_column) or 0.0 for r in children[child.table]), 2)
            if children[child.table] and abs(total - line_sum) > self.epsilon:
                issues.append(ConsistencyIssue(record_id, "totals_mismatch", total, line_sum))
            break

        paid = row.get("amount_paid")
        remaining = row.get("amount_remaining")
        if paid is not None and remaining is not None:
            balance = round(paid + remaining, 2)
            if abs(total - balance) > self.epsilon:
                issues.append(ConsistencyIssue(record_id, "balance_mismatch", total, balance))
        return issues

    def apply_grace(
        self,
        missing: Iterable[int],
        stored: Dict[int, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> Tuple[List[int], List[int]]:
        """Split missing ids into (tombstone, exempted)"""
        now = now or utc_now()
        tombstone, exempted = [], []
        for record_id in sorted(set(missing)):
            if self.grace.is_exempt(stored.get(record_id), now):
                exempted.append(record_id)
            else:
                tombstone.append(record_id)
        return tombstone, exempted

    @timed
    def reconcile(
        self,
        descriptor: EntityDescriptor,
        fresh: Dict[int, Dict[str, Any]],
        fresh_children: ChildRows,
        stored: Dict[int, Dict[str, Any]],
        stored_children: ChildRows,
        active_ids: Optional[Iterable[int]] = None,
        now: Optional[datetime] = None,
    ) -> Reconciliation:
        """Classify fresh records against stored ones

        fresh rows must already be normalized. When active_ids is given it is
        treated as the stored active set of an authoritative snapshot and
        every active id absent from fresh becomes Missing.
        """
        result = Reconciliation(children={child.table: {} for child in descriptor.children})

        for record_id in sorted(fresh):
            row = fresh[record_id]
            children = {
                child.table: list(dedupe_children(child, fresh_children.get(child.table, {}).get(record_id, [])).values())
                for child in descriptor.children
            }
            existing = stored.get(record_id)

            if existing is None:
                result.new.append(record_id)
            else:
                diff = RecordDiff(record_id, self.diff_fields(descriptor, existing, row))
                if existing.get(TOMBSTONE_COLUMN) is not None:
                    diff.changes.append(FieldChange(TOMBSTONE_COLUMN, existing.get(TOMBSTONE_COLUMN), None))
                for child in descriptor.children:
                    before = stored_children.get(child.table, {}).get(record_id, [])
                    if not self.child_sets_equal(child, before, children[child.table]):
                        diff.children_changed.append(child.table)
                if not diff.changes and not diff.children_changed:
                    result.unchanged.append(record_id)
                    continue
                result.changed.append(diff)

            out = dict(row)
            for column in descriptor.foreign_columns:
                out[column] = existing.get(column) if existing else None
            result.rows.append(out)
            for table, rows in children.items():
                result.children[table][record_id] = rows

            if descriptor.totals_check:
                result.issues.extend(self.check_consistency(descriptor, record_id, row, children))

        if active_ids is not None:
            result.missing = sorted(set(active_ids) - set(fresh))
            result.tombstone, result.exempted = self.apply_grace(result.missing, stored, now)

        return result
