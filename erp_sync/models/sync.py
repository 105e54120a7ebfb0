"""
Sync Models
Pydantic models for sync requests and results
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..utils.helpers import clamp, normalize_us_date


class IncrementalRequest(BaseModel):
    dry_run: bool = False
    ids: List[int] = Field(default_factory=list)
    force_all: bool = False
    since: Optional[str] = None
    scope: Literal["profiles", "all"] = "profiles"
    batch_size: Optional[int] = None
    detail_concurrency: Optional[int] = None

    @field_validator("ids")
    @classmethod
    def _positive_unique_ids(cls, value: List[int]) -> List[int]:
        seen: List[int] = []
        for record_id in value:
            if record_id > 0 and record_id not in seen:
                seen.append(record_id)
        return seen

    @field_validator("since")
    @classmethod
    def _since_date(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        parsed = normalize_us_date(value)
        if parsed is None:
            raise ValueError("since must be a date (YYYY-MM-DD)")
        return parsed

    @field_validator("batch_size")
    @classmethod
    def _batch_size(cls, value: Optional[int]) -> Optional[int]:
        return None if value is None else clamp(value, 1, 1000)

    @field_validator("detail_concurrency")
    @classmethod
    def _concurrency(cls, value: Optional[int]) -> Optional[int]:
        return None if value is None else clamp(value, 1, 10)

    @property
    def mode(self) -> str:
        if self.ids:
            return "explicit_ids"
        if self.force_all:
            return "force_all"
        return "incremental"


class SnapshotRequest(BaseModel):
    dry_run: bool = False


class SyncResult(BaseModel):
    stream: str
    mode: str
    status: str
    dry_run: bool = False
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: float = 0.0
    since: Optional[str] = None
    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    strategy_counts: Dict[str, int] = Field(default_factory=dict)
    candidates: int = 0
    fetched: int = 0
    skipped: int = 0
    batches: int = 0
    new: int = 0
    changed: int = 0
    unchanged: int = 0
    missing: int = 0
    tombstoned: int = 0
    exempted: int = 0
    notifications_sent: int = 0
    new_ids: List[int] = Field(default_factory=list)
    tombstoned_ids: List[int] = Field(default_factory=list)
    exempted_ids: List[int] = Field(default_factory=list)
    changes: List[Dict[str, Any]] = Field(default_factory=list)
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
