"""
Helper Functions Module
Value coercion and parsing utilities used across the application
"""

import json
import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional

BOM = "\ufeff"

_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def coerce_text(value: Any) -> Optional[str]:
    """Trimmed string, or None for missing/blank values"""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_num_or_none(value: Any) -> Optional[float]:
    """Parse a finite number, or None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_int_or_none(value: Any) -> Optional[int]:
    number = to_num_or_none(value)
    if number is None:
        return None
    return int(number)


def parse_bool(value: Any) -> Optional[bool]:
    """Parse ERP boolean flags (T/F, TRUE/FALSE, Y/N, 1/0)"""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().upper()
    if text in ("T", "TRUE", "Y", "YES", "1"):
        return True
    if text in ("F", "FALSE", "N", "NO", "0"):
        return False
    return None


def normalize_us_date(value: Any) -> Optional[str]:
    """Convert M/D/YYYY (or ISO) dates to YYYY-MM-DD"""
    text = coerce_text(value)
    if not text:
        return None
    if _ISO_DATE.match(text):
        return text[:10]
    match = _US_DATE.match(text)
    if not match:
        return None
    month, day, year = match.groups()
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime"""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = coerce_text(value)
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_erp_timestamp(moment: datetime) -> str:
    """Format as YYYY-MM-DDTHH:MM:SS.mmmZ, the form TO_TIMESTAMP_TZ expects"""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def normalize_timestamp(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    return format_erp_timestamp(parsed) if parsed else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """Get current timestamp in ISO format"""
    return utc_now().isoformat()


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After header as seconds; accepts delta-seconds or an HTTP-date"""
    text = coerce_text(value)
    if not text:
        return None
    if text.isdigit():
        return float(text)
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - (now or utc_now())).total_seconds()
    return max(0.0, delta)


def strip_bom(text: str) -> str:
    """Remove a leading byte-order mark"""
    if text and text.startswith(BOM):
        return text[1:]
    return text


def parse_jsonl(text: str) -> List[Dict[str, Any]]:
    """Parse JSON lines, skipping blank and malformed lines"""
    records = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def escape_sql_string(value: str) -> str:
    """Escape single quotes for SQL"""
    if value is None:
        return ""
    return str(value).replace("'", "''")


def id_list_csv(ids: Iterable[Any]) -> str:
    """Comma-joined integer ids for IN (...) clauses"""
    return ",".join(str(int(i)) for i in ids)


def parse_id_list(value: Optional[str]) -> List[int]:
    """Parse '1, 2,3' into [1, 2, 3], dropping non-positive or invalid entries"""
    ids = []
    for part in (value or "").split(","):
        number = to_int_or_none(part)
        if number and number > 0 and number not in ids:
            ids.append(number)
    return ids


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """Split list into chunks of specified size"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]
