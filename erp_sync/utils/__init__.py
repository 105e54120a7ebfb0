# Utils Package
# Logging, decorators, value coercion helpers

from .logger import logger, setup_logger
from .decorators import retry, timed
from .helpers import chunk_list, parse_jsonl, parse_timestamp, utc_now
from .constants import SyncMode, SyncStatus

__all__ = [
    "logger",
    "setup_logger",
    "retry",
    "timed",
    "chunk_list",
    "parse_jsonl",
    "parse_timestamp",
    "utc_now",
    "SyncMode",
    "SyncStatus",
]
