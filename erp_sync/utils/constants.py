"""
Constants Module
Application-wide constants
"""

# Application Info
APP_NAME = "ERP Sync Service"
APP_VERSION = "1.0.0"

# ERP REST paths (relative to the services root)
SUITEQL_PATH = "/query/v1/suiteql"
RECORD_PATH = "/record/v1"

# Local store tables owned by the engine itself
SYNC_STATE_TABLE = "sync_state"
SYNC_HISTORY_TABLE = "sync_history"
SCOPE_TABLE = "profiles"
SCOPE_COLUMN = "netsuite_customer_id"
TOMBSTONE_COLUMN = "deleted_at"
SYNCED_AT_COLUMN = "synced_at"

# Sync Status
class SyncStatus:
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

# Sync Modes
class SyncMode:
    INCREMENTAL = "incremental"
    EXPLICIT_IDS = "explicit_ids"
    FORCE_ALL = "force_all"
    SNAPSHOT = "snapshot"

# Carrier tracking pages, keyed by carrier code
TRACKING_URLS = {
    "fedex": "https://www.fedex.com/fedextrack/?tracknumbers={number}",
    "ups": "https://www.ups.com/track?tracknum={number}",
    "usps": "https://tools.usps.com/go/TrackConfirmAction?tLabels={number}",
    "dhl": "https://www.dhl.com/global-en/home/tracking.html?tracking-id={number}",
    "ontrac": "https://www.ontrac.com/trackingres.asp?tracking_number={number}",
}
TRACKING_FALLBACK_URL = "https://www.google.com/search?q={query}"
