"""
Exceptions Module
Error taxonomy shared by the sync engine and the API layer
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every sync engine failure"""


class ThrottledRetryable(SyncError):
    """Upstream signalled a rate limit; handled inside the ERP client"""

    def __init__(self, status: int, retry_after: Optional[float] = None):
        self.status = status
        self.retry_after = retry_after
        super().__init__(f"Throttled (status {status})")


class UpstreamQueryFailed(SyncError):
    """Non-throttle error returned by the ERP"""

    def __init__(self, status: Optional[int], body: str = "", tag: str = ""):
        self.status = status
        self.body = (body or "")[:600]
        self.tag = tag
        label = f" [{tag}]" if tag else ""
        super().__init__(f"ERP request failed{label}: status={status} body={self.body}")


# Short name used by callers that only care about query failures
QueryFailed = UpstreamQueryFailed


class ThrottleCeilingExceeded(UpstreamQueryFailed):
    """Cumulative throttle wait would pass the configured ceiling"""

    def __init__(self, tag: str, attempts: int, waited: float, status: Optional[int] = None):
        self.attempts = attempts
        self.waited = waited
        super().__init__(status, f"throttle ceiling reached after {attempts} attempts ({waited:.2f}s waited)", tag)


class BulkFileFetchFailed(SyncError):
    """File endpoint returned a non-2xx status or a body without ok=true"""

    def __init__(self, file_id: int, status: Optional[int], body: str = ""):
        self.file_id = file_id
        self.status = status
        self.body = (body or "")[:600]
        super().__init__(f"Bulk file {file_id} fetch failed: status={status}")


class ManifestNotFound(SyncError):
    """No manifest with the given name exists in the folder"""

    def __init__(self, name: str, folder_id: int):
        self.name = name
        self.folder_id = folder_id
        super().__init__(f"{name} not found in folder {folder_id}")


class InvalidManifest(SyncError):
    """Manifest could not be parsed or lacks required datasets"""

    def __init__(self, name: str, missing: Optional[list] = None, reason: str = ""):
        self.name = name
        self.missing = list(missing or [])
        detail = reason or f"missing datasets: {', '.join(self.missing)}"
        super().__init__(f"Invalid manifest {name}: {detail}")


class StoreWriteFailed(SyncError):
    """A batch write to the local store failed; earlier batches stay committed"""

    def __init__(self, table: str, batch_index: int, cause: Exception):
        self.table = table
        self.batch_index = batch_index
        self.cause = cause
        super().__init__(f"Write to {table} failed at batch {batch_index}: {cause}")


class UnknownStream(SyncError):
    def __init__(self, stream: str):
        self.stream = stream
        super().__init__(f"Unknown stream: {stream}")


class SyncInProgress(SyncError):
    def __init__(self, stream: str):
        self.stream = stream
        super().__init__(f"Sync already in progress for {stream}")
