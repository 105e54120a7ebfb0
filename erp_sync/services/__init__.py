# Services Package
# Business Logic Layer

from .erp_client import ErpClient
from .query_executor import QueryExecutor
from .file_reader import BulkFileReader
from .manifest_resolver import ManifestResolver
from .discovery import ChangeSetDiscovery
from .detail_fetcher import DetailFetcher
from .reconciler import Reconciler, GracePolicy
from .batch_writer import BatchWriter
from .cursor_store import CursorStore
from .database_service import DatabaseService
from .notification_service import NotificationService
from .sync_service import SyncService, get_sync_service

__all__ = [
    "ErpClient",
    "QueryExecutor",
    "BulkFileReader",
    "ManifestResolver",
    "ChangeSetDiscovery",
    "DetailFetcher",
    "Reconciler",
    "GracePolicy",
    "BatchWriter",
    "CursorStore",
    "DatabaseService",
    "NotificationService",
    "SyncService",
    "get_sync_service",
]
