"""
Client-side sync and KPI layer for a multi-brand sales app.

This package keeps local copies of remote collections and spreadsheets
current and computes sales KPIs from them:
- replicator / sync_service: incremental replication with watermarks
- tabular / sheets: checksum and TTL guarded spreadsheet loading
- records / kpi / kpi_service: record adapters, period KPIs, result caching
- config: Centralized configuration
"""

# Import in dependency order
from salesync.exceptions import (
    SalesyncError,
    RemoteFetchError,
    DocumentQueryError,
    RecordParseError,
    CacheWriteError,
    OperationCancelled,
)

from salesync.cancellation import CancellationToken

from salesync.storage import LocalStore

from salesync.replicator import DeltaFetchResult, IncrementalReplicator

from salesync.merger import LocalCollectionStore, merge_documents

from salesync.watermarks import WatermarkStore

from salesync.firestore import FirestoreClient

from salesync.tabular import TabularCache

from salesync.sheets import SpreadsheetLoader

from salesync.records import SalesRecord, HeaderRecordAdapter, LedgerRecordAdapter

from salesync.kpi import KpiAggregator, ReferenceDate

from salesync.result_cache import ResultCache

from salesync.kpi_service import KpiService

from salesync.sync_service import SyncService

from salesync.config import config

__all__ = [
    # Exceptions
    "SalesyncError",
    "RemoteFetchError",
    "DocumentQueryError",
    "RecordParseError",
    "CacheWriteError",
    "OperationCancelled",
    # Cancellation
    "CancellationToken",
    # Storage
    "LocalStore",
    "LocalCollectionStore",
    "WatermarkStore",
    # Replication
    "FirestoreClient",
    "IncrementalReplicator",
    "DeltaFetchResult",
    "merge_documents",
    "SyncService",
    # Spreadsheets
    "TabularCache",
    "SpreadsheetLoader",
    # KPIs
    "SalesRecord",
    "HeaderRecordAdapter",
    "LedgerRecordAdapter",
    "KpiAggregator",
    "ReferenceDate",
    "ResultCache",
    "KpiService",
    # Config
    "config",
]
