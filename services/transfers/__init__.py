"""Transfer event sync services.

This module provides checkpoint-based synchronization of a single token's
transfer events from the Sui ledger into PostgreSQL, plus windowed
statistics over the stored history.
"""

from .sui_client import SuiClient, SuiRPCError
from .models import SyncContext, TransactionLocator, TransferEvent, TransferKind, WindowStatistics
from .extractor import TransferExtractor
from .dedup import deduplicate, event_key
from .db_manager import PersistenceError, TransferDatabaseManager
from .checkpoint_manager import SyncProgressTracker
from .batch_processor import BatchResult, ConcurrentBatchProcessor
from .orchestrator import PagePacer, SyncLockTimeoutError, SyncOrchestrator, SyncOutcome
from .statistics import StatisticsAggregator
from .service import TransferService, build_service

__all__ = [
    # Clients
    'SuiClient',
    'SuiRPCError',

    # Models
    'SyncContext',
    'TransactionLocator',
    'TransferEvent',
    'TransferKind',
    'WindowStatistics',

    # Pipeline
    'TransferExtractor',
    'deduplicate',
    'event_key',
    'SyncProgressTracker',
    'BatchResult',
    'ConcurrentBatchProcessor',
    'PagePacer',
    'SyncLockTimeoutError',
    'SyncOrchestrator',
    'SyncOutcome',

    # Storage
    'PersistenceError',
    'TransferDatabaseManager',

    # Read path
    'StatisticsAggregator',
    'TransferService',
    'build_service',
]
