"""
Transfer service facade.

Wires the ledger client, persistence store, extractor, orchestrator and
statistics aggregator together and exposes the operations used by the HTTP
API and the CLI.
"""

from datetime import datetime
from typing import List, Optional

from ledger_sync.common.config import Settings
from ledger_sync.common.logging_setup import get_logger
from .db_manager import TransferDatabaseManager
from .extractor import TransferExtractor
from .models import SyncContext, TransferEvent, WindowStatistics
from .orchestrator import SyncOrchestrator, SyncOutcome
from .statistics import StatisticsAggregator

logger = get_logger(__name__)

DEFAULT_PAGE_LIMIT = 50


class TransferService:
    """Sync and query operations over the tracked token's transfers."""

    def __init__(
        self,
        store,
        orchestrator: SyncOrchestrator,
        statistics: StatisticsAggregator,
        max_page_limit: int = 1000
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.statistics = statistics
        self.max_page_limit = max_page_limit

    async def sync(self, ctx: Optional[SyncContext] = None) -> SyncOutcome:
        return await self.orchestrator.sync(ctx)

    async def sync_range(
        self,
        start: int,
        end: int,
        ctx: Optional[SyncContext] = None
    ) -> SyncOutcome:
        return await self.orchestrator.sync_range(start, end, ctx)

    async def get_by_address(
        self,
        address: str,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0
    ) -> List[TransferEvent]:
        """
        Transfers sent or received by an address, newest first.

        Args:
            address: Account address
            limit: Page size, clamped to max_page_limit (non-positive means default)
            offset: Events to skip (negative means 0)

        Returns:
            List of transfer events
        """
        address = (address or "").strip()
        if not address:
            raise ValueError("address is required")

        if limit <= 0:
            limit = DEFAULT_PAGE_LIMIT
        limit = min(limit, self.max_page_limit)
        offset = max(offset, 0)

        return await self.store.get_by_address(address, limit=limit, offset=offset)

    async def get_window_statistics(self, start: datetime, end: datetime) -> WindowStatistics:
        return await self.statistics.window(start, end)

    async def get_weekly_statistics(self) -> WindowStatistics:
        return await self.statistics.weekly()

    async def get_all_time_statistics(self) -> WindowStatistics:
        return await self.statistics.all_time()

    async def watermark(self) -> int:
        return await self.orchestrator.progress.get_watermark()


async def resolve_token_identifier(settings: Settings, ledger) -> str:
    """Configured token identifier, or the currency published by the blockchain info endpoint."""
    if settings.token_identifier:
        return settings.token_identifier

    info = await ledger.get_blockchain_info(settings.blockchain_info_url)
    token_identifier = info.get("chirpCurrency") or ""
    if not token_identifier:
        raise ValueError("TOKEN_IDENTIFIER is not set and blockchain info has no currency")

    logger.info(f"Resolved token identifier {token_identifier}")
    return token_identifier


async def build_service(
    settings: Settings,
    pool,
    ledger,
    show_progress: bool = False
) -> TransferService:
    """
    Build the service from settings, a database pool and a ledger client.

    Args:
        settings: Loaded settings
        pool: AsyncPG connection pool
        ledger: Ledger client
        show_progress: Show progress bars during sync

    Returns:
        Transfer service
    """
    token_identifier = await resolve_token_identifier(settings, ledger)

    store = TransferDatabaseManager(pool)
    extractor = TransferExtractor(token_identifier, claim_function=settings.claim_function)
    orchestrator = SyncOrchestrator.from_settings(
        settings,
        ledger,
        store,
        extractor,
        show_progress=show_progress
    )

    return TransferService(
        store,
        orchestrator,
        StatisticsAggregator(store),
        max_page_limit=settings.max_page_limit
    )
