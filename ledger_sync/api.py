"""HTTP API and periodic sync timer for the transfer service."""

import asyncio
from datetime import datetime
from typing import Optional

from aiohttp import web

from services.transfers.db_manager import PersistenceError
from services.transfers.orchestrator import SyncLockTimeoutError
from services.transfers.service import TransferService, build_service
from services.transfers.sui_client import SuiClient

from .common.config import Settings
from .common.db import close_pool, create_pool
from .common.logging_setup import get_logger

logger = get_logger(__name__)


def parse_int(value: Optional[str], name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer")


def parse_datetime(value: Optional[str], name: str) -> datetime:
    if not value:
        raise ValueError(f"{name} is required")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"{name} must be an ISO-8601 datetime")


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    except SyncLockTimeoutError as e:
        return web.json_response({"error": str(e)}, status=409)
    except PersistenceError as e:
        logger.error(f"Storage failure on {request.path}: {e}")
        return web.json_response({"error": "storage unavailable"}, status=503)


class TransferAPI:
    """Route handlers bound to one transfer service."""

    def __init__(self, service: TransferService, sync_interval: int = 0):
        self.service = service
        self.sync_interval = sync_interval

    async def health_handler(self, request: web.Request) -> web.Response:
        watermark = await self.service.watermark()
        return web.json_response({
            "ok": True,
            "watermark": watermark,
            "syncing": self.service.orchestrator.running,
        })

    async def address_handler(self, request: web.Request) -> web.Response:
        address = request.query.get("address", "")
        limit = parse_int(request.query.get("limit"), "limit", 50)
        offset = parse_int(request.query.get("offset"), "offset", 0)

        events = await self.service.get_by_address(address, limit=limit, offset=offset)
        return web.json_response({
            "count": len(events),
            "items": [event.model_dump(mode="json") for event in events],
        })

    async def weekly_statistics_handler(self, request: web.Request) -> web.Response:
        stats = await self.service.get_weekly_statistics()
        return web.json_response(stats.model_dump(mode="json"))

    async def window_statistics_handler(self, request: web.Request) -> web.Response:
        start = parse_datetime(request.query.get("start"), "start")
        end = parse_datetime(request.query.get("end"), "end")

        stats = await self.service.get_window_statistics(start, end)
        return web.json_response(stats.model_dump(mode="json"))

    async def all_time_statistics_handler(self, request: web.Request) -> web.Response:
        stats = await self.service.get_all_time_statistics()
        return web.json_response(stats.model_dump(mode="json"))

    async def sync_handler(self, request: web.Request) -> web.Response:
        outcome = await self.service.sync()
        return web.json_response(outcome.to_dict())

    async def periodic_sync(self) -> None:
        while True:
            try:
                await self.service.sync()
            except (PersistenceError, SyncLockTimeoutError) as e:
                logger.log_operation(
                    operation="periodic_sync",
                    status="failed",
                    error=str(e)
                )
            except Exception as e:
                logger.error(f"Periodic sync crashed: {type(e).__name__}: {e}", exc_info=True)
            await asyncio.sleep(self.sync_interval)

    async def sync_timer(self, app: web.Application):
        task = None
        if self.sync_interval > 0:
            task = asyncio.create_task(self.periodic_sync())
            logger.info(f"Periodic sync every {self.sync_interval}s")

        yield

        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/api/v1/transactions/address", self.address_handler)
        app.router.add_get("/api/v1/statistics/weekly", self.weekly_statistics_handler)
        app.router.add_get("/api/v1/statistics/all-time", self.all_time_statistics_handler)
        app.router.add_get("/api/v1/statistics", self.window_statistics_handler)
        app.router.add_post("/api/v1/sync", self.sync_handler)
        app.cleanup_ctx.append(self.sync_timer)
        return app


def create_app(service: TransferService, sync_interval: int = 0) -> web.Application:
    return TransferAPI(service, sync_interval=sync_interval).build_app()


async def serve(settings: Settings) -> None:
    """Run the HTTP API with the periodic sync timer until cancelled."""
    pool = await create_pool(settings)
    try:
        async with SuiClient(
            rpc_url=settings.sui_rpc_url,
            timeout=settings.http_timeout,
            max_concurrent_requests=settings.max_workers,
        ) as ledger:
            service = await build_service(settings, pool, ledger)
            app = create_app(service, sync_interval=settings.sync_interval)

            runner = web.AppRunner(app)
            await runner.setup()
            try:
                site = web.TCPSite(runner, host=settings.http_host, port=settings.http_port)
                await site.start()
                logger.info(f"Serving on {settings.http_host}:{settings.http_port}")

                await asyncio.Event().wait()
            finally:
                await runner.cleanup()
    finally:
        await close_pool(pool)
