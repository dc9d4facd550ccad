import argparse
import asyncio
import json
import logging

from services.transfers.db_manager import TransferDatabaseManager
from services.transfers.service import build_service
from services.transfers.sui_client import SuiClient

from .api import serve
from .common.config import Settings, load_settings
from .common.db import close_pool, create_pool, test_connection as check_connection
from .common.logging_setup import setup_logging


async def _init_db(settings: Settings) -> None:
    pool = await create_pool(settings)
    try:
        await TransferDatabaseManager(pool).create_schema()
    finally:
        await close_pool(pool)


async def _health(settings: Settings) -> bool:
    pool = await create_pool(settings)
    try:
        return await check_connection(pool)
    finally:
        await close_pool(pool)


async def _with_service(settings: Settings, action, show_progress: bool = False):
    pool = await create_pool(settings)
    try:
        async with SuiClient(
            rpc_url=settings.sui_rpc_url,
            timeout=settings.http_timeout,
            max_concurrent_requests=settings.max_workers,
        ) as ledger:
            service = await build_service(settings, pool, ledger, show_progress=show_progress)
            return await action(service)
    finally:
        await close_pool(pool)


def cmd_init_db(args: argparse.Namespace) -> None:
    logging.info("initializing database schema")
    asyncio.run(_init_db(args.settings))
    logging.info("schema applied")


def cmd_health(args: argparse.Namespace) -> None:
    logging.info("testing database connectivity")
    ok = asyncio.run(_health(args.settings))
    logging.info({"db": "ok" if ok else "unreachable"})
    if not ok:
        raise SystemExit(1)


def cmd_sync(args: argparse.Namespace) -> None:
    if (args.from_checkpoint is None) != (args.to_checkpoint is None):
        raise SystemExit("--from and --to must be given together")

    async def action(service):
        if args.from_checkpoint is not None:
            return await service.sync_range(args.from_checkpoint, args.to_checkpoint)
        return await service.sync()

    outcome = asyncio.run(_with_service(args.settings, action, show_progress=True))
    print(json.dumps(outcome.to_dict(), indent=2, default=str))
    if not outcome.ok:
        raise SystemExit(2)


def cmd_stats(args: argparse.Namespace) -> None:
    async def action(service):
        if args.all_time:
            return await service.get_all_time_statistics()
        return await service.get_weekly_statistics()

    stats = asyncio.run(_with_service(args.settings, action))
    print(stats.model_dump_json(indent=2))


def cmd_watermark(args: argparse.Namespace) -> None:
    async def action(service):
        return await service.watermark()

    watermark = asyncio.run(_with_service(args.settings, action))
    print(watermark)


def cmd_serve(args: argparse.Namespace) -> None:
    try:
        asyncio.run(serve(args.settings))
    except KeyboardInterrupt:
        logging.info("server stopped")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("ledger-sync")
    p.add_argument("--env-file", help="Path to a .env file")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db").set_defaults(func=cmd_init_db)
    sub.add_parser("health").set_defaults(func=cmd_health)
    sub.add_parser("serve").set_defaults(func=cmd_serve)
    sub.add_parser("watermark").set_defaults(func=cmd_watermark)

    p_sync = sub.add_parser("sync")
    p_sync.add_argument("--from", dest="from_checkpoint", type=int)
    p_sync.add_argument("--to", dest="to_checkpoint", type=int)
    p_sync.set_defaults(func=cmd_sync)

    p_stats = sub.add_parser("stats")
    p_stats.add_argument("--all-time", action="store_true")
    p_stats.set_defaults(func=cmd_stats)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.settings = load_settings(args.env_file)
    setup_logging(args.settings)
    args.func(args)


if __name__ == "__main__":
    main()
