import asyncio
from typing import Optional

import asyncpg
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import Settings
from .logging_setup import get_logger

logger = get_logger(__name__)


@retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    retry=retry_if_exception_type((OSError, asyncio.TimeoutError, asyncpg.CannotConnectNowError)),
    reraise=True,
)
async def create_pool(settings: Settings) -> asyncpg.Pool:
    """Create the asyncpg connection pool with retry logic"""
    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min,
        max_size=settings.db_pool_max,
        timeout=30,
        max_inactive_connection_lifetime=300,  # 5 minutes
    )
    logger.info("Database connection pool initialized")
    return pool


async def test_connection(pool: asyncpg.Pool) -> bool:
    """Test database connection and return True if successful"""
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
        return result == 1
    except (asyncpg.PostgresError, OSError) as e:
        logger.error(f"Database connection test failed: {e}")
        return False


async def close_pool(pool: Optional[asyncpg.Pool]) -> None:
    """Close the connection pool gracefully"""
    if pool is not None:
        await pool.close()
        logger.info("Database connection pool closed")
