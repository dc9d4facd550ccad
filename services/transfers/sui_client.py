"""Sui JSON-RPC client for checkpoint and transaction extraction.

This module provides an async client for the Sui full-node JSON-RPC API. It
exposes the four lookup primitives the sync engine consumes (latest checkpoint,
checkpoint by sequence, transaction by digest, paginated transactions by
address) and returns raw records; decoding happens in the extractor.
"""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

logger = structlog.get_logger()


TRANSACTION_OPTIONS = {
    "showInput": True,
    "showEffects": True,
    "showEvents": True,
    "showObjectChanges": True,
    "showBalanceChanges": True,
}

ADDRESS_FILTERS = {
    "from": "FromAddress",
    "to": "ToAddress",
}


class SuiRPCError(Exception):
    """Raised when the node returns a JSON-RPC error response."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class SuiClient:
    """Async client for the Sui JSON-RPC API with request concurrency limiting."""

    def __init__(
        self,
        rpc_url: str = "https://fullnode.mainnet.sui.io:443",
        timeout: int = 30,
        max_concurrent_requests: int = 32,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize Sui client.

        Args:
            rpc_url: Full-node JSON-RPC endpoint
            timeout: Request timeout in seconds
            max_concurrent_requests: Ceiling on simultaneous in-flight requests
            session: Optional shared aiohttp session (owned by the caller)
        """
        self.rpc_url = rpc_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.rate_limit = asyncio.Semaphore(max_concurrent_requests)
        self.requests_made = 0

        self._session = session
        self._owns_session = session is None

        self.logger = logger.bind(component="sui_client")

    async def __aenter__(self) -> "SuiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC call to the node.

        Args:
            method: RPC method name (e.g., "sui_getCheckpoint")
            params: Method parameters

        Returns:
            RPC response result

        Raises:
            SuiRPCError: If the node answers with an error object
            aiohttp.ClientError: On HTTP errors (after retries)
        """
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }

        async with self.rate_limit:
            session = self._get_session()
            async with session.post(self.rpc_url, json=payload) as response:
                response.raise_for_status()
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise SuiRPCError(f"Malformed JSON-RPC reply to {method}: {e}")

                self.requests_made += 1

                if not isinstance(data, dict):
                    raise SuiRPCError(f"Unexpected JSON-RPC reply to {method}: {data!r}")

                if "error" in data and data["error"]:
                    error = data["error"]
                    error_msg = error.get("message", "Unknown error")
                    self.logger.error("rpc_error", method=method, error=error_msg)
                    raise SuiRPCError(f"RPC error: {error_msg}", code=error.get("code"))

                return data.get("result")

    async def get_latest_checkpoint(self) -> int:
        """Get the latest executed checkpoint sequence number."""
        result = await self._rpc_call("sui_getLatestCheckpointSequenceNumber", [])
        try:
            return int(result)
        except (TypeError, ValueError):
            raise SuiRPCError(f"Invalid latest checkpoint: {result!r}")

    async def get_checkpoint(self, sequence_number: int) -> Dict[str, Any]:
        """Get checkpoint details (timestamp, transaction digests) by sequence number.

        Args:
            sequence_number: Checkpoint sequence number

        Returns:
            Raw checkpoint record
        """
        log = self.logger.bind(checkpoint=sequence_number, operation="get_checkpoint")

        checkpoint = await self._rpc_call("sui_getCheckpoint", [str(sequence_number)])
        if checkpoint is None:
            raise SuiRPCError(f"Checkpoint {sequence_number} not found")

        log.debug("fetched_checkpoint", tx_count=len(checkpoint.get("transactions") or []))
        return checkpoint

    async def get_transaction(self, digest: str) -> Dict[str, Any]:
        """Get full transaction details including effects, events and balance changes.

        Args:
            digest: Transaction digest

        Returns:
            Raw transaction block
        """
        log = self.logger.bind(digest=digest, operation="get_transaction")

        try:
            tx = await self._rpc_call("sui_getTransactionBlock", [digest, TRANSACTION_OPTIONS])
        except Exception as e:
            log.error("failed_to_fetch_transaction", error=str(e))
            raise

        if tx is None:
            raise SuiRPCError(f"Transaction {digest} not found")

        return tx

    async def query_by_address(
        self,
        address: str,
        cursor: Optional[str] = None,
        limit: int = 50,
        direction: str = "from",
    ) -> Dict[str, Any]:
        """Query one page of transactions sent from (or to) an address.

        Args:
            address: Account address
            cursor: Cursor returned by the previous page, None for the first page
            limit: Page size
            direction: "from" (FromAddress filter) or "to" (ToAddress filter)

        Returns:
            Raw page with `data`, `nextCursor` and `hasNextPage`
        """
        if direction not in ADDRESS_FILTERS:
            raise ValueError(f"direction must be one of {sorted(ADDRESS_FILTERS)}, got {direction!r}")

        query = {
            "filter": {ADDRESS_FILTERS[direction]: address},
            "options": TRANSACTION_OPTIONS,
        }

        page = await self._rpc_call("suix_queryTransactionBlocks", [query, cursor, limit, False])

        self.logger.debug(
            "fetched_address_page",
            address=address,
            direction=direction,
            count=len((page or {}).get("data") or []),
        )
        return page or {"data": [], "nextCursor": None, "hasNextPage": False}

    async def get_blockchain_info(self, info_url: str) -> Dict[str, Any]:
        """Fetch token configuration (currency coin type, claim address) from the public info endpoint."""
        session = self._get_session()
        async with session.get(info_url) as response:
            response.raise_for_status()
            info = await response.json()

        self.logger.info(
            "fetched_blockchain_info",
            network=info.get("current_network"),
            currency=info.get("chirpCurrency"),
        )
        return info
