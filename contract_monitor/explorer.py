import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ErrorKind, ExplorerError, MonitorError
from .models import ExplorerResponse, Transaction, parse_block_number

logger = logging.getLogger(__name__)


class ExplorerClient:
    """Etherscan-style REST client with a request-rate limiter and throttle backoff."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        requests_per_second: float = 5,
        max_retries: int = 5,
        backoff_sec: float = 1.0,
        max_backoff_sec: float = 16.0,
        timeout_sec: int = 20,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.min_interval = 1.0 / requests_per_second
        self.max_retries = max(1, max_retries)
        self.backoff_sec = backoff_sec
        self.max_backoff_sec = max_backoff_sec
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._last_request = 0.0
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "ExplorerClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _wait_for_slot(self) -> None:
        async with self._rate_lock:
            elapsed = time.monotonic() - self._last_request
            delay = self.min_interval - elapsed
            if delay > 0:
                await asyncio.sleep(delay)
            self._last_request = time.monotonic()

    def _backoff(self, attempt: int) -> float:
        return min(self.max_backoff_sec, self.backoff_sec * (2 ** attempt))

    async def _get(self, params: Dict[str, Any]) -> ExplorerResponse:
        try:
            async with self._session.get(self.base_url, params=params) as resp:
                if resp.status < 200 or resp.status >= 300:
                    kind = ErrorKind.RATE_LIMITED if resp.status == 429 else ErrorKind.TRANSPORT
                    raise ExplorerError(kind, f"HTTP {resp.status}", source=self.base_url)
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ExplorerError(ErrorKind.TRANSPORT, f"{type(e).__name__}: {e}", source=self.base_url) from e
        return ExplorerResponse.from_payload(data)

    async def request(self, params: Dict[str, Any]) -> Any:
        if not self._session:
            raise RuntimeError("explorer session is not initialized")
        query = {k: str(v) for k, v in params.items()}
        if self.api_key:
            query["apikey"] = self.api_key

        last_error: Optional[ExplorerError] = None
        for attempt in range(self.max_retries):
            await self._wait_for_slot()
            try:
                response = await self._get(query)
            except ExplorerError as e:
                logger.warning("explorer request failed (%s): %s", query.get("action"), e.message)
                last_error = e
                if e.kind == ErrorKind.RATE_LIMITED and attempt < self.max_retries - 1:
                    await asyncio.sleep(self._backoff(attempt))
                continue

            if response.kind == "ok":
                return response.raw_result
            if response.kind == "empty":
                return []
            if response.kind == "rate_limited":
                last_error = ExplorerError(ErrorKind.RATE_LIMITED, response.message, source=self.base_url)
                if attempt < self.max_retries - 1:
                    backoff = self._backoff(attempt)
                    logger.warning("explorer rate limit reached, retrying in %.1fs", backoff)
                    await asyncio.sleep(backoff)
                continue
            last_error = ExplorerError(ErrorKind.PROTOCOL, response.message, source=self.base_url)
            logger.warning("explorer error (%s): %s", query.get("action"), response.message)

        raise last_error


def _window_params(action: str, contract: str, start_block: int, end_block: int) -> Dict[str, Any]:
    return {
        "module": "account",
        "action": action,
        "address": contract,
        "startblock": start_block,
        "endblock": end_block,
        "sort": "asc",
    }


async def fetch_contract_transactions(
    explorer: ExplorerClient,
    contract: str,
    start_block: int,
    end_block: int,
    filter_failed: bool = False,
    max_results: int = 10000,
) -> List[Transaction]:
    """External and internal transactions sent to ``contract`` in ``[start_block, end_block]``.

    Both lists are merged and deduplicated by hash, external entries first.
    A window whose list reaches ``max_results`` is split in half and fetched again.
    """
    external = await explorer.request(_window_params("txlist", contract, start_block, end_block))
    internal = await explorer.request(_window_params("txlistinternal", contract, start_block, end_block))
    external = external if isinstance(external, list) else []
    internal = internal if isinstance(internal, list) else []

    truncated = len(external) >= max_results or len(internal) >= max_results
    if truncated and end_block > start_block:
        mid = (start_block + end_block) // 2
        logger.debug("explorer window %d-%d truncated, splitting", start_block, end_block)
        left = await fetch_contract_transactions(
            explorer, contract, start_block, mid, filter_failed, max_results
        )
        right = await fetch_contract_transactions(
            explorer, contract, mid + 1, end_block, filter_failed, max_results
        )
        return left + right
    if truncated:
        logger.warning(
            "explorer block %d has at least %d transactions, results may be incomplete", start_block, max_results
        )

    txs: List[Transaction] = []
    seen = set()
    for item in external + internal:
        if not isinstance(item, dict) or not item.get("hash"):
            continue
        tx = Transaction.from_explorer(item)
        if tx.to != contract or tx.hash in seen:
            continue
        seen.add(tx.hash)
        if filter_failed and tx.failed:
            continue
        txs.append(tx)
    return txs


async def get_contract_creation_block(explorer: ExplorerClient, contract: str, rpc=None) -> Optional[int]:
    result = await explorer.request(
        {"module": "contract", "action": "getcontractcreation", "contractaddresses": contract}
    )
    if not isinstance(result, list) or not result:
        return None
    entry = result[0]
    if entry.get("blockNumber"):
        return parse_block_number(entry["blockNumber"])
    tx_hash = entry.get("txHash")
    if not tx_hash or rpc is None:
        return None
    try:
        tx = await rpc.get_transaction(tx_hash)
    except MonitorError as e:
        logger.warning("could not resolve creation tx %s: %s", tx_hash, e)
        return None
    return parse_block_number(tx["blockNumber"])
