import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import EndpointsExhaustedError, ErrorKind, RpcError
from .models import RpcResponse, parse_hex_int

logger = logging.getLogger(__name__)


class RPCClient:
    """JSON-RPC client over an ordered endpoint pool.

    Each call starts at the last endpoint that answered and walks the pool
    once. Endpoints are never dropped, only preferred.
    """

    def __init__(
        self,
        urls: List[str],
        timeout_sec: int = 12,
        endpoint_delay_sec: float = 0.2,
    ):
        if not urls:
            raise ValueError("RPC endpoint pool cannot be empty")
        self.urls = list(urls)
        self.current_index = 0
        self.endpoint_delay_sec = endpoint_delay_sec
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _next_id(self) -> int:
        request_id = self._id
        self._id += 1
        return request_id

    async def _post(self, url: str, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}
        try:
            async with self._session.post(url, json=payload) as resp:
                if resp.status < 200 or resp.status >= 300:
                    kind = ErrorKind.RATE_LIMITED if resp.status == 429 else ErrorKind.TRANSPORT
                    raise RpcError(kind, f"HTTP {resp.status}: {resp.reason}", source=url)
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RpcError(ErrorKind.TRANSPORT, f"{type(e).__name__}: {e}", source=url) from e

        response = RpcResponse.from_payload(data)
        if response.is_error:
            raise RpcError(response.error_kind, f"RPC error: {response.error_message}", source=url)
        if response.is_empty:
            raise RpcError(ErrorKind.PROTOCOL, "no result in RPC response", source=url)
        return response.result

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")

        pool_size = len(self.urls)
        start = self.current_index
        last_error: Optional[RpcError] = None
        kinds: List[ErrorKind] = []
        for offset in range(pool_size):
            index = (start + offset) % pool_size
            url = self.urls[index]
            try:
                result = await self._post(url, method, params)
            except RpcError as e:
                logger.warning(
                    "rpc endpoint %d/%d failed (%s): %s", index + 1, pool_size, method, e.message
                )
                last_error = e
                kinds.append(e.kind)
                if offset < pool_size - 1:
                    await asyncio.sleep(self.endpoint_delay_sec)
                continue
            self.current_index = index
            return result

        raise EndpointsExhaustedError(method, last_error, kinds)

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return parse_hex_int(result)

    async def get_logs(self, from_block: int, to_block: int, address: str) -> List[Dict[str, Any]]:
        f = {"fromBlock": hex(from_block), "toBlock": hex(to_block), "address": address}
        result = await self.call("eth_getLogs", [f])
        return result or []

    async def trace_filter(self, from_block: int, to_block: int, to_address: str) -> List[Dict[str, Any]]:
        f = {"fromBlock": hex(from_block), "toBlock": hex(to_block), "toAddress": [to_address]}
        result = await self.call("trace_filter", [f])
        return result or []

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, tx_hash: str) -> Dict[str, Any]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_by_number(self, block_number: int, full_transactions: bool = False) -> Dict[str, Any]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), full_transactions])
