import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from contract_monitor.config import build_config
from contract_monitor.errors import ErrorKind, RpcError
from contract_monitor.storage import Storage

CONTRACT = "0x86c66061a0e55d91c8bfa464fe84dc58f8733253"
OTHER = "0x1111111111111111111111111111111111111111"


def make_config(**overrides: Any):
    raw = {
        "CONTRACT_ADDRESS": CONTRACT,
        "RPC_ENDPOINTS": ["http://rpc.invalid"],
        "EXPLORER_BASE_URL": "http://explorer.invalid/api",
        "INITIAL_BATCH_SIZE": 1000,
        "MIN_BATCH_SIZE": 100,
        "EXPLORER_PAGE_BLOCKS": 1000,
        "RANGE_DELAY_MS": 0,
        "ENDPOINT_RETRY_DELAY_MS": 0,
        "SQLITE_PATH": ":memory:",
    }
    raw.update(overrides)
    return build_config(raw, env={})


class FakeRPC:
    """In-memory chain answering the RPCClient wrappers the engine uses."""

    def __init__(self, head: int = 0):
        self.head = head
        self.current_index = 0
        self.txs: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.fail_hashes = set()
        self.fail_blocks = set()
        self.logs_handler: Optional[Callable[[int, int], List[Dict[str, Any]]]] = None
        self.head_error: Optional[Exception] = None
        self.log_calls: List[tuple] = []
        self.trace_calls: List[tuple] = []
        self.block_calls: List[int] = []
        self.detail_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def add_tx(self, tx_hash: str, sender: str, block: int, to: str = CONTRACT, failed: bool = False) -> None:
        self.txs[tx_hash] = {
            "hash": tx_hash,
            "from": sender,
            "to": to,
            "blockNumber": hex(block),
        }
        self.receipts[tx_hash] = {"transactionHash": tx_hash, "status": "0x0" if failed else "0x1"}

    def _entries(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        return [
            {"transactionHash": h, "blockNumber": tx["blockNumber"]}
            for h, tx in self.txs.items()
            if from_block <= int(tx["blockNumber"], 16) <= to_block
        ]

    async def get_latest_block_number(self) -> int:
        if self.head_error:
            raise self.head_error
        return self.head

    async def get_logs(self, from_block: int, to_block: int, address: str) -> List[Dict[str, Any]]:
        self.log_calls.append((from_block, to_block))
        if self.logs_handler:
            return self.logs_handler(from_block, to_block)
        return self._entries(from_block, to_block)

    async def trace_filter(self, from_block: int, to_block: int, to_address: str) -> List[Dict[str, Any]]:
        self.trace_calls.append((from_block, to_block))
        return [
            {"transactionHash": e["transactionHash"], "blockNumber": int(e["blockNumber"], 16), "action": {}}
            for e in self._entries(from_block, to_block)
        ]

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.detail_delay:
                await asyncio.sleep(self.detail_delay)
            if tx_hash in self.fail_hashes or tx_hash not in self.txs:
                raise RpcError(ErrorKind.PROTOCOL, "no result in RPC response", source="fake")
            return self.txs[tx_hash]
        finally:
            self.in_flight -= 1

    async def get_receipt(self, tx_hash: str) -> Dict[str, Any]:
        return self.receipts[tx_hash]

    async def get_block_by_number(self, block_number: int, full_transactions: bool = False) -> Dict[str, Any]:
        self.block_calls.append(block_number)
        if block_number in self.fail_blocks:
            raise RpcError(ErrorKind.TRANSPORT, "HTTP 502", source="fake")
        return {
            "number": hex(block_number),
            "transactions": [tx for tx in self.txs.values() if int(tx["blockNumber"], 16) == block_number],
        }


class FakeExplorer:
    """Explorer answering txlist / txlistinternal / getcontractcreation from in-memory rows."""

    def __init__(self, creation: Optional[List[Dict[str, Any]]] = None):
        self.rows: Dict[str, List[Dict[str, Any]]] = {"txlist": [], "txlistinternal": []}
        self.creation = creation if creation is not None else []
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    def add(self, action: str, tx_hash: str, sender: str, block: int, to: str = CONTRACT, is_error: str = "0") -> None:
        self.rows[action].append(
            {"hash": tx_hash, "from": sender, "to": to, "blockNumber": str(block), "isError": is_error}
        )

    async def request(self, params: Dict[str, Any]) -> Any:
        self.calls.append(dict(params))
        if self.error:
            raise self.error
        action = params["action"]
        if action == "getcontractcreation":
            return self.creation
        start = int(params["startblock"])
        end = int(params["endblock"])
        return [r for r in self.rows[action] if start <= int(r["blockNumber"]) <= end]

    def window_calls(self, action: str) -> List[tuple]:
        return [(int(c["startblock"]), int(c["endblock"])) for c in self.calls if c["action"] == action]


@pytest.fixture
def rpc() -> FakeRPC:
    return FakeRPC()


@pytest.fixture
def explorer() -> FakeExplorer:
    return FakeExplorer()


@pytest.fixture
def storage():
    s = Storage(":memory:")
    yield s
    s.close()
