import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .errors import ErrorKind, MonitorError
from .explorer import fetch_contract_transactions
from .models import Transaction, parse_hex_int

logger = logging.getLogger(__name__)


@dataclass
class ScanSegment:
    from_block: int
    to_block: int
    transactions: List[Transaction] = field(default_factory=list)
    dropped: List[Tuple[str, int, str]] = field(default_factory=list)
    source: str = "logs"


class RangeScanner:
    """Walks a block range over RPC, shrinking its batch on "range too wide".

    ``batch_size`` lives on the instance and is only ever halved, so it
    carries over between ranges and between scans.
    """

    def __init__(
        self,
        rpc,
        contract: str,
        explorer=None,
        method: str = "logs",
        batch_size: int = 5000,
        min_batch_size: int = 1000,
        max_blocks_per_scan: int = 50000,
        detail_concurrency: int = 5,
        dense_fallback: bool = False,
        range_delay_sec: float = 0.1,
        filter_failed: bool = False,
        explorer_max_results: int = 10000,
    ):
        self.rpc = rpc
        self.contract = contract.lower()
        self.explorer = explorer
        self.method = method
        self.batch_size = max(batch_size, min_batch_size)
        self.min_batch_size = min_batch_size
        self.max_blocks_per_scan = max_blocks_per_scan
        self.detail_concurrency = max(1, detail_concurrency)
        self.dense_fallback = dense_fallback
        self.range_delay_sec = range_delay_sec
        self.filter_failed = filter_failed
        self.explorer_max_results = explorer_max_results

    async def scan(self, from_block: int, to_block: int) -> List[Transaction]:
        txs: List[Transaction] = []
        async for segment in self.iter_segments(from_block, to_block):
            txs.extend(segment.transactions)
        return txs

    async def iter_segments(self, from_block: int, to_block: int) -> AsyncIterator[ScanSegment]:
        limit_block = from_block + self.max_blocks_per_scan - 1
        current = from_block
        while current <= to_block:
            if current > limit_block:
                logger.info("scan safety cap reached at block %d (%d blocks)", current, self.max_blocks_per_scan)
                break
            end_block = min(current + self.batch_size - 1, to_block, limit_block)
            logger.debug("scanning blocks %d-%d (batch %d)", current, end_block, self.batch_size)
            try:
                segment = await self._rpc_segment(current, end_block)
            except MonitorError as e:
                if e.kind == ErrorKind.RANGE_TOO_WIDE and self.batch_size > self.min_batch_size:
                    self.batch_size = max(self.min_batch_size, self.batch_size // 2)
                    logger.info("range %d-%d too wide, batch size now %d", current, end_block, self.batch_size)
                    continue
                logger.warning("rpc scan of %d-%d failed (%s), falling back to explorer", current, end_block, e)
                segment = await self._explorer_segment(current, end_block, e)
            yield segment

            current = end_block + 1
            if current <= to_block:
                await asyncio.sleep(self.range_delay_sec)

    async def _rpc_segment(self, from_block: int, to_block: int) -> ScanSegment:
        hashes = await self._discover_hashes(from_block, to_block)
        source = self.method
        if not hashes and self.dense_fallback:
            hashes = await self._scan_blocks(from_block, to_block)
            source = "blocks"
        segment = ScanSegment(from_block, to_block, source=source)
        if hashes:
            segment.transactions, segment.dropped = await self.resolve_details(hashes)
        logger.debug(
            "blocks %d-%d: %d hashes, %d transactions", from_block, to_block, len(hashes), len(segment.transactions)
        )
        return segment

    async def _discover_hashes(self, from_block: int, to_block: int) -> Dict[str, int]:
        if self.method == "trace":
            entries = await self.rpc.trace_filter(from_block, to_block, self.contract)
        else:
            entries = await self.rpc.get_logs(from_block, to_block, self.contract)
        hashes: Dict[str, int] = {}
        for entry in entries:
            tx_hash = entry.get("transactionHash")
            if not tx_hash:
                continue
            block = entry.get("blockNumber", to_block)
            hashes.setdefault(tx_hash.lower(), block if isinstance(block, int) else parse_hex_int(block))
        return hashes

    async def _scan_blocks(self, from_block: int, to_block: int) -> Dict[str, int]:
        sem = asyncio.Semaphore(self.detail_concurrency)

        # a missing block fails the whole range so no transaction is skipped
        async def fetch(number: int) -> Optional[Dict[str, Any]]:
            async with sem:
                return await self.rpc.get_block_by_number(number, True)

        blocks = await asyncio.gather(*(fetch(n) for n in range(from_block, to_block + 1)))
        hashes: Dict[str, int] = {}
        for block in blocks:
            if not block:
                continue
            for tx in block.get("transactions") or []:
                if isinstance(tx, dict) and str(tx.get("to") or "").lower() == self.contract:
                    hashes.setdefault(str(tx["hash"]).lower(), parse_hex_int(block.get("number")))
        return hashes

    async def resolve_details(
        self, hashes: Dict[str, int]
    ) -> Tuple[List[Transaction], List[Tuple[str, int, str]]]:
        """Look up sender/recipient/status for each hash, at most ``detail_concurrency`` at a time."""
        sem = asyncio.Semaphore(self.detail_concurrency)
        dropped: List[Tuple[str, int, str]] = []

        async def resolve(tx_hash: str, block: int) -> Optional[Transaction]:
            async with sem:
                try:
                    tx = await self.rpc.get_transaction(tx_hash)
                    receipt = await self.rpc.get_receipt(tx_hash)
                except MonitorError as e:
                    logger.warning("dropping transaction %s: %s", tx_hash, e)
                    dropped.append((tx_hash, block, str(e)))
                    return None
            return Transaction.from_rpc(tx, receipt)

        results = await asyncio.gather(*(resolve(h, b) for h, b in hashes.items()))
        txs = [
            tx
            for tx in results
            if tx is not None and tx.to == self.contract and not (self.filter_failed and tx.failed)
        ]
        return txs, dropped

    async def _explorer_segment(self, from_block: int, to_block: int, cause: MonitorError) -> ScanSegment:
        if self.explorer is None:
            raise cause
        txs = await fetch_contract_transactions(
            self.explorer,
            self.contract,
            from_block,
            to_block,
            filter_failed=self.filter_failed,
            max_results=self.explorer_max_results,
        )
        return ScanSegment(from_block, to_block, transactions=txs, source="explorer")
