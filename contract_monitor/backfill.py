import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .aggregate import dedupe_transactions
from .errors import MonitorError
from .explorer import fetch_contract_transactions, get_contract_creation_block
from .models import Transaction

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    start_block: int
    head_block: int
    transactions: List[Transaction] = field(default_factory=list)


class HistoricalBackfill:
    def __init__(
        self,
        rpc,
        explorer,
        contract: str,
        page_blocks: int = 100000,
        fallback_creation_block: int = 0,
        filter_failed: bool = False,
        max_results: int = 10000,
        creation_block: Optional[int] = None,
    ):
        self.rpc = rpc
        self.explorer = explorer
        self.contract = contract.lower()
        self.page_blocks = max(1, page_blocks)
        self.fallback_creation_block = fallback_creation_block
        self.filter_failed = filter_failed
        self.max_results = max_results
        self.creation_block = creation_block or None

    async def resolve_creation_block(self) -> int:
        if self.creation_block is not None:
            return self.creation_block
        try:
            block = await get_contract_creation_block(self.explorer, self.contract, rpc=self.rpc)
        except MonitorError as e:
            logger.warning("contract creation lookup failed: %s", e)
            block = None
        if block is None:
            logger.info("using fallback creation block %d", self.fallback_creation_block)
            # not cached: the next backfill asks the explorer again
            return self.fallback_creation_block
        self.creation_block = block
        return block

    async def backfill(self) -> BackfillResult:
        start_block = await self.resolve_creation_block()
        head_block = await self.rpc.get_latest_block_number()
        logger.info("backfill from block %d to head %d", start_block, head_block)

        txs: List[Transaction] = []
        current = start_block
        while current <= head_block:
            end_block = min(current + self.page_blocks - 1, head_block)
            page = await fetch_contract_transactions(
                self.explorer,
                self.contract,
                current,
                end_block,
                filter_failed=self.filter_failed,
                max_results=self.max_results,
            )
            logger.debug("backfill page %d-%d: %d transactions", current, end_block, len(page))
            txs.extend(page)
            current = end_block + 1

        txs = dedupe_transactions(txs)
        logger.info("backfill complete: %d transactions up to block %d", len(txs), head_block)
        return BackfillResult(start_block=start_block, head_block=head_block, transactions=txs)
