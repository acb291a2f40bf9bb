import asyncio
import contextlib
import logging
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from aiohttp import web

from .aggregate import aggregate, dedupe_transactions, merge_counts
from .api import create_api_app
from .backfill import HistoricalBackfill
from .config import AppConfig
from .errors import ExplorerError, MonitorError
from .explorer import ExplorerClient
from .models import AddressCounters, Transaction
from .rpc import RPCClient
from .scanner import RangeScanner
from .storage import SCHEMA_VERSION, StateStore, Storage

logger = logging.getLogger(__name__)


class ContractMonitor:
    """Owns the persisted aggregate and runs refresh cycles against it.

    A cycle either backfills the whole history through the explorer (while the
    cursor is still 0, falling back to an RPC scan when the explorer is down)
    or scans from ``last_fetched_block + 1`` to the head.
    Only one cycle runs at a time; overlapping triggers are skipped.
    """

    def __init__(
        self,
        cfg: AppConfig,
        rpc: Optional[RPCClient] = None,
        explorer: Optional[ExplorerClient] = None,
        storage: Optional[Storage] = None,
        schema_version: int = SCHEMA_VERSION,
    ):
        self.cfg = cfg
        self.contract = cfg.contract_address
        self._owns_rpc = rpc is None
        self._owns_explorer = explorer is None
        self.rpc = rpc or RPCClient(
            cfg.rpc_endpoints,
            timeout_sec=cfg.rpc_timeout_sec,
            endpoint_delay_sec=cfg.endpoint_retry_delay_ms / 1000.0,
        )
        self.explorer = explorer or ExplorerClient(
            cfg.explorer_base_url,
            api_key=cfg.explorer_api_key,
            requests_per_second=cfg.explorer_rps,
            max_retries=cfg.explorer_max_retries,
            backoff_sec=cfg.explorer_backoff_sec,
            max_backoff_sec=cfg.explorer_max_backoff_sec,
        )
        self.storage = storage or Storage(cfg.sqlite_path)
        self.store = StateStore(self.storage, schema_version, cfg.filter_failed_txs)
        self.counters, self.cursor = self.store.load()

        self.scanner = RangeScanner(
            self.rpc,
            self.contract,
            explorer=self.explorer,
            method=cfg.scan_method,
            batch_size=cfg.initial_batch_size,
            min_batch_size=cfg.min_batch_size,
            max_blocks_per_scan=cfg.max_blocks_per_scan,
            detail_concurrency=cfg.detail_concurrency,
            dense_fallback=cfg.dense_scan_fallback,
            range_delay_sec=cfg.range_delay_ms / 1000.0,
            filter_failed=cfg.filter_failed_txs,
            explorer_max_results=cfg.explorer_max_results,
        )
        self.backfiller = HistoricalBackfill(
            self.rpc,
            self.explorer,
            self.contract,
            page_blocks=cfg.explorer_page_blocks,
            fallback_creation_block=cfg.fallback_creation_block,
            filter_failed=cfg.filter_failed_txs,
            max_results=cfg.explorer_max_results,
            creation_block=self.cursor.contract_creation_block or None,
        )

        self.is_loading = False
        self.last_error: Optional[str] = None
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.stats: Dict[str, Any] = {
            "refresh_count": 0,
            "skipped_refreshes": 0,
            "failed_refreshes": 0,
            "counted_txs": 0,
            "dropped_txs": 0,
            "last_refresh_at": 0,
            "last_refresh_sec": 0.0,
            "started_at": int(time.time()),
        }

    async def __aenter__(self) -> "ContractMonitor":
        if self._owns_rpc:
            await self.rpc.__aenter__()
        if self._owns_explorer:
            await self.explorer.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        if self._owns_rpc:
            await self.rpc.__aexit__(exc_type, exc, tb)
        if self._owns_explorer:
            await self.explorer.__aexit__(exc_type, exc, tb)
        self.storage.close()

    def snapshot(self) -> Dict[str, AddressCounters]:
        return dict(self.counters)

    def _commit(self, transactions: Iterable[Transaction], last_block: int) -> int:
        txs = dedupe_transactions(transactions)
        known = self.storage.get_known_txs(tx.hash for tx in txs)
        fresh = [tx for tx in txs if tx.hash not in known]
        counters = merge_counts(self.counters, aggregate(fresh))
        cursor = replace(
            self.cursor,
            last_fetched_block=max(self.cursor.last_fetched_block, last_block),
            contract_creation_block=self.backfiller.creation_block or self.cursor.contract_creation_block,
        )
        self.store.save(counters, cursor, [tx.hash for tx in fresh])
        self.counters, self.cursor = counters, cursor
        self.stats["counted_txs"] += len(fresh)
        if known:
            logger.debug("skipped %d already counted transactions", len(known))
        return len(fresh)

    async def run_backfill(self) -> int:
        try:
            result = await self.backfiller.backfill()
        except ExplorerError as e:
            logger.warning("explorer backfill failed (%s), scanning history over RPC", e)
            return await self.scan_history()
        return self._commit(result.transactions, result.head_block)

    async def scan_history(self) -> int:
        """Backfill through the range scanner, committing each completed segment."""
        start = self.backfiller.creation_block or self.cfg.fallback_creation_block
        head = await self.rpc.get_latest_block_number()
        return await self._commit_segments(start, head)

    async def retry_dead_letters(self) -> int:
        limit_n = self.cfg.dead_letter_retry_limit
        if limit_n <= 0:
            return 0
        pending = self.storage.list_dead_letters(limit_n)
        if not pending:
            return 0
        hashes = {str(x["tx_hash"]): int(x["block_number"]) for x in pending}
        txs, dropped = await self.scanner.resolve_details(hashes)
        self.storage.save_dead_letters(dropped)
        still_dropped = {h for h, _, _ in dropped}
        added = self._commit(txs, self.cursor.last_fetched_block)
        self.storage.delete_dead_letters(h for h in hashes if h not in still_dropped)
        logger.info("re-resolved %d of %d dropped transactions", len(hashes) - len(still_dropped), len(hashes))
        return added

    async def run_incremental(self) -> int:
        head = await self.rpc.get_latest_block_number()
        added = await self.retry_dead_letters()
        start = self.cursor.last_fetched_block + 1
        if head < start:
            logger.debug("no new blocks (head %d, cursor %d)", head, self.cursor.last_fetched_block)
            return added

        return added + await self._commit_segments(start, head)

    async def _commit_segments(self, start: int, head: int) -> int:
        added = 0
        async for segment in self.scanner.iter_segments(start, head):
            if segment.dropped:
                self.storage.save_dead_letters(segment.dropped)
                self.stats["dropped_txs"] += len(segment.dropped)
            added += self._commit(segment.transactions, segment.to_block)
        return added

    async def refresh_once(self) -> bool:
        if self.is_loading:
            self.stats["skipped_refreshes"] += 1
            logger.debug("refresh already in progress, skipping")
            return False

        self.is_loading = True
        started = time.monotonic()
        try:
            if self.cursor.has_backfilled:
                added = await self.run_incremental()
            else:
                added = await self.run_backfill()
            self.last_error = None
            logger.info(
                "refresh done: %d new transactions, %d addresses, cursor at block %d",
                added,
                len(self.counters),
                self.cursor.last_fetched_block,
            )
        except (MonitorError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.last_error = str(e)
            self.stats["failed_refreshes"] += 1
            logger.error("refresh failed: %s", e)
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            self.stats["failed_refreshes"] += 1
            logger.exception("refresh failed unexpectedly")
        finally:
            self.is_loading = False
            self.stats["refresh_count"] += 1
            self.stats["last_refresh_at"] = int(time.time())
            self.stats["last_refresh_sec"] = round(time.monotonic() - started, 3)
        return True

    def trigger_refresh(self) -> bool:
        if self.is_loading:
            self.stats["skipped_refreshes"] += 1
            return False
        task = asyncio.create_task(self.refresh_once())
        self.tasks.append(task)
        task.add_done_callback(self._forget_task)
        return True

    def _forget_task(self, task: asyncio.Task) -> None:
        with contextlib.suppress(ValueError):
            self.tasks.remove(task)

    def reset(self) -> bool:
        if self.is_loading:
            return False
        self.counters, self.cursor = self.store.reset()
        self.last_error = None
        logger.info("aggregate reset, next refresh backfills from block %d", self.cursor.contract_creation_block)
        return True

    async def refresh_loop(self) -> None:
        interval = max(1, self.cfg.refresh_interval_sec)
        while not self.stop_event.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=interval)
            if self.stop_event.is_set():
                break
            if not self.trigger_refresh():
                logger.debug("timer tick skipped, refresh still running")

    async def run(self) -> None:
        await self.refresh_once()

        runner = None
        if self.cfg.enable_api:
            app = create_api_app(self)
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info("api listening on %s:%d", self.cfg.api_host, self.cfg.api_port)

        try:
            await self.refresh_loop()
        finally:
            if runner is not None:
                await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for t in list(self.tasks):
            t.cancel()
        for t in list(self.tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await t
