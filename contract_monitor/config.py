import json
import os
from dataclasses import dataclass
from typing import Any, List, Optional

from .models import normalize_address

DEFAULT_EXPLORER_BASE_URL = "https://api-moonbeam.moonscan.io/api"
SCAN_METHODS = {"logs", "trace"}


@dataclass
class AppConfig:
    contract_address: str
    rpc_endpoints: List[str]
    explorer_base_url: str
    explorer_api_key: str
    explorer_rps: float
    explorer_max_retries: int
    explorer_backoff_sec: float
    explorer_max_backoff_sec: float
    explorer_page_blocks: int
    explorer_max_results: int
    fallback_creation_block: int
    scan_method: str
    initial_batch_size: int
    min_batch_size: int
    max_blocks_per_scan: int
    dense_scan_fallback: bool
    detail_concurrency: int
    endpoint_retry_delay_ms: int
    range_delay_ms: int
    rpc_timeout_sec: int
    refresh_interval_sec: int
    filter_failed_txs: bool
    dead_letter_retry_limit: int
    sqlite_path: str
    log_level: str
    enable_api: bool
    api_host: str
    api_port: int
    cors_allow_origins: List[str]


def _as_list(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [x.strip() for x in raw.split(",") if x and x.strip()]
    if isinstance(raw, list):
        return [str(x).strip() for x in raw if str(x).strip()]
    return []


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return bool(raw)


def build_config(raw: dict, env: Optional[dict] = None) -> AppConfig:
    env = os.environ if env is None else env

    if "CONTRACT_ADDRESS" not in raw:
        raise ValueError("CONTRACT_ADDRESS is required")
    contract_address = normalize_address(raw["CONTRACT_ADDRESS"])

    rpc_endpoints = _as_list(raw.get("RPC_ENDPOINTS", []))
    if not rpc_endpoints:
        raise ValueError("RPC_ENDPOINTS cannot be empty")

    explorer_api_key = str(env.get("EXPLORER_API_KEY") or raw.get("EXPLORER_API_KEY", "")).strip()

    explorer_rps = float(raw.get("EXPLORER_RPS", 5))
    if explorer_rps <= 0:
        raise ValueError("EXPLORER_RPS must be > 0")
    explorer_max_retries = int(raw.get("EXPLORER_MAX_RETRIES", 5))
    if explorer_max_retries <= 0:
        raise ValueError("EXPLORER_MAX_RETRIES must be >= 1")

    scan_method = str(raw.get("SCAN_METHOD", "logs")).lower()
    if scan_method not in SCAN_METHODS:
        raise ValueError("SCAN_METHOD only supports logs or trace")

    initial_batch_size = int(raw.get("INITIAL_BATCH_SIZE", 5000))
    min_batch_size = int(raw.get("MIN_BATCH_SIZE", 1000))
    if min_batch_size <= 0:
        raise ValueError("MIN_BATCH_SIZE must be >= 1")
    if initial_batch_size < min_batch_size:
        raise ValueError("INITIAL_BATCH_SIZE must be >= MIN_BATCH_SIZE")

    detail_concurrency = int(raw.get("DETAIL_CONCURRENCY", 5))
    if detail_concurrency <= 0:
        raise ValueError("DETAIL_CONCURRENCY must be >= 1")

    explorer_page_blocks = int(raw.get("EXPLORER_PAGE_BLOCKS", 100000))
    if explorer_page_blocks <= 0:
        raise ValueError("EXPLORER_PAGE_BLOCKS must be >= 1")

    return AppConfig(
        contract_address=contract_address,
        rpc_endpoints=rpc_endpoints,
        explorer_base_url=str(raw.get("EXPLORER_BASE_URL", DEFAULT_EXPLORER_BASE_URL)).strip(),
        explorer_api_key=explorer_api_key,
        explorer_rps=explorer_rps,
        explorer_max_retries=explorer_max_retries,
        explorer_backoff_sec=float(raw.get("EXPLORER_BACKOFF_SEC", 1)),
        explorer_max_backoff_sec=float(raw.get("EXPLORER_MAX_BACKOFF_SEC", 16)),
        explorer_page_blocks=explorer_page_blocks,
        explorer_max_results=int(raw.get("EXPLORER_MAX_RESULTS", 10000)),
        fallback_creation_block=int(raw.get("FALLBACK_CREATION_BLOCK", 0)),
        scan_method=scan_method,
        initial_batch_size=initial_batch_size,
        min_batch_size=min_batch_size,
        max_blocks_per_scan=int(raw.get("MAX_BLOCKS_PER_SCAN", 50000)),
        dense_scan_fallback=_as_bool(raw.get("DENSE_SCAN_FALLBACK", False)),
        detail_concurrency=detail_concurrency,
        endpoint_retry_delay_ms=int(raw.get("ENDPOINT_RETRY_DELAY_MS", 200)),
        range_delay_ms=int(raw.get("RANGE_DELAY_MS", 100)),
        rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 12)),
        refresh_interval_sec=int(raw.get("REFRESH_INTERVAL_SEC", 60)),
        filter_failed_txs=_as_bool(raw.get("FILTER_FAILED_TXS", False)),
        dead_letter_retry_limit=int(raw.get("DEAD_LETTER_RETRY_LIMIT", 50)),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/contract_monitor.db")),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        enable_api=_as_bool(raw.get("ENABLE_API", True)),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cors_allow_origins=[x.rstrip("/") for x in _as_list(raw.get("CORS_ALLOW_ORIGINS", []))],
    )


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return build_config(raw)
