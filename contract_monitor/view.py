from typing import Any, Dict, List, Mapping, Tuple

from .models import AddressCounters

SORT_COLUMNS = {"rank", "address", "txCount", "failed"}


def default_direction(column: str) -> str:
    return "desc" if column in {"txCount", "failed"} else "asc"


def build_rows(
    counters: Mapping[str, AddressCounters],
    query: str = "",
    sort_column: str = "txCount",
    sort_direction: str = "",
) -> List[Dict[str, Any]]:
    """Filter by address substring, sort, then number the rows 1..n in display order."""
    if sort_column not in SORT_COLUMNS:
        raise ValueError(f"unknown sort column: {sort_column}")
    direction = sort_direction or default_direction(sort_column)
    if direction not in {"asc", "desc"}:
        raise ValueError(f"unknown sort direction: {direction}")

    query = (query or "").strip().lower()
    rows = [
        {"address": addr, "txCount": c.total, "failed": c.failed, "rank": 0}
        for addr, c in counters.items()
        if query in addr.lower()
    ]

    if sort_column == "rank":
        # rank follows tx count; ascending rank is the busiest address first
        rows.sort(key=lambda r: (-r["txCount"], r["address"]), reverse=direction == "desc")
    else:
        rows.sort(key=lambda r: r["address"])
        rows.sort(key=lambda r: r[sort_column], reverse=direction == "desc")

    for i, row in enumerate(rows):
        row["rank"] = i + 1
    return rows


def paginate(rows: List[Dict[str, Any]], page: int, per_page: int) -> Tuple[List[Dict[str, Any]], int]:
    per_page = max(1, per_page)
    pages = (len(rows) + per_page - 1) // per_page
    page = max(1, page)
    start = (page - 1) * per_page
    return rows[start : start + per_page], pages


def totals(counters: Mapping[str, AddressCounters]) -> Dict[str, int]:
    return {
        "uniqueAddresses": len(counters),
        "totalTransactions": sum(c.total for c in counters.values()),
        "failedTransactions": sum(c.failed for c in counters.values()),
    }
