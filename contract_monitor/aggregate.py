from typing import Dict, Iterable, List, Mapping

from .models import AddressCounters, Transaction


def dedupe_transactions(transactions: Iterable[Transaction]) -> List[Transaction]:
    out: List[Transaction] = []
    seen = set()
    for tx in transactions:
        if tx.hash in seen:
            continue
        seen.add(tx.hash)
        out.append(tx)
    return out


def aggregate(transactions: Iterable[Transaction]) -> Dict[str, AddressCounters]:
    totals: Dict[str, int] = {}
    failed: Dict[str, int] = {}
    for tx in transactions:
        sender = tx.sender.lower()
        totals[sender] = totals.get(sender, 0) + 1
        if tx.failed:
            failed[sender] = failed.get(sender, 0) + 1
    return {
        addr: AddressCounters(total=total, failed=failed.get(addr, 0))
        for addr, total in totals.items()
    }


def merge_counts(
    base: Mapping[str, AddressCounters], delta: Mapping[str, AddressCounters]
) -> Dict[str, AddressCounters]:
    merged = dict(base)
    for addr, counters in delta.items():
        current = merged.get(addr)
        merged[addr] = current.merged(counters) if current else counters
    return merged
