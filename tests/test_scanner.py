import pytest

from contract_monitor.errors import ErrorKind, RpcError
from contract_monitor.scanner import RangeScanner

from conftest import CONTRACT, OTHER, FakeExplorer, FakeRPC


def make_scanner(rpc, explorer=None, **kwargs) -> RangeScanner:
    opts = {"batch_size": 5000, "min_batch_size": 1000, "range_delay_sec": 0}
    opts.update(kwargs)
    return RangeScanner(rpc, CONTRACT, explorer=explorer, **opts)


def too_wide(*_):
    raise RpcError(ErrorKind.RANGE_TOO_WIDE, "query returned more than 10000 results", source="fake")


async def test_too_wide_halves_batch_down_to_floor_then_uses_explorer():
    rpc = FakeRPC(head=600)
    explorer = FakeExplorer()
    explorer.add("txlist", "0xe1", "0xa", 550)
    scanner = make_scanner(rpc, explorer)
    sizes = []

    def handler(from_block, to_block):
        sizes.append(scanner.batch_size)
        too_wide()

    rpc.logs_handler = handler
    txs = await scanner.scan(500, 600)

    assert sizes == [5000, 2500, 1250, 1000]
    assert all(call == (500, 600) for call in rpc.log_calls)
    assert scanner.batch_size == 1000
    assert explorer.window_calls("txlist") == [(500, 600)]
    assert [tx.hash for tx in txs] == ["0xe1"]


async def test_shrunk_batch_size_persists_across_ranges():
    rpc = FakeRPC()

    def handler(from_block, to_block):
        if to_block - from_block + 1 > 2000:
            too_wide()
        return []

    rpc.logs_handler = handler
    scanner = make_scanner(rpc)
    await scanner.scan(0, 4999)

    assert rpc.log_calls[:3] == [(0, 4999), (0, 2499), (0, 1249)]
    assert rpc.log_calls[3:] == [(1250, 2499), (2500, 3749), (3750, 4999)]
    assert scanner.batch_size == 1250


async def test_other_failures_fall_back_to_explorer_for_that_range():
    rpc = FakeRPC()
    rpc.add_tx("0x2", "0xb", 1500)

    def handler(from_block, to_block):
        if from_block == 0:
            raise RpcError(ErrorKind.TRANSPORT, "HTTP 502", source="fake")
        return rpc._entries(from_block, to_block)

    rpc.logs_handler = handler
    explorer = FakeExplorer()
    explorer.add("txlist", "0x1", "0xa", 10)

    segments = [s async for s in make_scanner(rpc, explorer, batch_size=1000).iter_segments(0, 1999)]

    assert [(s.from_block, s.to_block, s.source) for s in segments] == [(0, 999, "explorer"), (1000, 1999, "logs")]
    assert [tx.hash for tx in segments[0].transactions] == ["0x1"]
    assert [tx.hash for tx in segments[1].transactions] == ["0x2"]


async def test_failure_without_explorer_propagates():
    rpc = FakeRPC()

    def handler(from_block, to_block):
        raise RpcError(ErrorKind.PROTOCOL, "boom", source="fake")

    rpc.logs_handler = handler
    with pytest.raises(RpcError):
        await make_scanner(rpc).scan(0, 10)


async def test_resolves_details_and_filters_recipient_and_failed():
    rpc = FakeRPC()
    rpc.add_tx("0x1", "0xA", 5)
    rpc.add_tx("0x2", "0xb", 6, failed=True)
    rpc.add_tx("0x3", "0xc", 7, to=OTHER)

    everything = await make_scanner(rpc).scan(0, 10)
    assert sorted((tx.hash, tx.sender, tx.failed) for tx in everything) == [
        ("0x1", "0xa", False),
        ("0x2", "0xb", True),
    ]

    only_ok = await make_scanner(rpc, filter_failed=True).scan(0, 10)
    assert [tx.hash for tx in only_ok] == ["0x1"]


async def test_detail_failures_are_dropped_not_fatal():
    rpc = FakeRPC()
    rpc.add_tx("0x1", "0xa", 5)
    rpc.add_tx("0x2", "0xb", 6)
    rpc.fail_hashes.add("0x2")

    segments = [s async for s in make_scanner(rpc).iter_segments(0, 10)]

    assert [tx.hash for tx in segments[0].transactions] == ["0x1"]
    assert [(h, b) for h, b, _ in segments[0].dropped] == [("0x2", 6)]


async def test_detail_lookups_are_bounded():
    rpc = FakeRPC()
    rpc.detail_delay = 0.01
    for i in range(12):
        rpc.add_tx(f"0x{i:02x}", "0xa", i)

    txs = await make_scanner(rpc, detail_concurrency=3).scan(0, 100)

    assert len(txs) == 12
    assert rpc.max_in_flight == 3


async def test_trace_method():
    rpc = FakeRPC()
    rpc.add_tx("0x1", "0xa", 5)

    txs = await make_scanner(rpc, method="trace").scan(0, 10)

    assert rpc.trace_calls == [(0, 10)]
    assert rpc.log_calls == []
    assert [tx.hash for tx in txs] == ["0x1"]


async def test_dense_scan_when_logs_are_empty():
    rpc = FakeRPC()
    rpc.add_tx("0x1", "0xa", 3)
    rpc.logs_handler = lambda f, t: []

    segments = [s async for s in make_scanner(rpc, dense_fallback=True).iter_segments(0, 5)]

    assert sorted(rpc.block_calls) == [0, 1, 2, 3, 4, 5]
    assert segments[0].source == "blocks"
    assert [tx.hash for tx in segments[0].transactions] == ["0x1"]


async def test_safety_cap_stops_scan():
    rpc = FakeRPC()
    scanner = make_scanner(rpc, batch_size=1000, max_blocks_per_scan=2000)

    segments = [s async for s in scanner.iter_segments(0, 10000)]

    assert [(s.from_block, s.to_block) for s in segments] == [(0, 999), (1000, 1999)]


async def test_dense_scan_block_failure_falls_back_to_explorer():
    rpc = FakeRPC()
    rpc.add_tx("0x1", "0xa", 3)
    rpc.logs_handler = lambda f, t: []
    rpc.fail_blocks.add(3)
    explorer = FakeExplorer()
    explorer.add("txlist", "0x1", "0xa", 3)

    segments = [s async for s in make_scanner(rpc, explorer, dense_fallback=True).iter_segments(0, 5)]

    assert [s.source for s in segments] == ["explorer"]
    assert [tx.hash for tx in segments[0].transactions] == ["0x1"]
    assert explorer.window_calls("txlist") == [(0, 5)]
