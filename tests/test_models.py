import pytest

from contract_monitor.errors import ErrorKind
from contract_monitor.models import (
    ExplorerResponse,
    RpcResponse,
    Transaction,
    normalize_address,
)

from conftest import CONTRACT


def test_normalize_address():
    assert normalize_address("  0x86C66061A0E55D91C8BFA464FE84DC58F8733253 ") == CONTRACT
    with pytest.raises(ValueError):
        normalize_address("0x1234")


def test_rpc_response_treats_zero_as_a_result():
    assert not RpcResponse.from_payload({"result": "0x0"}).is_empty
    assert not RpcResponse.from_payload({"result": 0}).is_empty
    assert not RpcResponse.from_payload({"result": []}).is_empty
    assert RpcResponse.from_payload({"result": None}).is_empty
    assert RpcResponse.from_payload({"jsonrpc": "2.0"}).is_empty


def test_rpc_response_error_kind():
    resp = RpcResponse.from_payload(
        {"error": {"code": -32005, "message": "query returned more than 10000 results"}}
    )
    assert resp.is_error
    assert resp.error_kind == ErrorKind.RANGE_TOO_WIDE

    resp = RpcResponse.from_payload({"error": {"code": -32000, "message": "execution reverted"}})
    assert resp.error_kind == ErrorKind.PROTOCOL


def test_explorer_response_variants():
    ok = ExplorerResponse.from_payload({"status": "1", "message": "OK", "result": [{"hash": "0x1"}]})
    assert ok.kind == "ok"
    assert ok.raw_result == [{"hash": "0x1"}]

    empty = ExplorerResponse.from_payload({"status": "0", "message": "No transactions found", "result": []})
    assert empty.kind == "empty"

    limited = ExplorerResponse.from_payload(
        {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
    )
    assert limited.kind == "rate_limited"

    error = ExplorerResponse.from_payload({"status": "0", "message": "NOTOK", "result": "Invalid API Key"})
    assert error.kind == "error"
    assert error.message == "Invalid API Key"


def test_transaction_from_explorer():
    tx = Transaction.from_explorer(
        {"hash": "0xAA", "from": "0xBB", "to": CONTRACT.upper().replace("0X", "0x"), "blockNumber": "123", "isError": "1"}
    )
    assert tx == Transaction(sender="0xbb", to=CONTRACT, hash="0xaa", block_number=123, failed=True)


def test_transaction_from_rpc_uses_receipt_status():
    raw = {"hash": "0xaa", "from": "0xBB", "to": CONTRACT, "blockNumber": "0x10"}

    ok = Transaction.from_rpc(raw, {"status": "0x1"})
    reverted = Transaction.from_rpc(raw, {"status": "0x0"})

    assert ok.block_number == 16 and not ok.failed
    assert reverted.failed
