from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ErrorKind, RATE_LIMIT_PHRASES, classify_message

NO_RESULTS_PHRASES = ("no transactions found", "no records found", "no data found")


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def parse_hex_int(value: Optional[str]) -> int:
    if value is None or value == "0x":
        return 0
    return int(value, 16)


def parse_block_number(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.startswith("0x"):
        return int(text, 16)
    return int(text)


@dataclass(frozen=True)
class Transaction:
    sender: str
    to: str
    hash: str
    block_number: int
    failed: bool = False

    @classmethod
    def from_explorer(cls, item: Dict[str, Any]) -> "Transaction":
        failed = str(item.get("isError", "0")) == "1" or str(item.get("txreceipt_status", "")) == "0"
        return cls(
            sender=str(item.get("from") or "").lower(),
            to=str(item.get("to") or "").lower(),
            hash=str(item["hash"]).lower(),
            block_number=parse_block_number(item.get("blockNumber", 0)),
            failed=failed,
        )

    @classmethod
    def from_rpc(cls, tx: Dict[str, Any], receipt: Optional[Dict[str, Any]]) -> "Transaction":
        failed = False
        if receipt and receipt.get("status") is not None:
            failed = parse_hex_int(receipt["status"]) == 0
        return cls(
            sender=str(tx.get("from") or "").lower(),
            to=str(tx.get("to") or "").lower(),
            hash=str(tx["hash"]).lower(),
            block_number=parse_hex_int(tx.get("blockNumber")),
            failed=failed,
        )


@dataclass(frozen=True)
class AddressCounters:
    total: int = 0
    failed: int = 0

    def merged(self, other: "AddressCounters") -> "AddressCounters":
        return AddressCounters(total=self.total + other.total, failed=self.failed + other.failed)

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "failed": self.failed}


@dataclass
class Cursor:
    last_fetched_block: int = 0
    contract_creation_block: int = 0
    schema_version: int = 0
    filter_failed_txs: bool = False

    @property
    def has_backfilled(self) -> bool:
        return self.last_fetched_block > 0


@dataclass(frozen=True)
class RpcResponse:
    """One JSON-RPC reply, classified at the boundary."""

    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, data: Any) -> "RpcResponse":
        if not isinstance(data, dict):
            return cls(error={"message": f"malformed JSON-RPC reply: {data!r}"})
        err = data.get("error")
        if err is not None:
            if not isinstance(err, dict):
                err = {"message": str(err)}
            return cls(error=err)
        return cls(result=data.get("result"))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_empty(self) -> bool:
        # 0 and "0x0" are real answers; an empty list is a real "nothing here"
        if self.is_error:
            return False
        return self.result is None or self.result == "" or self.result is False

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        return str(self.error.get("message") or self.error.get("code") or self.error)

    @property
    def error_kind(self) -> ErrorKind:
        return classify_message(self.error_message)


@dataclass(frozen=True)
class ExplorerResponse:
    """Explorer envelope ``{status, message, result}`` as ok / empty / rate_limited / error."""

    kind: str
    message: str = ""
    raw_result: Any = None

    @classmethod
    def from_payload(cls, data: Any) -> "ExplorerResponse":
        if not isinstance(data, dict):
            return cls(kind="error", message=f"malformed explorer reply: {data!r}")
        status = str(data.get("status", ""))
        message = str(data.get("message") or "")
        result = data.get("result")
        if status == "1":
            return cls(kind="ok", message=message, raw_result=result)

        detail = result if isinstance(result, str) else ""
        text = f"{message} {detail}".strip().lower()
        if any(p in text for p in RATE_LIMIT_PHRASES):
            return cls(kind="rate_limited", message=detail or message, raw_result=result)
        if any(p in text for p in NO_RESULTS_PHRASES) or (result == [] and not detail):
            return cls(kind="empty", message=message, raw_result=result)
        return cls(kind="error", message=detail or message or "Unknown explorer error", raw_result=result)
