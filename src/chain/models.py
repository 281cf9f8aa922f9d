"""Pydantic v2 models for EVM JSON-RPC log entries."""

from typing import Any

from pydantic import BaseModel


def _hex_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if value is None or value == "":
        return 0
    return int(str(value), 16)


class RawLog(BaseModel):
    """A single eth_getLogs entry, hex fields normalized."""

    address: str
    topics: list[str] = []
    data: str = "0x"
    block_number: int
    log_index: int = 0
    transaction_hash: str = ""
    removed: bool = False

    model_config = {"extra": "ignore"}

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    @classmethod
    def from_rpc(cls, item: dict[str, Any]) -> "RawLog":
        return cls(
            address=str(item.get("address", "")).lower(),
            topics=[str(t).lower() for t in item.get("topics", [])],
            data=item.get("data") or "0x",
            block_number=_hex_int(item.get("blockNumber")),
            log_index=_hex_int(item.get("logIndex")),
            transaction_hash=str(item.get("transactionHash", "")).lower(),
            removed=bool(item.get("removed", False)),
        )
