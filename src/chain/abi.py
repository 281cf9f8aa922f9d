"""Event topics and read-only call definitions for the launchpad and
the concentrated-liquidity position manager.

TokenLaunched layout (launchpad):
  topic1  dev          (address, indexed)
  topic2  token        (address, indexed)
  data    quoteAsset, bondingCurve (address), timestamp (uint256)

Transfer layout (ERC-721 position manager):
  topic1  from, topic2 to, topic3 tokenId (all indexed, no data)
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from eth_abi import decode, encode
from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def keccak_hex(text: str) -> str:
    return "0x" + bytes(Web3.keccak(text=text)).hex()


def event_topic(signature: str) -> str:
    return keccak_hex(signature)


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte topic (lower-case hex)."""
    addr = normalize_address(address)
    return "0x" + ("0" * 24) + addr[2:]


def topic_to_address(topic: str) -> str:
    raw = topic.lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    if len(raw) != 64:
        raise ValueError(f"topic is not 32 bytes: {topic}")
    return "0x" + raw[-40:]


def topic_to_int(topic: str) -> int:
    return int(topic, 16)


def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not Web3.is_address(address.strip()):
        raise ValueError(f"invalid address: {address!r}")
    return address.strip().lower()


def _hex_to_bytes(value: str) -> bytes:
    raw = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(raw)


TOKEN_LAUNCHED_SIGNATURE = "TokenLaunched(address,address,address,address,uint256)"
TOKEN_LAUNCHED_TOPIC = event_topic(TOKEN_LAUNCHED_SIGNATURE)
TOKEN_LAUNCHED_DATA_TYPES = ("address", "address", "uint256")

TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = event_topic(TRANSFER_SIGNATURE)


def decode_event_data(types: Sequence[str], data: str) -> tuple[Any, ...]:
    return tuple(decode(list(types), _hex_to_bytes(data)))


@dataclass(frozen=True)
class ContractFunction:
    """A read-only contract method: canonical signature plus return types."""

    signature: str
    returns: tuple[str, ...]

    @property
    def selector(self) -> str:
        return keccak_hex(self.signature)[:10]

    @property
    def arg_types(self) -> list[str]:
        inner = self.signature[self.signature.index("(") + 1 : -1]
        return [t for t in inner.split(",") if t]

    def encode_call(self, args: Sequence[Any] = ()) -> str:
        types = self.arg_types
        if len(types) != len(args):
            raise ValueError(
                f"{self.signature} expects {len(types)} args, got {len(args)}"
            )
        if not types:
            return self.selector
        prepared = [
            Web3.to_checksum_address(a) if t == "address" else a
            for t, a in zip(types, args)
        ]
        return self.selector + encode(types, prepared).hex()

    def decode_result(self, data: str) -> tuple[Any, ...]:
        raw = _hex_to_bytes(data)
        if not raw:
            raise ValueError(f"empty return data for {self.signature}")
        return tuple(decode(list(self.returns), raw))


# Launch token metadata
TOKEN_NAME = ContractFunction("name()", ("string",))
TOKEN_SYMBOL = ContractFunction("symbol()", ("string",))
TOKEN_MEDIA_URI = ContractFunction("mediaURI()", ("string",))

# Launchpad
BONDING_SUPPLY = ContractFunction("BONDING_SUPPLY()", ("uint256",))
QUOTE_BOUGHT_BY_CURVE = ContractFunction("quoteBoughtByCurve(address)", ("uint256",))
BASE_SOLD_FROM_CURVE = ContractFunction("baseSoldFromCurve(address)", ("uint256",))
# launches(token) -> (dev, quoteAsset, bondingCurve, createdAt, active)
LAUNCH_INFO = ContractFunction(
    "launches(address)", ("address", "address", "address", "uint256", "bool")
)
LAUNCH_INFO_ACTIVE_INDEX = 4

# Position manager
OWNER_OF = ContractFunction("ownerOf(uint256)", ("address",))
# positions(tokenId) -> (nonce, operator, token0, token1, fee, tickLower, tickUpper,
#   liquidity, feeGrowthInside0LastX128, feeGrowthInside1LastX128,
#   tokensOwed0, tokensOwed1)
POSITIONS = ContractFunction(
    "positions(uint256)",
    (
        "uint96",
        "address",
        "address",
        "address",
        "uint24",
        "int24",
        "int24",
        "uint128",
        "uint256",
        "uint256",
        "uint128",
        "uint128",
    ),
)
