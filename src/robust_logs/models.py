"""
FilterDefinition and LogEntry: the data passed between callers and the core.

Design principles:
- Wire-compatible with eth_getLogs (camelCase aliases, hex quantities)
- Definitions are immutable; range changes produce copies
- Logs are decoded once, at the fetcher boundary
"""

from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator

BlockRef = Union[int, str]

SYMBOLIC_TAGS = {"latest", "pending", "safe", "finalized"}
EARLIEST_TAG = "earliest"


def parse_quantity(value: Any) -> int:
    """Decode a JSON-RPC quantity (hex string or int) into an int."""
    if isinstance(value, bool):
        raise ValueError(f"Not a quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("0x"):
            return int(text, 16)
        return int(text)
    raise ValueError(f"Not a quantity: {value!r}")


def to_hex(value: int) -> str:
    return hex(value)


def is_symbolic(block: Optional[BlockRef]) -> bool:
    """True if the block reference needs the chain head to resolve."""
    return block is None or (isinstance(block, str) and block.lower() in SYMBOLIC_TAGS)


def resolve_block(block: Optional[BlockRef], head: Optional[int]) -> int:
    """
    Turn a block reference into an absolute block number.

    Missing references mean "latest", as they do for eth_getLogs.
    """
    if isinstance(block, str) and block.lower() == EARLIEST_TAG:
        return 0
    if is_symbolic(block):
        if head is None:
            raise ValueError(f"Block tag {block!r} needs the chain head")
        return head
    return parse_quantity(block)


class FilterDefinition(BaseModel):
    """
    Address/topic/block-range selector for event logs.

    topics is position-ordered; each position is None (any), a single
    topic, or a list of alternatives.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    address: Optional[Union[str, tuple[str, ...]]] = Field(default=None)
    topics: tuple[Optional[Union[str, tuple[str, ...]]], ...] = Field(default=())
    from_block: Optional[BlockRef] = Field(default=None, alias="fromBlock")
    to_block: Optional[BlockRef] = Field(default=None, alias="toBlock")

    @field_validator("address", mode="before")
    @classmethod
    def _normalize_address(cls, value):
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(sorted(str(a).lower() for a in value))
        if isinstance(value, str):
            return value.lower()
        return value

    @field_validator("topics", mode="before")
    @classmethod
    def _normalize_topics(cls, value):
        if value is None:
            return ()
        normalized = []
        for topic in value:
            if isinstance(topic, (list, tuple, set, frozenset)):
                normalized.append(tuple(str(t).lower() for t in topic))
            elif isinstance(topic, str):
                normalized.append(topic.lower())
            else:
                normalized.append(topic)
        return tuple(normalized)

    @classmethod
    def coerce(cls, value: Union["FilterDefinition", dict]) -> "FilterDefinition":
        """Accept either a definition or a raw eth_getLogs filter dict."""
        if isinstance(value, cls):
            return value
        return cls.model_validate(value)

    def with_range(self, from_block: BlockRef, to_block: BlockRef) -> "FilterDefinition":
        return self.model_copy(update={"from_block": from_block, "to_block": to_block})

    def to_rpc_params(self) -> dict:
        """Render as an eth_getLogs filter object."""
        params: dict[str, Any] = {}
        if self.address is not None:
            params["address"] = list(self.address) if isinstance(self.address, tuple) else self.address
        if self.topics:
            params["topics"] = [list(t) if isinstance(t, tuple) else t for t in self.topics]
        for key, block in (("fromBlock", self.from_block), ("toBlock", self.to_block)):
            if block is None:
                continue
            params[key] = to_hex(block) if isinstance(block, int) else block
        return params

    def matches_address(self, other: "FilterDefinition") -> bool:
        return self.address == other.address


class LogEntry(BaseModel):
    """One event log, decoded from the eth_getLogs wire format."""

    model_config = ConfigDict(populate_by_name=True)

    address: str
    topics: list[str] = Field(default_factory=list)
    data: str = "0x"
    block_number: int = Field(alias="blockNumber")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    transaction_index: int = Field(default=0, alias="transactionIndex")
    block_hash: Optional[str] = Field(default=None, alias="blockHash")
    log_index: int = Field(default=0, alias="logIndex")
    removed: bool = False

    @field_validator("block_number", "transaction_index", "log_index", mode="before")
    @classmethod
    def _decode_quantity(cls, value):
        if value is None:
            return 0
        return parse_quantity(value)

    @field_validator("removed", mode="before")
    @classmethod
    def _default_removed(cls, value):
        return bool(value) if value is not None else False

    @classmethod
    def from_rpc(cls, raw: dict) -> "LogEntry":
        return cls.model_validate(raw)

    def to_json(self) -> bytes:
        """Serialize using wire field names. Uses compact JSON."""
        return orjson.dumps(self.model_dump(by_alias=True))
