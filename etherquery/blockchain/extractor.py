from datetime import datetime, timezone
from typing import ClassVar, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from etherquery.blockchain.feed import RawBlock, to_hex
from etherquery.utils.errors import ExtractionError

INT64_BITS = 63
UINT64_BITS = 64
UINT256_BITS = 256


class Record(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ClassVar[str]

    def key(self) -> tuple:
        """Natural key the warehouse dedupes on: (block hash, kind, index)."""
        raise NotImplementedError


class BlockRecord(Record):
    kind: ClassVar[str] = "blocks"

    number: int
    hash: str
    parent_hash: str
    timestamp: datetime
    miner: Optional[str]
    gas_used: int
    gas_limit: int
    transaction_count: int

    def key(self) -> tuple:
        return (self.hash, self.kind, 0)


class TransactionRecord(Record):
    kind: ClassVar[str] = "transactions"

    block_number: int
    block_hash: str
    transaction_index: int
    transaction_hash: str
    from_address: str
    to_address: Optional[str]
    value: int
    gas_price: int
    gas_used: int
    status: Optional[int]

    def key(self) -> tuple:
        return (self.block_hash, self.kind, self.transaction_index)


class LogRecord(Record):
    kind: ClassVar[str] = "logs"

    block_number: int
    block_hash: str
    transaction_hash: str
    transaction_index: int
    log_index: int
    address: str
    topics: List[str]
    data: str

    def key(self) -> tuple:
        return (self.block_hash, self.kind, self.log_index)


def unix_timestamp_to_datetime(timestamp):
    """Convert Unix timestamp to UTC datetime object."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _timestamp(value, height: int) -> datetime:
    seconds = _uint(value, UINT64_BITS, "timestamp", height)
    try:
        return unix_timestamp_to_datetime(seconds)
    except (OverflowError, ValueError, OSError) as e:
        raise ExtractionError(f"block {height}: timestamp={seconds} is not a representable time") from e


def _uint(value, bits: int, field: str, height: int) -> int:
    if isinstance(value, bool):
        raise ExtractionError(f"block {height}: {field} is not an integer: {value!r}")
    if isinstance(value, str):
        try:
            value = int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError as e:
            raise ExtractionError(f"block {height}: {field} is not an integer: {value!r}") from e
    if not isinstance(value, int):
        raise ExtractionError(f"block {height}: {field} is not an integer: {value!r}")
    if value < 0 or value.bit_length() > bits:
        raise ExtractionError(f"block {height}: {field}={value} does not fit uint{bits}")
    return value


def _address(value) -> Optional[str]:
    return value.lower() if value else None


def extract(raw: RawBlock) -> Tuple[BlockRecord, List[TransactionRecord], List[LogRecord]]:
    """
    Turn a block and its receipts into output records.

    Transactions come out in block order, logs in transaction then log index
    order. Numbers that do not fit their column raise ExtractionError instead
    of being truncated.
    """
    block = raw.block
    height = _uint(block["number"], INT64_BITS, "number", -1)
    block_hash = to_hex(block["hash"])
    transactions = list(block.get("transactions") or [])

    if len(transactions) != len(raw.receipts):
        raise ExtractionError(
            f"block {height}: {len(transactions)} transactions but {len(raw.receipts)} receipts"
        )

    block_record = BlockRecord(
        number=height,
        hash=block_hash,
        parent_hash=to_hex(block["parentHash"]),
        timestamp=_timestamp(block["timestamp"], height),
        miner=_address(block.get("miner")),
        gas_used=_uint(block["gasUsed"], UINT64_BITS, "gasUsed", height),
        gas_limit=_uint(block["gasLimit"], UINT64_BITS, "gasLimit", height),
        transaction_count=len(transactions),
    )

    for tx in transactions:
        if not hasattr(tx, "get"):
            raise ExtractionError(f"block {height}: transaction {tx!r} given as hash only")

    receipts = {to_hex(r["transactionHash"]): r for r in raw.receipts}
    tx_records = []
    log_records = []
    for tx in sorted(transactions, key=lambda t: _uint(t["transactionIndex"], INT64_BITS, "transactionIndex", height)):
        tx_hash = to_hex(tx["hash"])
        receipt = receipts.get(tx_hash)
        if receipt is None:
            raise ExtractionError(f"block {height}: no receipt for transaction {tx_hash}")
        index = _uint(tx["transactionIndex"], INT64_BITS, "transactionIndex", height)

        status = receipt.get("status")
        tx_records.append(TransactionRecord(
            block_number=height,
            block_hash=block_hash,
            transaction_index=index,
            transaction_hash=tx_hash,
            from_address=_address(tx["from"]),
            to_address=_address(tx.get("to")),
            value=_uint(tx["value"], UINT256_BITS, "value", height),
            gas_price=_uint(tx.get("gasPrice", receipt.get("effectiveGasPrice", 0)), UINT256_BITS, "gasPrice", height),
            gas_used=_uint(receipt["gasUsed"], UINT64_BITS, "gasUsed", height),
            status=None if status is None else _uint(status, INT64_BITS, "status", height),
        ))

        for log in sorted(receipt.get("logs") or [], key=lambda l: _uint(l["logIndex"], INT64_BITS, "logIndex", height)):
            log_records.append(LogRecord(
                block_number=height,
                block_hash=block_hash,
                transaction_hash=tx_hash,
                transaction_index=index,
                log_index=_uint(log["logIndex"], INT64_BITS, "logIndex", height),
                address=_address(log["address"]),
                topics=[to_hex(topic) for topic in log.get("topics") or []],
                data=to_hex(log.get("data")) or "0x",
            ))

    return block_record, tx_records, log_records
