import asyncio
import hashlib
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from etherquery.blockchain.feed import RawBlock
from etherquery.db.cursor import CursorStore
from etherquery.db.init_db import init_models
from etherquery.export.warehouse import WarehouseExporter
from etherquery.indexer.service import IndexerService
from etherquery.utils.config import IndexerConfig
from etherquery.utils.errors import NotAvailable, TransientError

GENESIS_PARENT = "0x" + "00" * 32


def fake_hash(salt, height):
    return "0x" + hashlib.sha256(f"{salt}:{height}".encode()).hexdigest()


def address(n):
    return "0x" + f"{n:040x}"


def make_block(height, parent_hash, salt="main", tx_count=2, logs_per_tx=1):
    block_hash = fake_hash(salt, height)
    transactions = []
    receipts = []
    for i in range(tx_count):
        tx_hash = fake_hash(f"{salt}-tx{i}", height)
        transactions.append({
            "hash": tx_hash,
            "transactionIndex": i,
            "blockNumber": height,
            "blockHash": block_hash,
            "from": address(1),
            "to": address(2),
            "value": 10**18 + i,
            "gasPrice": 10**9,
        })
        receipts.append({
            "transactionHash": tx_hash,
            "transactionIndex": i,
            "status": 1,
            "gasUsed": 21000,
            "logs": [
                {
                    "logIndex": i * logs_per_tx + j,
                    "transactionHash": tx_hash,
                    "address": address(3),
                    "topics": [fake_hash("topic", j)],
                    "data": "0x",
                }
                for j in range(logs_per_tx)
            ],
        })
    block = {
        "number": height,
        "hash": block_hash,
        "parentHash": parent_hash,
        "timestamp": 1_600_000_000 + 12 * height,
        "miner": address(9),
        "gasUsed": 21000 * tx_count,
        "gasLimit": 30_000_000,
        "transactions": transactions,
    }
    return RawBlock(block=block, receipts=receipts)


class FakeChain:
    """In-memory chain feed; list index is the block height."""

    def __init__(self):
        self.blocks = []
        self.subscriptions = []
        self.canonical_overrides = {}

    def extend(self, count, salt="main", **kwargs):
        for _ in range(count):
            height = len(self.blocks)
            parent = self.blocks[-1].hash if self.blocks else GENESIS_PARENT
            self.blocks.append(make_block(height, parent, salt, **kwargs))

    def reorg(self, height, count, salt):
        del self.blocks[height:]
        self.extend(count, salt=salt)

    async def subscribe(self, start_height):
        self.subscriptions.append(start_height)
        return self._follow(start_height)

    async def _follow(self, height):
        while True:
            if height < len(self.blocks):
                yield self.blocks[height]
                height += 1
            else:
                await asyncio.sleep(0.005)

    async def get_block(self, height):
        if height >= len(self.blocks):
            raise NotAvailable(f"block {height} not available")
        return self.blocks[height]

    async def canonical_hash(self, height):
        if height in self.canonical_overrides:
            return self.canonical_overrides[height]
        return self.blocks[height].hash if height < len(self.blocks) else None


class RecordingSink:
    """Sink that records written rows and fails the first `failures` writes."""

    def __init__(self, failures=0, error=TransientError):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.batches = []

    async def write(self, rows):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise self.error("injected failure")
        self.batches.append(rows)

    def rows(self, kind):
        return [row for batch in self.batches for row in batch[kind]]


async def no_sleep(delay):
    return None


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def open_cursor_store(path, stream="etherquery.ethereum", keep=256):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    await init_models(engine)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    return CursorStore(stream, session_factory=session_factory, keep=keep), engine


def make_config(**overrides):
    values = dict(
        batch_size=10_000,
        batch_interval=timedelta(seconds=60),
        max_export_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        shutdown_timeout=2.0,
    )
    values.update(overrides)
    return IndexerConfig(**values)


def make_service(chain, sink, cursor_store, **overrides):
    config = make_config(**overrides)
    exporter = WarehouseExporter(sink, max_attempts=config.max_export_attempts,
                                 base_delay=0.0, sleep=no_sleep)
    return IndexerService(config, chain, exporter, cursor_store)


@pytest.fixture
def state_db(tmp_path):
    return tmp_path / "state.db"
