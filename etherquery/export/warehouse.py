"""
Warehouse side of the pipeline.

WarehouseSink bulk-inserts rows into the blocks, transactions and logs tables
of an analytical database through SQLAlchemy. WarehouseExporter wraps a sink
with bounded exponential backoff.

Delivery is at-least-once: a batch written before a crash or a retry may be
written again. Every table is keyed by its natural key (block hash plus the
record's index) and the sink is expected to reconcile repeated rows by that
key. On PostgreSQL and SQLite this is done here with ON CONFLICT DO NOTHING;
other dialects must merge or dedupe on their side.
"""
import asyncio
from typing import Dict, List, Optional, Protocol

from sqlalchemy import (JSON, BigInteger, Column, DateTime, Integer, MetaData,
                        Numeric, String, Table, Text)
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine

from etherquery.export.buffer import ExportBatch
from etherquery.utils.errors import ExportFailedError, TransientError
from etherquery.utils.logger import get_logger

logger = get_logger(__name__)

HASH = String(66)
ADDRESS = String(42)
UINT64 = Numeric(20, 0)
UINT256 = Numeric(78, 0)


def warehouse_tables(metadata: MetaData, revision: Optional[int] = None) -> Dict[str, Table]:
    suffix = f"_v{revision}" if revision is not None else ""
    return {
        "blocks": Table(
            f"blocks{suffix}", metadata,
            Column("hash", HASH, primary_key=True),
            Column("number", BigInteger, nullable=False, index=True),
            Column("parent_hash", HASH, nullable=False),
            Column("timestamp", DateTime(timezone=True), nullable=False),
            Column("miner", ADDRESS),
            Column("gas_used", UINT64, nullable=False),
            Column("gas_limit", UINT64, nullable=False),
            Column("transaction_count", Integer, nullable=False),
        ),
        "transactions": Table(
            f"transactions{suffix}", metadata,
            Column("block_hash", HASH, primary_key=True),
            Column("transaction_index", BigInteger, primary_key=True),
            Column("block_number", BigInteger, nullable=False, index=True),
            Column("transaction_hash", HASH, nullable=False),
            Column("from_address", ADDRESS, nullable=False),
            Column("to_address", ADDRESS),
            Column("value", UINT256, nullable=False),
            Column("gas_price", UINT256, nullable=False),
            Column("gas_used", UINT64, nullable=False),
            Column("status", BigInteger),
        ),
        "logs": Table(
            f"logs{suffix}", metadata,
            Column("block_hash", HASH, primary_key=True),
            Column("log_index", BigInteger, primary_key=True),
            Column("block_number", BigInteger, nullable=False, index=True),
            Column("transaction_hash", HASH, nullable=False),
            Column("transaction_index", BigInteger, nullable=False),
            Column("address", ADDRESS, nullable=False),
            Column("topics", JSON, nullable=False),
            Column("data", Text, nullable=False),
        ),
    }


class Sink(Protocol):
    async def write(self, rows: Dict[str, List[dict]]) -> None:
        """Insert rows per logical table in one unit of work."""


class WarehouseSink:
    """SQLAlchemy sink; the dataset is the schema the tables live in."""

    def __init__(self, engine: AsyncEngine, dataset: Optional[str] = None,
                 revision: Optional[int] = None):
        self.metadata = MetaData()
        self.tables = warehouse_tables(self.metadata, revision)
        if dataset and engine.dialect.name != "sqlite":
            engine = engine.execution_options(schema_translate_map={None: dataset})
        self.engine = engine

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)

    def _insert(self, table: Table):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            return table.insert()
        keys = [c.name for c in table.primary_key.columns]
        return insert(table).on_conflict_do_nothing(index_elements=keys)

    async def write(self, rows: Dict[str, List[dict]]) -> None:
        try:
            async with self.engine.begin() as conn:
                # blocks first so child rows never land without their block
                for kind in ("blocks", "transactions", "logs"):
                    if rows.get(kind):
                        await conn.execute(self._insert(self.tables[kind]), rows[kind])
        except (OperationalError, InterfaceError) as e:
            raise TransientError(f"warehouse write failed: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise TransientError(f"warehouse connection lost: {e}") from e
            raise
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientError(f"warehouse unreachable: {e}") from e

    async def dispose(self):
        await self.engine.dispose()


class WarehouseExporter:
    """Writes batches to a sink, retrying transient failures with backoff."""

    def __init__(self, sink: Sink, max_attempts: int = 5, base_delay: float = 1.0,
                 max_delay: float = 30.0, sleep=asyncio.sleep):
        self.sink = sink
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

    async def export(self, batch: ExportBatch):
        if not batch.blocks:
            return
        rows = batch.rows_by_table()
        first, last = batch.first_block.number, batch.last_block.number
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.sink.write(rows)
            except TransientError as e:
                if attempt == self.max_attempts:
                    logger.error("Export failed, retries exhausted",
                                 first_block=first, last_block=last, attempts=attempt, error=str(e))
                    raise ExportFailedError(
                        f"blocks {first}-{last} not exported after {attempt} attempts: {e}"
                    ) from e
                delay = self.backoff(attempt)
                logger.warning("Transient export failure, retrying",
                               first_block=first, last_block=last, attempt=attempt,
                               delay=delay, error=str(e))
                await self.sleep(delay)
            except Exception as e:
                logger.error("Export failed", first_block=first, last_block=last, error=str(e))
                raise ExportFailedError(f"blocks {first}-{last} not exported: {e}") from e
            else:
                logger.info("Batch exported", first_block=first, last_block=last,
                            records=len(batch), attempts=attempt)
                return
