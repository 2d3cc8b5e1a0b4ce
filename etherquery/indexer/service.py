import asyncio
import enum
import time
from collections import deque
from typing import Optional

from etherquery.blockchain.extractor import extract
from etherquery.blockchain.feed import ChainFeed, RawBlock, to_hex
from etherquery.db.cursor import Cursor, CursorStore
from etherquery.export.buffer import BatchBuffer, ExportBatch
from etherquery.export.warehouse import WarehouseExporter
from etherquery.utils.config import IndexerConfig
from etherquery.utils.errors import (DivergenceError, FatalError,
                                     ReorgTooDeepError, TransientError)
from etherquery.utils.logger import get_logger

logger = get_logger(__name__)


class ServiceState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RECONCILING = "reconciling"
    STOPPING = "stopping"


class IndexerService:
    """
    Follows the chain feed and exports every canonical block to the warehouse.

    One loop task consumes the feed in height order, extracts records and
    buffers them. Flushed batches are exported by a separate task, one at a
    time, and the cursor only advances once an export has completed and its
    last block is still canonical. A block that does not extend the last
    accepted one puts the service into reconciliation: it walks back to a
    common ancestor, drops what it buffered past it, rolls the cursor back
    and resumes from there.
    """

    def __init__(self, config: IndexerConfig, feed: ChainFeed, exporter: WarehouseExporter,
                 cursor_store: CursorStore, notifier=None, clock=time.monotonic):
        self.config = config
        self.feed = feed
        self.exporter = exporter
        self.cursor_store = cursor_store
        self.notifier = notifier
        self.buffer = BatchBuffer(config.batch_size, config.batch_interval, clock=clock)

        self.state = ServiceState.STOPPED
        self.cursor: Optional[Cursor] = None
        self.last_accepted: Optional[Cursor] = None
        self.error: Optional[Exception] = None

        # recently accepted blocks plus persisted cursor history, oldest first
        self._ancestry = deque(maxlen=config.max_reorg_depth + 1)
        self._subscription = None
        self._next_block = None
        self._export_task = None
        self._stopping = None
        self._task = None

    # lifecycle

    async def start(self):
        """Load the cursor, subscribe to the feed and spawn the loop."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("indexer service already running")

        self.state = ServiceState.STARTING
        self.error = None
        self._stopping = asyncio.Event()
        try:
            history = await self.cursor_store.load_history(limit=self.config.max_reorg_depth + 1)
            self.cursor = history[0] if history else Cursor.genesis(self.config.start_block)
            self._ancestry.clear()
            self._ancestry.extend(reversed(history or [self.cursor]))
            self.last_accepted = self.cursor
            await self._subscribe(self.cursor.height + 1)
        except BaseException:
            self.state = ServiceState.STOPPED
            raise

        self._task = asyncio.create_task(self._run(), name=f"etherquery-{self.config.stream}")
        self.state = ServiceState.RUNNING
        logger.info("Indexer started", stream=self.config.stream,
                    cursor=self.cursor.height, cursor_hash=self.cursor.hash)

    async def stop(self):
        """Stop consuming, export what is buffered and wait for the loop to end."""
        if self._task is None or self._task.done():
            return
        self._stopping.set()
        # in-flight export and final export are each bounded by shutdown_timeout
        deadline = self.config.shutdown_timeout * 3
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=deadline)
        except asyncio.TimeoutError:
            logger.error("Indexer did not stop in time, cancelling", timeout=deadline)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self.state = ServiceState.STOPPED

    async def wait(self):
        """Wait for the loop to end; re-raises the fatal error that ended it."""
        if self._task is not None:
            await asyncio.gather(asyncio.shield(self._task), return_exceptions=True)
        if self.error is not None:
            raise self.error

    def status(self) -> dict:
        return {
            "stream": self.config.stream,
            "state": self.state.value,
            "cursor": _cursor_dict(self.cursor),
            "last_accepted": _cursor_dict(self.last_accepted),
            "buffered_records": len(self.buffer),
            "buffered_blocks": len(self.buffer.heights),
            "exporting": self._export_task is not None and not self._export_task.done(),
            "error": str(self.error) if self.error else None,
        }

    # main loop

    async def _run(self):
        stop_waiter = asyncio.ensure_future(self._stopping.wait())
        try:
            while not self._stopping.is_set():
                await self._step(stop_waiter)
            await self._shutdown()
        except asyncio.CancelledError:
            logger.warning("Indexer loop cancelled", stream=self.config.stream)
            raise
        except Exception as e:
            self.error = e
            logger.error("Indexer stopped on error", stream=self.config.stream,
                         fatal=isinstance(e, FatalError), error=str(e), exc_info=True)
            await self._abandon_export()
        finally:
            stop_waiter.cancel()
            await self._close_subscription()
            self.state = ServiceState.STOPPED
            logger.info("Indexer stopped", stream=self.config.stream,
                        cursor=self.cursor.height if self.cursor else None)

    async def _step(self, stop_waiter):
        if self._next_block is None:
            self._next_block = asyncio.ensure_future(self._subscription.__anext__())

        waiters = {self._next_block, stop_waiter}
        if self._export_task is not None:
            waiters.add(self._export_task)
        await asyncio.wait(waiters, timeout=self.buffer.time_until_flush(),
                           return_when=asyncio.FIRST_COMPLETED)

        if self._export_task is not None and self._export_task.done():
            await self._await_export()

        if self._next_block is not None and self._next_block.done():
            task, self._next_block = self._next_block, None
            try:
                raw = task.result()
            except StopAsyncIteration:
                logger.warning("Chain feed subscription ended, resubscribing",
                               next_height=self.last_accepted.height + 1)
                await self._resubscribe_after_pause()
            except TransientError as e:
                logger.warning("Chain feed interrupted, resubscribing",
                               next_height=self.last_accepted.height + 1, error=str(e))
                await self._resubscribe_after_pause()
            else:
                try:
                    await self._accept(raw)
                except DivergenceError as e:
                    await self._reconcile(e)

        if self.buffer.should_flush():
            await self._flush()

    async def _accept(self, raw: RawBlock):
        expected = self.last_accepted
        if raw.number != expected.height + 1:
            logger.warning("Unexpected block height from chain feed",
                           block_number=raw.number, expected=expected.height + 1)
            await self._subscribe(expected.height + 1)
            return

        parent_hash = to_hex(raw.block["parentHash"])
        if expected.hash is not None and parent_hash != expected.hash:
            raise DivergenceError(raw.number, expected.hash, parent_hash)

        block, transactions, logs = extract(raw)
        self.buffer.append(block.number, block.hash, [block, *transactions, *logs])
        self.last_accepted = Cursor(block.number, block.hash)
        self._ancestry.append(self.last_accepted)
        logger.debug("Block accepted", block_number=block.number,
                     transactions=len(transactions), logs=len(logs))

    # export

    async def _flush(self):
        batch = self.buffer.drain()
        # single in-flight export keeps cursor advances ordered
        await self._await_export()
        self._export_task = asyncio.create_task(self._export(batch))

    async def _await_export(self):
        task, self._export_task = self._export_task, None
        if task is not None:
            await task

    async def _abandon_export(self):
        task, self._export_task = self._export_task, None
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _export(self, batch: ExportBatch):
        await self.exporter.export(batch)

        last = batch.last_block
        try:
            canonical = await self._retry_feed(self.feed.canonical_hash, last.number)
        except TransientError as e:
            logger.warning("Cannot confirm exported block, cursor not advanced",
                           block_number=last.number, error=str(e))
            return
        if canonical != last.hash:
            # the rows are in the warehouse already; duplicates are keyed by block hash
            logger.warning("Exported block no longer canonical, cursor not advanced",
                           block_number=last.number, block_hash=last.hash, canonical_hash=canonical)
            return
        if last.number <= self.cursor.height:
            return

        cursor = Cursor(last.number, last.hash)
        await self.cursor_store.save(cursor)
        self.cursor = cursor
        logger.info("Cursor advanced", block_number=cursor.height, records=len(batch))
        if self.notifier is not None:
            try:
                await self.notifier.publish(self.config.stream, cursor, len(batch))
            except Exception as e:
                logger.warning("Export notification failed", error=str(e))

    # reorganisations

    async def _reconcile(self, divergence: DivergenceError):
        self.state = ServiceState.RECONCILING
        logger.warning("Chain reorganization detected", block_number=divergence.height,
                       expected_parent=divergence.expected_parent,
                       actual_parent=divergence.actual_parent)

        await self._await_export()
        ancestor = await self._find_common_ancestor(divergence.height)

        dropped = self.buffer.discard_from(ancestor.height + 1)
        while self._ancestry and self._ancestry[-1].height > ancestor.height:
            self._ancestry.pop()
        if self.cursor.height > ancestor.height:
            logger.warning("Rolling back cursor past superseded blocks",
                           cursor=self.cursor.height, ancestor=ancestor.height)
            await self.cursor_store.save(ancestor)
            self.cursor = ancestor
        self.last_accepted = ancestor

        await self._subscribe(ancestor.height + 1)
        self.state = ServiceState.RUNNING
        logger.info("Reconciled with canonical chain", ancestor=ancestor.height,
                    discarded_blocks=len(dropped))

    async def _find_common_ancestor(self, height: int) -> Cursor:
        depth = self.config.max_reorg_depth
        for known in reversed(self._ancestry):
            if known.height >= height:
                continue
            if height - known.height > depth:
                break
            if known.hash is None:
                # genesis cursor: nothing below it was ever ours
                return known
            if await self._retry_feed(self.feed.canonical_hash, known.height) == known.hash:
                return known
        raise ReorgTooDeepError(f"no common ancestor within {depth} blocks below block {height}")

    # feed plumbing

    async def _subscribe(self, height: int):
        await self._close_subscription()
        self._subscription = await self._retry_feed(self.feed.subscribe, height)

    async def _resubscribe_after_pause(self):
        await self._pause(self.config.retry_base_delay)
        if not self._stopping.is_set():
            await self._subscribe(self.last_accepted.height + 1)

    async def _close_subscription(self):
        task, self._next_block = self._next_block, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        subscription, self._subscription = self._subscription, None
        if subscription is not None and hasattr(subscription, "aclose"):
            await subscription.aclose()

    async def _retry_feed(self, call, *args):
        """Retry NotAvailable and other transient feed errors until stopping."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call(*args)
            except TransientError as e:
                if self._stopping.is_set():
                    raise
                delay = min(self.config.retry_max_delay,
                            self.config.retry_base_delay * 2 ** min(attempt - 1, 16))
                logger.warning("Chain feed not available, retrying",
                               call=getattr(call, "__name__", str(call)), attempt=attempt,
                               delay=delay, error=str(e))
                await self._pause(delay)

    async def _pause(self, delay: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _shutdown(self):
        self.state = ServiceState.STOPPING
        await self._close_subscription()
        timeout = self.config.shutdown_timeout
        try:
            await asyncio.wait_for(self._await_export(), timeout=timeout)
            batch = self.buffer.drain()
            if batch.blocks:
                logger.info("Exporting buffered records before shutdown",
                            records=len(batch), last_block=batch.last_block.number)
                await asyncio.wait_for(self._export(batch), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Shutdown export timed out, buffered records not exported",
                         timeout=timeout, cursor=self.cursor.height)
        try:
            await self.cursor_store.save(self.cursor)
        except FatalError as e:
            logger.error("Failed to persist cursor on shutdown", error=str(e))


def _cursor_dict(cursor: Optional[Cursor]):
    if cursor is None:
        return None
    return {"block_number": cursor.height, "block_hash": cursor.hash}
