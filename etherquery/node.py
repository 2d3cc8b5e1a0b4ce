"""
Standalone host for the indexer service.

Builds the service from settings, runs it until SIGINT/SIGTERM and exits
non-zero when the service stops on a fatal error.
"""
import asyncio
import signal
import sys

from sqlalchemy.ext.asyncio import create_async_engine

from etherquery.blockchain.feed import Web3ChainFeed
from etherquery.db.cursor import CursorStore
from etherquery.db.init_db import init_models
from etherquery.export.warehouse import WarehouseExporter, WarehouseSink
from etherquery.indexer.service import IndexerService
from etherquery.utils.config import Settings, settings as default_settings
from etherquery.utils.logger import get_logger, setup_logging
from etherquery.utils.redis_client import RedisNotifier

logger = get_logger(__name__)


def build_service(settings: Settings) -> IndexerService:
    config = settings.indexer_config()
    sink = WarehouseSink(
        create_async_engine(settings.warehouse_url, future=True),
        dataset=config.dataset,
        revision=config.blocks_revision,
    )
    exporter = WarehouseExporter(
        sink,
        max_attempts=config.max_export_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    )
    return IndexerService(
        config,
        feed=Web3ChainFeed(settings.RPC_URL, poll_interval=settings.POLL_INTERVAL),
        exporter=exporter,
        cursor_store=CursorStore(config.stream, keep=max(256, config.max_reorg_depth + 1)),
        notifier=RedisNotifier() if settings.REDIS_URL else None,
    )


async def prepare(service: IndexerService):
    await init_models()
    await service.exporter.sink.create_tables()


async def main(settings: Settings = default_settings) -> int:
    service = build_service(settings)
    await prepare(service)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await service.start()
    stopper = asyncio.ensure_future(stop_requested.wait())
    finished = asyncio.ensure_future(service.wait())
    await asyncio.wait({stopper, finished}, return_when=asyncio.FIRST_COMPLETED)
    stopper.cancel()

    if stop_requested.is_set():
        logger.info("Shutdown requested")
        await service.stop()
    await asyncio.gather(finished, return_exceptions=True)

    if service.error is not None:
        logger.error("etherquery service failed", error=str(service.error))
        return 1
    return 0


def run():
    setup_logging(default_settings.LOG_LEVEL)
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
