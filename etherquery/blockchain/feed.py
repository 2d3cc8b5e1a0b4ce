import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Mapping, Optional, Protocol, Sequence

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import (BlockNotFound, ProviderConnectionError,
                             TransactionNotFound, Web3RPCError)
from web3.providers import AsyncHTTPProvider

from etherquery.utils.errors import NotAvailable
from etherquery.utils.logger import get_logger

logger = get_logger(__name__)

# network failures, HTTP 429/5xx and JSON-RPC errors such as -32005 rate limits
NODE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    aiohttp.ClientError,
    ProviderConnectionError,
    Web3RPCError,
)


@dataclass(frozen=True)
class RawBlock:
    """A block with full transactions and one receipt per transaction."""

    block: Mapping
    receipts: Sequence[Mapping] = field(default_factory=tuple)

    @property
    def number(self) -> int:
        return int(self.block["number"])

    @property
    def hash(self) -> str:
        return to_hex(self.block["hash"])


class ChainFeed(Protocol):
    """What the indexer needs from the host node."""

    async def subscribe(self, start_height: int) -> AsyncIterator[RawBlock]:
        """Yield canonical blocks in height order starting at start_height."""

    async def get_block(self, height: int) -> RawBlock:
        """Return the canonical block at height, or raise NotAvailable."""

    async def canonical_hash(self, height: int) -> Optional[str]:
        """Return the canonical hash at height, None if the node has no block there."""


def to_hex(value) -> Optional[str]:
    """Normalise bytes or hex strings to a lowercase 0x-prefixed string."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


class Web3ChainFeed:
    """Chain feed over a node's HTTP JSON-RPC endpoint."""

    def __init__(self, rpc_url: str, poll_interval: float = 2.0):
        self.rpc_url = rpc_url
        self.poll_interval = poll_interval
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))

    async def head(self) -> int:
        try:
            return await self.w3.eth.block_number
        except NODE_ERRORS as e:
            raise NotAvailable(f"node at {self.rpc_url} unreachable: {e}") from e

    async def subscribe(self, start_height: int) -> AsyncIterator[RawBlock]:
        head = await self.head()
        logger.info("Subscribed to chain feed", rpc_url=self.rpc_url,
                    start_height=start_height, head=head)
        return self._follow(start_height)

    async def _follow(self, next_height: int) -> AsyncIterator[RawBlock]:
        while True:
            head = await self.head()
            while next_height <= head:
                yield await self.get_block(next_height)
                next_height += 1
            await asyncio.sleep(self.poll_interval)

    async def get_block(self, height: int) -> RawBlock:
        try:
            block = await self.w3.eth.get_block(height, full_transactions=True)
            receipts = await asyncio.gather(
                *(self.w3.eth.get_transaction_receipt(tx["hash"]) for tx in block["transactions"])
            )
        except (BlockNotFound, TransactionNotFound) as e:
            raise NotAvailable(f"block {height} not available: {e}") from e
        except NODE_ERRORS as e:
            raise NotAvailable(f"failed to fetch block {height}: {e}") from e
        return RawBlock(block=block, receipts=list(receipts))

    async def canonical_hash(self, height: int) -> Optional[str]:
        try:
            block = await self.w3.eth.get_block(height)
        except BlockNotFound:
            return None
        except NODE_ERRORS as e:
            raise NotAvailable(f"failed to fetch block {height}: {e}") from e
        return to_hex(block["hash"])
