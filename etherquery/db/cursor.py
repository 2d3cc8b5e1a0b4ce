import re
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from etherquery.db.database import AsyncSessionLocal
from etherquery.db.models import ExportCursor
from etherquery.utils.errors import CursorStoreError
from etherquery.utils.logger import get_logger

logger = get_logger(__name__)

HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


@dataclass(frozen=True)
class Cursor:
    """Height and hash of the last block known to be exported."""

    height: int
    hash: Optional[str]

    @classmethod
    def genesis(cls, start_block: int = 0) -> "Cursor":
        # nothing exported yet; the next block to index is start_block
        return cls(start_block - 1, None)


class CursorStore:
    """Versioned cursor persistence in the state database."""

    def __init__(self, stream: str, session_factory=AsyncSessionLocal, keep: int = 256):
        self.stream = stream
        self.session_factory = session_factory
        self.keep = keep

    async def load_history(self, limit: Optional[int] = None) -> List[Cursor]:
        """Newest first. An empty list means no cursor was ever written."""
        query = (
            select(ExportCursor)
            .where(ExportCursor.stream == self.stream)
            .order_by(ExportCursor.id.desc())
            .limit(limit or self.keep)
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as e:
            raise CursorStoreError(f"cannot read cursor for {self.stream}: {e}") from e
        return [self._validate(row) for row in rows]

    async def load(self) -> Optional[Cursor]:
        history = await self.load_history(limit=1)
        return history[0] if history else None

    async def save(self, cursor: Cursor):
        try:
            async with self.session_factory() as session:
                session.add(ExportCursor(
                    stream=self.stream,
                    block_number=cursor.height,
                    block_hash=cursor.hash,
                ))
                await session.flush()
                stale = (
                    select(ExportCursor.id)
                    .where(ExportCursor.stream == self.stream)
                    .order_by(ExportCursor.id.desc())
                    .offset(self.keep)
                )
                await session.execute(
                    delete(ExportCursor).where(ExportCursor.id.in_(stale.scalar_subquery()))
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise CursorStoreError(f"cannot write cursor for {self.stream}: {e}") from e
        logger.debug("Cursor saved", stream=self.stream, block_number=cursor.height)

    def _validate(self, row: ExportCursor) -> Cursor:
        if row.block_number is None or row.block_number < -1:
            raise CursorStoreError(f"corrupt cursor row {row.id}: block_number={row.block_number}")
        if row.block_hash is not None and not HASH_RE.match(row.block_hash):
            raise CursorStoreError(f"corrupt cursor row {row.id}: block_hash={row.block_hash!r}")
        return Cursor(row.block_number, row.block_hash)
