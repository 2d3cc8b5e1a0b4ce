import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence

from etherquery.blockchain.extractor import Record


@dataclass(frozen=True)
class BufferedBlock:
    number: int
    hash: str
    records: Sequence[Record]
    appended_at: float


@dataclass
class ExportBatch:
    """Records of whole blocks, in ascending height order."""

    blocks: List[BufferedBlock] = field(default_factory=list)

    def __len__(self):
        return sum(len(b.records) for b in self.blocks)

    @property
    def records(self) -> List[Record]:
        return [r for b in self.blocks for r in b.records]

    @property
    def first_block(self) -> Optional[BufferedBlock]:
        return self.blocks[0] if self.blocks else None

    @property
    def last_block(self) -> Optional[BufferedBlock]:
        return self.blocks[-1] if self.blocks else None

    def rows_by_table(self) -> Dict[str, List[dict]]:
        rows: Dict[str, List[dict]] = {"blocks": [], "transactions": [], "logs": []}
        for record in self.records:
            rows[record.kind].append(record.model_dump())
        return rows


class BatchBuffer:
    """
    Accumulates extracted records until a flush is due.

    A flush is due once the buffer holds batch_size records or its oldest
    block has waited batch_interval, whichever comes first. Blocks are only
    ever drained or discarded whole.
    """

    def __init__(self, batch_size: int, batch_interval: timedelta,
                 clock: Callable[[], float] = time.monotonic):
        self.batch_size = batch_size
        self.batch_interval = batch_interval.total_seconds()
        self.clock = clock
        self._blocks: List[BufferedBlock] = []
        self._count = 0

    def __len__(self):
        return self._count

    @property
    def heights(self) -> List[int]:
        return [b.number for b in self._blocks]

    def append(self, number: int, block_hash: str, records: Sequence[Record]):
        if self._blocks and number <= self._blocks[-1].number:
            raise ValueError(
                f"block {number} appended after block {self._blocks[-1].number}"
            )
        self._blocks.append(BufferedBlock(number, block_hash, tuple(records), self.clock()))
        self._count += len(records)

    def time_until_flush(self) -> Optional[float]:
        """Seconds until the interval forces a flush, None while empty."""
        if not self._blocks:
            return None
        elapsed = self.clock() - self._blocks[0].appended_at
        return max(0.0, self.batch_interval - elapsed)

    def should_flush(self) -> bool:
        if not self._blocks:
            return False
        if self._count >= self.batch_size:
            return True
        return self.time_until_flush() == 0.0

    def drain(self) -> ExportBatch:
        batch = ExportBatch(self._blocks)
        self._blocks = []
        self._count = 0
        return batch

    def discard_from(self, number: int) -> List[BufferedBlock]:
        """Drop buffered blocks at or above number and return them."""
        kept = [b for b in self._blocks if b.number < number]
        dropped = self._blocks[len(kept):]
        self._blocks = kept
        self._count = sum(len(b.records) for b in kept)
        return dropped
