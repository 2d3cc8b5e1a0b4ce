from datetime import timedelta

import pytest

from etherquery.blockchain.extractor import extract
from etherquery.export.buffer import BatchBuffer

from conftest import GENESIS_PARENT, make_block


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def records(height, count):
    block, transactions, _ = extract(make_block(height, GENESIS_PARENT, tx_count=count - 1, logs_per_tx=0))
    return [block, *transactions]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def buffer(clock):
    return BatchBuffer(batch_size=500, batch_interval=timedelta(seconds=15), clock=clock)


def test_flushes_when_size_reached(buffer, clock):
    buffer.append(1, "0x01", records(1, 499))
    clock.now = 10.0
    assert not buffer.should_flush()

    buffer.append(2, "0x02", records(2, 1))
    assert buffer.should_flush()


def test_flushes_when_interval_elapsed(buffer, clock):
    buffer.append(1, "0x01", records(1, 10))
    clock.now = 14.9
    assert not buffer.should_flush()

    clock.now = 15.1
    assert buffer.should_flush()


def test_empty_buffer_never_flushes(buffer, clock):
    clock.now = 1000.0
    assert not buffer.should_flush()
    assert buffer.time_until_flush() is None


def test_interval_counts_from_oldest_block(buffer, clock):
    buffer.append(1, "0x01", records(1, 1))
    clock.now = 10.0
    buffer.append(2, "0x02", records(2, 1))

    assert buffer.time_until_flush() == pytest.approx(5.0)


def test_drain_empties_buffer(buffer, clock):
    buffer.append(1, "0x01", records(1, 3))
    buffer.append(2, "0x02", records(2, 2))

    batch = buffer.drain()

    assert [b.number for b in batch.blocks] == [1, 2]
    assert len(batch) == 5
    assert batch.last_block.hash == "0x02"
    assert len(buffer) == 0
    assert buffer.heights == []
    clock.now = 100.0
    assert not buffer.should_flush()


def test_rows_by_table_keeps_block_before_children(buffer):
    buffer.append(1, "0x01", records(1, 3))

    rows = buffer.drain().rows_by_table()

    assert len(rows["blocks"]) == 1
    assert [r["transaction_index"] for r in rows["transactions"]] == [0, 1]
    assert rows["logs"] == []


def test_discard_from_drops_whole_blocks(buffer, clock):
    for height in (10, 11, 12):
        clock.now = float(height)
        buffer.append(height, f"0x{height}", records(height, 2))

    dropped = buffer.discard_from(11)

    assert [b.number for b in dropped] == [11, 12]
    assert buffer.heights == [10]
    assert len(buffer) == 2


def test_heights_must_increase(buffer):
    buffer.append(5, "0x05", records(5, 1))

    with pytest.raises(ValueError):
        buffer.append(5, "0x05", records(5, 1))
