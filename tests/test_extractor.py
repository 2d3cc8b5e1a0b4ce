from datetime import datetime, timezone

import pytest

from etherquery.blockchain.extractor import extract
from etherquery.blockchain.feed import RawBlock
from etherquery.utils.errors import ExtractionError

from conftest import GENESIS_PARENT, address, fake_hash, make_block


def test_extract_block_transactions_and_logs():
    raw = make_block(5, GENESIS_PARENT, tx_count=3, logs_per_tx=2)

    block, transactions, logs = extract(raw)

    assert block.number == 5
    assert block.hash == fake_hash("main", 5)
    assert block.parent_hash == GENESIS_PARENT
    assert block.timestamp == datetime.fromtimestamp(1_600_000_060, tz=timezone.utc)
    assert block.transaction_count == 3
    assert [t.transaction_index for t in transactions] == [0, 1, 2]
    assert all(t.block_hash == block.hash for t in transactions)
    assert [(l.transaction_index, l.log_index) for l in logs] == [
        (0, 0), (0, 1), (1, 2), (1, 3), (2, 4), (2, 5)
    ]
    assert logs[0].transaction_hash == transactions[0].transaction_hash
    assert transactions[1].value == 10**18 + 1
    assert transactions[0].status == 1
    assert transactions[0].gas_used == 21000


def test_block_without_transactions_yields_one_block_record():
    block, transactions, logs = extract(make_block(0, GENESIS_PARENT, tx_count=0))

    assert block.transaction_count == 0
    assert transactions == []
    assert logs == []


def test_contract_creation_has_no_recipient():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    raw.block["transactions"][0]["to"] = None

    _, transactions, _ = extract(raw)

    assert transactions[0].to_address is None


def test_transactions_and_logs_come_out_in_index_order():
    raw = make_block(1, GENESIS_PARENT, tx_count=3, logs_per_tx=2)
    raw.block["transactions"].reverse()
    for receipt in raw.receipts:
        receipt["logs"].reverse()
    raw = RawBlock(raw.block, list(reversed(raw.receipts)))

    _, transactions, logs = extract(raw)

    assert [t.transaction_index for t in transactions] == [0, 1, 2]
    assert [l.log_index for l in logs] == [0, 1, 2, 3, 4, 5]


def test_hex_quantities_and_bytes_are_normalised():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    tx = raw.block["transactions"][0]
    tx["value"] = hex(2**200)
    tx["from"] = "0x" + address(0xABC)[2:].upper()
    raw.block["gasUsed"] = "0x5208"
    raw.receipts[0]["logs"][0]["data"] = b"\x01\x02"

    block, transactions, logs = extract(raw)

    assert block.gas_used == 21000
    assert transactions[0].value == 2**200
    assert transactions[0].from_address == address(0xABC)
    assert logs[0].data == "0x0102"


def test_value_wider_than_256_bits_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    raw.block["transactions"][0]["value"] = 2**256

    with pytest.raises(ExtractionError, match="value"):
        extract(raw)


def test_gas_wider_than_64_bits_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    raw.receipts[0]["gasUsed"] = 2**64

    with pytest.raises(ExtractionError, match="gasUsed"):
        extract(raw)


def test_negative_quantity_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    raw.block["transactions"][0]["gasPrice"] = -1

    with pytest.raises(ExtractionError):
        extract(raw)


def test_missing_receipt_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=2)

    with pytest.raises(ExtractionError, match="receipts"):
        extract(RawBlock(raw.block, raw.receipts[:1]))


def test_transaction_hashes_only_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    raw.block["transactions"] = [raw.block["transactions"][0]["hash"]]

    with pytest.raises(ExtractionError, match="hash only"):
        extract(raw)


def test_records_expose_natural_keys():
    block, transactions, logs = extract(make_block(3, GENESIS_PARENT, tx_count=1))

    assert block.key() == (block.hash, "blocks", 0)
    assert transactions[0].key() == (block.hash, "transactions", 0)
    assert logs[0].key() == (block.hash, "logs", 0)


def test_timestamp_beyond_calendar_range_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=0)
    raw.block["timestamp"] = 2**63

    with pytest.raises(ExtractionError, match="timestamp"):
        extract(raw)


def test_index_wider_than_signed_64_bits_is_an_error():
    raw = make_block(1, GENESIS_PARENT, tx_count=1)
    raw.receipts[0]["logs"][0]["logIndex"] = 2**63

    with pytest.raises(ExtractionError, match="logIndex"):
        extract(raw)
