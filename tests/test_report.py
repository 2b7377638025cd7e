import io
import json

import pytest

from maspmigrate.blockstore import MemoryStore, StoreError
from maspmigrate.report import (
    collect_end_block_events,
    extract_height,
    parse_height,
    print_end_blocks_events,
    print_end_blocks_txs,
    print_last_block_state,
)
from maspmigrate.wire import ABCIResponses, Event, EventAttribute


def _varint(value):
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _len_field(number, payload):
    return _varint(number << 3 | 2) + _varint(len(payload)) + payload


def _varint_field(number, value):
    return _varint(number << 3) + _varint(value)


def _put_block(store, height, txs):
    header = _len_field(2, b"chain") + _varint_field(3, height)
    data = b"".join(_len_field(1, tx) for tx in txs)
    raw = _len_field(1, header) + _len_field(2, data)
    store.put(f"H:{height}".encode(), _len_field(1, _len_field(2, _varint_field(1, 1))))
    store.put(f"P:{height}:0".encode(), _varint_field(1, 0) + _len_field(2, raw))


def _responses(*events):
    return ABCIResponses(events=list(events), has_end_block=True).encode()


def _state_store():
    store = MemoryStore()
    store.put(
        b"abciResponsesKey:10",
        _responses(Event("tx/applied", [EventAttribute("height", "10", True)])),
    )
    store.put(b"abciResponsesKey:2", _responses())
    store.put(
        b"abciResponsesKey:9",
        _responses(Event("masp/transfer", [EventAttribute("section", "<x&y>", False)])),
    )
    return store


def test_print_last_block_state():
    store = MemoryStore({b"blockStore": _varint_field(1, 3) + _varint_field(2, 42)})
    out = io.StringIO()
    print_last_block_state(store, out)
    assert out.getvalue() == "Base height is 3 and latest height is 42\n"


def test_extract_height():
    assert extract_height(b"abciResponsesKey:123") == "123"


def test_parse_height():
    assert parse_height("42") == 42
    assert parse_height("-5") == -5
    with pytest.raises(StoreError, match="failed to parse block height"):
        parse_height("abc")
    with pytest.raises(StoreError):
        parse_height("")


def test_collect_sorts_by_height():
    blocks = collect_end_block_events(_state_store())
    assert [h for h, _ in blocks] == [2, 9, 10]
    assert blocks[0][1] == []
    assert blocks[2][1][0].type == "tx/applied"


def test_collect_skip_empty():
    blocks = collect_end_block_events(_state_store(), skip_empty=True)
    assert [h for h, _ in blocks] == [9, 10]


def test_collect_corrupt_value():
    store = MemoryStore({b"abciResponsesKey:1": b"\x12\xff"})
    with pytest.raises(StoreError, match="failed to unmarshal abci responses"):
        collect_end_block_events(store)


def test_print_end_blocks_events_json():
    out = io.StringIO()
    print_end_blocks_events(_state_store(), False, out)
    text = out.getvalue()
    assert text.endswith("\n")
    assert "\\u003cx\\u0026y\\u003e" in text
    document = json.loads(text)
    assert [b["block_height"] for b in document] == [2, 9, 10]
    assert document[0]["events"] is None
    assert document[1]["events"] == [
        {"type": "masp/transfer", "attributes": [{"key": "section", "value": "<x&y>"}]}
    ]
    assert document[2]["events"][0]["attributes"][0]["index"] is True


def test_print_end_blocks_events_empty_store():
    out = io.StringIO()
    print_end_blocks_events(MemoryStore(), True, out)
    assert out.getvalue() == "null\n"


def test_print_end_blocks_txs():
    store = MemoryStore()
    _put_block(store, 1, [b"hello"])
    _put_block(store, 2, [])
    _put_block(store, 3, [b"a", b"b"])
    _put_block(store, 5, [b"unreached"])
    out = io.StringIO()
    print_end_blocks_txs(store, False, lambda raw: raw.upper(), out)
    text = out.getvalue()
    assert "Txs => ['HELLO']" in text
    assert "Txs => ['A', 'B']" in text
    assert "Txs => []" in text
    assert "UNREACHED" not in text
    assert text.count("Header => ") == 3


def test_print_end_blocks_txs_skip_empty():
    store = MemoryStore()
    _put_block(store, 1, [b"hello"])
    _put_block(store, 2, [])
    out = io.StringIO()
    print_end_blocks_txs(store, True, lambda raw: raw, out)
    text = out.getvalue()
    assert text.count("Header => ") == 1
    assert "height=2" not in text


def test_print_end_blocks_txs_decode_error():
    store = MemoryStore()
    _put_block(store, 1, [b"bad"])

    def fail(raw):
        raise ValueError("broken")

    with pytest.raises(StoreError, match="unmarshal tx 0 of block 1 failed"):
        print_end_blocks_txs(store, False, fail, io.StringIO())