import pytest

from maspmigrate.blockstore import (
    MemoryStore,
    StagedTransaction,
    StoreError,
    db_path,
    dir_exists,
    load_block,
    load_block_meta_total,
    load_block_part,
    load_last_base_and_height,
    load_last_height,
)


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


def _block_bytes(chain_id, height, txs):
    header = _len_field(2, chain_id.encode()) + _varint_field(3, height)
    data = b"".join(_len_field(1, tx) for tx in txs)
    return _len_field(1, header) + _len_field(2, data)


def _meta_bytes(total):
    psh = _varint_field(1, total)
    block_id = _len_field(2, psh)
    return _len_field(1, block_id)


def _part_bytes(index, payload):
    return _varint_field(1, index) + _len_field(2, payload)


def _store_block(store, height, raw, parts):
    size = -(-len(raw) // parts)
    chunks = [raw[i * size : (i + 1) * size] for i in range(parts)]
    store.put(f"H:{height}".encode(), _meta_bytes(parts))
    for index, chunk in enumerate(chunks):
        store.put(f"P:{height}:{index}".encode(), _part_bytes(index, chunk))


def test_memory_store_get_put_and_missing():
    store = MemoryStore()
    store.put(b"a", b"1")
    assert store.get(b"a") == b"1"
    assert store.get(b"b") is None


def test_memory_store_items_filters_and_sorts():
    store = MemoryStore({b"k:2": b"b", b"k:10": b"c", b"x": b"d", b"k:1": b"a"})
    assert list(store.items(b"k:")) == [(b"k:1", b"a"), (b"k:10", b"c"), (b"k:2", b"b")]


def test_staged_transaction_commit():
    store = MemoryStore({b"a": b"old"})
    txn = StagedTransaction(store)
    txn.put(b"a", b"new")
    assert txn.get(b"a") == b"new"
    assert store.get(b"a") == b"old"
    txn.commit()
    assert store.get(b"a") == b"new"


def test_staged_transaction_discard():
    store = MemoryStore({b"a": b"old"})
    txn = StagedTransaction(store)
    txn.put(b"a", b"new")
    txn.put(b"b", b"more")
    txn.discard()
    assert store.get(b"a") == b"old"
    assert store.get(b"b") is None
    with pytest.raises(StoreError):
        txn.put(b"c", b"x")


def test_staged_transaction_reads_through():
    store = MemoryStore({b"a": b"stored"})
    txn = StagedTransaction(store)
    assert txn.get(b"a") == b"stored"
    assert txn.get(b"missing") is None


def test_dir_exists(tmp_path):
    assert dir_exists(tmp_path) is True
    file_path = tmp_path / "f"
    file_path.write_text("x")
    assert dir_exists(file_path) is False
    assert dir_exists(tmp_path / "missing") is False


def test_db_path(tmp_path):
    (tmp_path / "data" / "state.db").mkdir(parents=True)
    assert db_path(str(tmp_path), "state.db") == str(tmp_path / "data" / "state.db")


def test_db_path_errors(tmp_path):
    with pytest.raises(StoreError, match="no cometbft home dir"):
        db_path("", "state.db")
    with pytest.raises(StoreError, match="leveldb db does not exist"):
        db_path(str(tmp_path), "blockstore.db")


@pytest.mark.parametrize("parts", [1, 2, 3])
def test_load_block_round_trip(parts):
    store = MemoryStore()
    txs = [b"first tx", b"second tx"]
    _store_block(store, 7, _block_bytes("chain", 7, txs), parts)
    assert load_block_meta_total(store, 7) == parts
    block = load_block(store, 7)
    assert block.txs == txs
    assert block.height == 7
    assert block.chain_id == "chain"


def test_load_block_part_payload():
    store = MemoryStore()
    store.put(b"P:3:0", _part_bytes(0, b"payload"))
    assert load_block_part(store, 3, 0) == b"payload"


def test_load_block_missing_meta():
    store = MemoryStore()
    assert load_block_meta_total(store, 1) is None
    assert load_block(store, 1) is None


def test_load_block_missing_part():
    store = MemoryStore()
    store.put(b"H:5", _meta_bytes(2))
    store.put(b"P:5:0", _part_bytes(0, b""))
    with pytest.raises(StoreError, match="part 1"):
        load_block(store, 5)


def test_load_block_corrupt_data():
    store = MemoryStore()
    store.put(b"H:5", _meta_bytes(1))
    store.put(b"P:5:0", _part_bytes(0, b"\x0a\xff"))
    with pytest.raises(StoreError, match="unmarshal of block 5"):
        load_block(store, 5)


def test_load_last_base_and_height():
    store = MemoryStore()
    store.put(b"blockStore", _varint_field(1, 3) + _varint_field(2, 4200))
    assert load_last_base_and_height(store) == (3, 4200)
    assert load_last_height(store) == 4200


def test_load_last_height_missing():
    with pytest.raises(StoreError, match="last committed height"):
        load_last_height(MemoryStore())


def test_load_last_height_corrupt():
    store = MemoryStore({b"blockStore": b"\x08"})
    with pytest.raises(StoreError, match="could not deserialize"):
        load_last_base_and_height(store)