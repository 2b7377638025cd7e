"""Access to the CometBFT block store and a staged key-value transaction."""

from __future__ import annotations

import logging
import os
import threading
from typing import Iterator, Protocol

from .wire import Block, BlockStoreState, WireError, decode_part_bytes, decode_part_set_total

log = logging.getLogger(__name__)

BLOCK_STORE_STATE_KEY = b"blockStore"


class StoreError(Exception):
    """Raised when a database cannot be opened or holds unreadable data."""


class KeyValueStore(Protocol):
    """The operations this tool needs from a key-value database."""

    def get(self, key: bytes) -> bytes | None:
        """Return the value of ``key``, or None when it is absent."""

    def put(self, key: bytes, value: bytes) -> None:
        """Store ``value`` under ``key``."""

    def items(self, prefix: bytes = b"") -> Iterator[tuple[bytes, bytes]]:
        """Yield the pairs whose key starts with ``prefix``, in key order."""


class MemoryStore:
    """A key-value store held in memory, iterated in key order."""

    def __init__(self, data: dict[bytes, bytes] | None = None) -> None:
        self._data: dict[bytes, bytes] = dict(data or {})
        self._lock = threading.Lock()

    def get(self, key: bytes) -> bytes | None:
        """Return the value of ``key``, or None when it is absent."""
        with self._lock:
            return self._data.get(bytes(key))

    def put(self, key: bytes, value: bytes) -> None:
        """Store ``value`` under ``key``."""
        with self._lock:
            self._data[bytes(key)] = bytes(value)

    def items(self, prefix: bytes = b"") -> Iterator[tuple[bytes, bytes]]:
        """Yield the pairs whose key starts with ``prefix``, in key order."""
        with self._lock:
            snapshot = sorted(
                (key, value) for key, value in self._data.items() if key.startswith(prefix)
            )
        yield from snapshot


class StagedTransaction:
    """Buffers writes to a store until they are committed or discarded."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._staged: dict[bytes, bytes] = {}
        self._lock = threading.Lock()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("transaction is already closed")

    def get(self, key: bytes) -> bytes | None:
        """Return the staged value of ``key`` or, failing that, the stored one."""
        key = bytes(key)
        with self._lock:
            self._check_open()
            if key in self._staged:
                return self._staged[key]
        return self._store.get(key)

    def put(self, key: bytes, value: bytes) -> None:
        """Stage ``value`` under ``key``."""
        with self._lock:
            self._check_open()
            self._staged[bytes(key)] = bytes(value)

    def commit(self) -> None:
        """Write every staged value to the store and close the transaction."""
        with self._lock:
            self._check_open()
            for key, value in self._staged.items():
                self._store.put(key, value)
            self._staged.clear()
            self._closed = True

    def discard(self) -> None:
        """Drop every staged value and close the transaction."""
        with self._lock:
            self._staged.clear()
            self._closed = True


def dir_exists(path: str | os.PathLike[str]) -> bool:
    """Whether ``path`` names an existing directory."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        return False
    return os.path.isdir(path) and info is not None


def db_path(comet_home: str, db_name: str) -> str:
    """Locate database ``db_name`` inside a CometBFT home directory."""
    if not comet_home:
        raise StoreError("no cometbft home dir provided as arg")
    path = os.path.join(comet_home, "data", db_name)
    try:
        exists = dir_exists(path)
    except OSError as exc:
        raise StoreError(f"failed to open db {db_name} in {comet_home}: {exc}") from exc
    if not exists:
        raise StoreError(
            f"failed to open db {db_name} in {comet_home}: leveldb db does not exist"
        )
    return path


def load_block_meta_total(store: KeyValueStore, height: int) -> int | None:
    """Return the part count of the block at ``height``, or None if absent."""
    data = store.get(f"H:{height}".encode())
    if data is None:
        return None
    try:
        return decode_part_set_total(data)
    except WireError as exc:
        raise StoreError(f"unmarshal to cmtproto.BlockMeta: {exc}") from exc


def load_block_part(store: KeyValueStore, height: int, index: int) -> bytes:
    """Return the payload of part ``index`` of the block at ``height``."""
    log.debug("reading part %d of block %d", index, height)
    data = store.get(f"P:{height}:{index}".encode())
    if data is None:
        raise StoreError(
            f"failed to read block part {index} of height {height} from db: not found"
        )
    try:
        payload = decode_part_bytes(data)
    except WireError as exc:
        raise StoreError(
            f"block unmarshal to cmtproto.Part of part {index} of height {height} failed: {exc}"
        ) from exc
    log.debug("got part %d of block %d", index, height)
    return payload


def load_block(store: KeyValueStore, height: int) -> Block | None:
    """Assemble and decode the block at ``height``, or None if it is absent."""
    total = load_block_meta_total(store, height)
    if total is None:
        return None
    log.info("reading %d parts of block %d", total, height)
    data = b"".join(load_block_part(store, height, index) for index in range(total))
    log.info("unmarshaling block %d", height)
    try:
        block = Block.decode(data)
    except WireError as exc:
        raise StoreError(f"unmarshal of block {height} from parts failed: {exc}") from exc
    log.info("all data of block %d retrieved", height)
    return block


def load_last_base_and_height(store: KeyValueStore) -> tuple[int, int]:
    """Return the base and latest heights recorded in the block store."""
    data = store.get(BLOCK_STORE_STATE_KEY)
    if data is None:
        raise StoreError(
            "failed to read last committed height from blockstore db: not found"
        )
    try:
        state = BlockStoreState.decode(data)
    except WireError as exc:
        raise StoreError(
            f"could not deserialize latest height from blockstore db: {exc}"
        ) from exc
    return state.base, state.height


def load_last_height(store: KeyValueStore) -> int:
    """Return the latest height recorded in the block store."""
    return load_last_base_and_height(store)[1]