"""Migration of old MASP data references into the new MASP events."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Mapping, Protocol, Sequence

from .blockstore import KeyValueStore, StagedTransaction, load_block, load_last_base_and_height
from .events import EVENT_MASP_FEE_PAYMENT, EVENT_MASP_TRANSFER, emit_masp_events
from .indexer import DEFAULT_MAX_CONCURRENT_REQUESTS, MaspIndexerClient, Transaction
from .sections import IndexedMaspSection, MaspTxSection, SectionError, parse_masp_data_refs
from .wire import ABCIResponses, WireError

log = logging.getLogger(__name__)

ABCI_RESPONSES_KEY = "abciResponsesKey:{}"
TX_APPLIED_EVENT = "tx/applied"
MASP_DATA_REFS_ATTR = "masp_data_refs"


class MigrationError(Exception):
    """Raised when the events of a block cannot be migrated."""


class MaspResolver(Protocol):
    """Decodes Namada transactions and locates the MASP sections inside them."""

    def decode_tx_data(self, tx_bytes: bytes) -> bytes:
        """Return the data of a Namada transaction from its raw block bytes."""

    def compute_masp_tx_id(self, masp_tx_data: bytes) -> bytes:
        """Return the 32-byte id of a serialized MASP transaction."""

    def locate_masp_tx_ids(self, namada_tx_data: bytes) -> Mapping[bytes, MaspTxSection]:
        """Map every MASP tx id found in a Namada transaction to its section."""


def validate_height_range(
    block_store: KeyValueStore, start_height: int, end_height: int
) -> tuple[int, int]:
    """Check the requested range against the block store; an end of 0 means the last height."""
    base_height, last_height = load_last_base_and_height(block_store)
    if end_height == 0:
        end_height = last_height
    if start_height <= 0:
        raise MigrationError("start height cannot be lower than or equal to 0")
    if end_height <= 0:
        raise MigrationError("end height cannot be lower than or equal to 0")
    if start_height > end_height:
        raise MigrationError(
            f"start height ({start_height}) is greater than end height ({end_height})"
        )
    if base_height > start_height or last_height < end_height:
        raise MigrationError(
            "all comet tx data is necessary for the migrations, cannot use pruned node"
        )
    return start_height, end_height


def extract_old_masp_refs(
    responses: ABCIResponses, continue_migrating: bool = False
) -> tuple[list[IndexedMaspSection], bool] | None:
    """Remove the old MASP data refs from ``responses`` and return them.

    Returns the old references and whether new MASP events were seen, or None
    when new MASP events show the database was already migrated and
    ``continue_migrating`` is not set.
    """
    old_refs: list[IndexedMaspSection] = []
    contains_new = False
    for event in responses.events:
        if event.type == TX_APPLIED_EVENT:
            attrs = event.attributes
            pos = next(
                (i for i, attr in enumerate(attrs) if attr.key == MASP_DATA_REFS_ATTR), None
            )
            if pos is None:
                continue
            attr = attrs[pos]
            attrs[pos] = attrs[-1]
            attrs.pop()
            try:
                refs = parse_masp_data_refs(attr.value)
            except SectionError as exc:
                raise MigrationError(f"failed to count num of old masp data refs: {exc}") from exc
            for masp_tx_index, ref in enumerate(refs.masp_refs):
                try:
                    section = ref.to_masp_tx_section()
                except SectionError as exc:
                    raise MigrationError(f"failed to decode old masp data refs: {exc}") from exc
                old_refs.append(
                    IndexedMaspSection(
                        section=section,
                        block_index=refs.tx_index,
                        masp_tx_index=masp_tx_index,
                    )
                )
        elif event.type in (EVENT_MASP_TRANSFER, EVENT_MASP_FEE_PAYMENT):
            if not continue_migrating:
                log.info("this db has already been migrated")
                return None
            contains_new = True
    return old_refs, contains_new


def load_namada_txs_with_masp_data(
    block_store: KeyValueStore,
    height: int,
    masp_txs: Sequence[Transaction],
    resolver: MaspResolver,
) -> dict[int, bytes]:
    """Return the decoded data of each block transaction holding MASP txs, by block index."""
    block = load_block(block_store, height)
    if block is None:
        raise MigrationError(f"block {height} not found in blockstore db")
    txs: dict[int, bytes] = {}
    for masp_tx in masp_txs:
        index = masp_tx.block_index
        if not 0 <= index < len(block.txs):
            raise MigrationError(f"block {height} has no tx at index {index}")
        try:
            txs[index] = resolver.decode_tx_data(block.txs[index])
        except (ValueError, WireError) as exc:
            raise MigrationError(
                f"could not parse namada tx proto bytes at height {height} "
                f"and index {index}: {exc}"
            ) from exc
    log.info("got all namada txs of block %d", height)
    return txs


class Migrator:
    """Migrates the stored events of blocks inside one state transaction."""

    def __init__(
        self,
        state_txn: StagedTransaction,
        block_store: KeyValueStore,
        client: MaspIndexerClient,
        resolver: MaspResolver,
        continue_migrating: bool = False,
        max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
    ) -> None:
        if max_concurrent_requests < 1:
            raise MigrationError("max concurrent requests must be at least 1")
        self.state_txn = state_txn
        self.block_store = block_store
        self.client = client
        self.resolver = resolver
        self.continue_migrating = continue_migrating
        self.max_concurrent_requests = max_concurrent_requests

    def migrate_height(self, height: int) -> bool:
        """Migrate the events of one block.

        Returns False when the block shows the database was already migrated.
        """
        log.info("began processing events in block %d", height)
        key = ABCI_RESPONSES_KEY.format(height).encode()
        value = self.state_txn.get(key)
        if value is None:
            raise MigrationError(f"failed to read block {height} from state db: not found")
        log.info("read events of block %d from state db", height)
        try:
            responses = ABCIResponses.decode(value)
        except WireError as exc:
            raise MigrationError(
                f"failed to unmarshal abci responses from state db: {exc}"
            ) from exc

        extracted = extract_old_masp_refs(responses, self.continue_migrating)
        if extracted is None:
            return False
        old_refs, contains_new = extracted
        if not old_refs:
            log.info("no masp data refs found in block %d to migrate", height)
            return True
        if contains_new:
            raise MigrationError(f"block {height} has old and new masp data refs")

        log.info("querying events of block %d from masp indexer", height)
        masp_txs = self.client.block_height(height)

        log.info("loading block data of height %d from blockstore db", height)
        namada_txs = load_namada_txs_with_masp_data(
            self.block_store, height, masp_txs, self.resolver
        )
        log.info(
            "begun migrating events of block %d which has %d tx batches with masp txs",
            height,
            len(masp_txs),
        )

        new_refs = [
            self._resolve_slot(height, tx, slot.data, slot.masp_tx_index, namada_txs)
            for tx in masp_txs
            for slot in tx.batch
        ]

        if len(old_refs) != len(new_refs):
            raise MigrationError(
                f"old masp data refs count ({len(old_refs)}) does not match migrated refs "
                f"count ({len(new_refs)}), make sure your masp indexer endpoint is running 1.2.0"
            )

        log.info("locating masp fee payments of block %d", height)
        try:
            responses.events = emit_masp_events(height, responses.events, old_refs, new_refs)
        except SectionError as exc:
            raise MigrationError(f"failed to emit masp events: {exc}") from exc
        log.info("replaced all event data of block %d", height)

        log.info("storing changes of block %d in db", height)
        self.state_txn.put(key, responses.encode())
        log.info("migrated all events of block %d", height)
        return True

    def _resolve_slot(
        self,
        height: int,
        tx: Transaction,
        masp_tx_data: bytes,
        masp_tx_index: int,
        namada_txs: Mapping[int, bytes],
    ) -> IndexedMaspSection:
        try:
            masp_tx_id = bytes(self.resolver.compute_masp_tx_id(masp_tx_data))
        except ValueError as exc:
            raise MigrationError(
                f"block height {height} failure: unable to compute masp tx id: {exc}"
            ) from exc
        try:
            sections = self.resolver.locate_masp_tx_ids(namada_txs[tx.block_index])
        except ValueError as exc:
            raise MigrationError(
                f"block height {height} failure: unable to locate masp tx ids: {exc}"
            ) from exc
        log.info(
            "located all masp sections of block %d at index %d", height, tx.block_index
        )
        section = sections.get(masp_tx_id)
        if section is None:
            raise MigrationError(
                f"block height {height} failure: unable to locate masp tx {masp_tx_id.hex()}"
            )
        return IndexedMaspSection(
            section=section, block_index=tx.block_index, masp_tx_index=masp_tx_index
        )

    def _run(self, heights: Iterable[int]) -> None:
        """Migrate ``heights`` concurrently, stopping early on the first failure.

        Raises the last error reported by any block.
        """
        errors: list[Exception] = []
        lock = threading.Lock()
        stop = threading.Event()
        slots = threading.BoundedSemaphore(self.max_concurrent_requests)

        def task(height: int) -> None:
            try:
                if not self.migrate_height(height):
                    stop.set()
            except Exception as exc:  # any failure of a block aborts the migration
                with lock:
                    errors.append(exc)
                stop.set()
            finally:
                slots.release()

        with ThreadPoolExecutor(max_workers=self.max_concurrent_requests) as pool:
            for height in heights:
                if stop.is_set():
                    break
                slots.acquire()
                pool.submit(task, height)

        if errors:
            raise errors[-1]


def migrate_events(
    state_store: KeyValueStore,
    block_store: KeyValueStore,
    client: MaspIndexerClient | None,
    resolver: MaspResolver,
    start_height: int = 1,
    end_height: int = 0,
    continue_migrating: bool = False,
    invalid_commit_not_err: bool = False,
    max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS,
) -> None:
    """Migrate the events of a height range, committing only if every block succeeds."""
    if client is None:
        raise MigrationError("masp indexer url was not set")

    start_height, end_height = validate_height_range(block_store, start_height, end_height)
    log.info("migrating events starting from block %d to %d", start_height, end_height)
    log.info("processing a total of %d blocks", end_height - start_height + 1)

    client.validate_version(invalid_commit_not_err)

    state_txn = StagedTransaction(state_store)
    migrator = Migrator(
        state_txn,
        block_store,
        client,
        resolver,
        continue_migrating,
        max_concurrent_requests,
    )
    try:
        migrator._run(range(start_height, end_height + 1))
    except Exception:
        log.error("encountered error migrating events")
        state_txn.discard()
        raise
    log.info("done migrating events with no errors")
    state_txn.commit()