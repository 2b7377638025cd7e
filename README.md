# maspmigrate

A library for rewriting the end-block events that a CometBFT node stores for
each block: the old `masp_data_refs` attribute of `tx/applied` events is
removed and replaced by dedicated `masp/transfer` and `masp/fee-payment`
events.

The migration works block by block:

1. The ABCI responses stored under `abciResponsesKey:<height>` in the state
   store are decoded, and every `masp_data_refs` attribute is removed from
   its `tx/applied` event and collected.
2. The MASP transactions of the block are fetched from a MASP indexer
   (`<url>/tx?height=<height>&height_offset=0`), with up to 10 attempts and
   jittered exponential backoff capped at one second. They are ordered by
   their highest MASP transaction index.
3. Each MASP transaction is matched, through a `MaspResolver`, to the
   section that carries it in the block's transactions, read from the
   block store.
4. A new event is appended for every matched section. A section whose old
   reference appears at or after its new position is a fee payment;
   otherwise it is a regular transfer.
5. All writes are staged and committed only when every block succeeded;
   any error discards them all.

A block that already holds `masp/transfer` or `masp/fee-payment` events
stops the migration (the store is taken as migrated) unless
`continue_migrating` is set. A block holding both old references and new
events is an error.

## Installation

The package depends only on `requests` and supports Python 3.10 and later.
The tests use `pytest` and `responses`, available through the `test` extra:

```
pip install .[test]
```

## Modules

- `maspmigrate.sections` — `MaspTxSection` (an `ibc` flag and a 32-byte
  `hash`), `IndexedMaspSection` with `same_section`, and the parsing of old
  `masp_data_refs` JSON: `parse_masp_data_refs`, `MaspDataRefs`,
  `MaspDataRef` (`from_json`, `to_masp_tx_section`). Errors raise
  `SectionError`.
- `maspmigrate.wire` — protobuf decoding of the stored records:
  `ABCIResponses` (`decode`, `encode`; only end-block events are
  interpreted, every other field is kept byte for byte), `Event`,
  `EventAttribute`, `BlockStoreState`, `Block` (chain id, height and raw
  transactions), `decode_part_set_total`, `decode_part_bytes`. Errors raise
  `WireError`.
- `maspmigrate.indexer` — `MaspIndexerClient` with `health`,
  `validate_version` and `block_height`; `Transaction`, `TransactionSlot`,
  `sort_masp_txs`, `backoff_delay`. Errors raise `IndexerError`.
- `maspmigrate.blockstore` — the `KeyValueStore` protocol (`get`, `put`,
  `items`), `MemoryStore`, `StagedTransaction` (`get`, `put`, `commit`,
  `discard`), `dir_exists`, `db_path`, and block loading: `load_block`,
  `load_block_part`, `load_block_meta_total`, `load_last_base_and_height`,
  `load_last_height`. Errors raise `StoreError`.
- `maspmigrate.report` — `print_last_block_state`,
  `collect_end_block_events`, `print_end_blocks_events` (one JSON document
  of `block_height` and `events` per block), `print_end_blocks_txs`,
  `extract_height`, `parse_height`.
- `maspmigrate.events` — `emit_masp_events` and `append_new_masp_event`.
- `maspmigrate.migrate` — `validate_height_range`, `extract_old_masp_refs`,
  `load_namada_txs_with_masp_data`, the `MaspResolver` protocol,
  `Migrator` with `migrate_height`, and `migrate_events`. Errors raise
  `MigrationError`.
- `maspmigrate.cli` — `SubCommand` and `Runner` (`usage`, `run`), a small
  dispatcher of named sub-commands built on `argparse`.

## Usage

### Inspecting a store

```python
import sys

from maspmigrate.blockstore import MemoryStore, load_last_base_and_height
from maspmigrate.report import print_end_blocks_events, print_last_block_state

base, height = load_last_base_and_height(block_store)
print_last_block_state(block_store, sys.stdout)
print_end_blocks_events(state_store, skip_empty=True, out=sys.stdout)
```

`block_store` and `state_store` are any `KeyValueStore`; `MemoryStore` is
an in-memory one, iterated in key order.

### Building the new events

```python
from maspmigrate.events import emit_masp_events

events = emit_masp_events(height, end_block_events, old_refs, new_refs)
```

Every emitted event carries the attributes `height`, `indexed-tx`
(`{"block_height":…,"block_index":…,"batch_index":…}`), `section`
(`{"IbcData":"<HEX>"}` or `{"MaspSection":[…]}`) and `event-level`
(`tx`), all indexed. A new reference with no matching old one raises
`SectionError`.

### Running a migration

```python
from maspmigrate.indexer import MaspIndexerClient
from maspmigrate.migrate import migrate_events

client = MaspIndexerClient("https://indexer.example.com/api/v1", 100)

migrate_events(
    state_store,
    block_store,
    client,
    resolver,
    start_height=1,
    end_height=0,          # 0 means the last height in the block store
    continue_migrating=False,
    invalid_commit_not_err=False,
    max_concurrent_requests=100,
)
```

The indexer URL must end in `/api/v1`; its health endpoint is queried at
the same URL with `/api/v1` replaced by `/health`. The indexer must report
the commit of release 1.2.0 unless `invalid_commit_not_err` is set, in
which case a mismatch only logs a warning. Passing `None` as the client
raises `MigrationError`.

The range is rejected when either bound is not positive, when the start
lies after the end, or when the block store has been pruned above the
start or does not reach the end. Blocks are migrated concurrently, at most
`max_concurrent_requests` at a time.

### Sub-commands

```python
from maspmigrate.cli import Runner, SubCommand

def show(args):
    print_last_block_state(block_store)

runner = Runner({"last-state": SubCommand("print last block state", show)}, prog="tool")
runner.run(["last-state"])
```

`Runner.run` always ends with `SystemExit`: status 0 on success, 1 with
the usage text for a missing or unknown sub-command, and 1 with
`error: <message>` on standard error when the entry point raises.

## What the package does not do

- It has no installed command. `Runner` and `SubCommand` are provided, but
  no sub-commands are registered and no entry point is defined.
- It does not open LevelDB databases. `db_path` only locates a database
  directory inside a CometBFT home; reading and writing go through a
  `KeyValueStore` that the caller supplies, and `MemoryStore` is the only
  one included.
- It does not decode Namada or MASP transactions. Computing MASP
  transaction ids, locating MASP sections and extracting transaction data
  are left to the `MaspResolver` (and, for `print_end_blocks_txs`, the
  `decode_tx_data` callable) that the caller supplies.