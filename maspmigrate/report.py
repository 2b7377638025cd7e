"""Read-only reports on the block store and state databases."""

from __future__ import annotations

import json
import re
import sys
from typing import Callable, TextIO

from .blockstore import KeyValueStore, StoreError, load_block, load_last_base_and_height
from .wire import ABCIResponses, Event, EventAttribute, WireError

ABCI_RESPONSES_PREFIX = b"abciResponsesKey:"

_HEIGHT_RE = re.compile(r"[+-]?[0-9]+")


def print_last_block_state(store: KeyValueStore, out: TextIO | None = None) -> None:
    """Print the base and latest heights of the block store."""
    out = out or sys.stdout
    base, height = load_last_base_and_height(store)
    print("Base height is", base, "and latest height is", height, file=out)


def extract_height(key: bytes) -> str:
    """Return the height part of an ABCI responses key."""
    return bytes(key[len(ABCI_RESPONSES_PREFIX) :]).decode("utf-8", errors="replace")


def parse_height(text: str) -> int:
    """Parse a block height taken from a database key."""
    if not _HEIGHT_RE.fullmatch(text):
        raise StoreError(f"failed to parse block height from db key: invalid syntax {text!r}")
    return int(text)


def collect_end_block_events(
    store: KeyValueStore, skip_empty: bool = False
) -> list[tuple[int, list[Event]]]:
    """Return the end-block events of every stored block, ordered by height."""
    blocks = []
    for key, value in store.items(ABCI_RESPONSES_PREFIX):
        try:
            responses = ABCIResponses.decode(value)
        except WireError as exc:
            raise StoreError(
                f"failed to unmarshal abci responses from state db: {exc}"
            ) from exc
        if skip_empty and not responses.events:
            continue
        blocks.append((parse_height(extract_height(key)), responses.events))
    blocks.sort(key=lambda item: item[0])
    return blocks


def _attribute_json(attr: EventAttribute) -> dict:
    obj: dict = {}
    if attr.key:
        obj["key"] = attr.key
    if attr.value:
        obj["value"] = attr.value
    if attr.index:
        obj["index"] = True
    return obj


def _event_json(event: Event) -> dict:
    obj: dict = {}
    if event.type:
        obj["type"] = event.type
    if event.attributes:
        obj["attributes"] = [_attribute_json(attr) for attr in event.attributes]
    return obj


def _dumps(value: object) -> str:
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    for char, escape in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escape)
    return text


def print_end_blocks_events(
    store: KeyValueStore, skip_empty: bool = False, out: TextIO | None = None
) -> None:
    """Print the end-block events of every block as one JSON document."""
    out = out or sys.stdout
    blocks = collect_end_block_events(store, skip_empty)
    document = [
        {
            "block_height": height,
            "events": [_event_json(e) for e in events] if events else None,
        }
        for height, events in blocks
    ]
    out.write(_dumps(document or None) + "\n")


def print_end_blocks_txs(
    store: KeyValueStore,
    skip_empty: bool,
    decode_tx_data: Callable[[bytes], bytes],
    out: TextIO | None = None,
) -> None:
    """Print the header and transaction data of every block from height 1 on."""
    out = out or sys.stdout
    height = 1
    while True:
        block = load_block(store, height)
        if block is None:
            return
        if block.txs or not skip_empty:
            txs = []
            for index, raw in enumerate(block.txs):
                try:
                    data = decode_tx_data(raw)
                except (ValueError, WireError) as exc:
                    raise StoreError(
                        f"unmarshal tx {index} of block {height} failed: {exc}"
                    ) from exc
                txs.append(bytes(data).decode("utf-8", errors="replace"))
            out.write(f"Header => Header(chain_id={block.chain_id!r}, height={block.height})\n")
            out.write(f"Txs => {txs!r}\n\n")
        height += 1