"""Construction of the new MASP events that replace old data references."""

from __future__ import annotations

import logging
from typing import Sequence

from .sections import IndexedMaspSection, MaspTxSection, SectionError
from .wire import Event, EventAttribute

log = logging.getLogger(__name__)

EVENT_MASP_TRANSFER = "masp/transfer"
EVENT_MASP_FEE_PAYMENT = "masp/fee-payment"


def _section_value(section: MaspTxSection) -> str:
    hex_hash = section.hash.hex().upper()
    if section.ibc:
        return f'{{"IbcData":"{hex_hash}"}}'
    # A fixed-size hash is serialised as a JSON array of byte values.
    return '{"MaspSection":[' + ",".join(str(b) for b in section.hash) + "]}"


def append_new_masp_event(
    events: Sequence[Event] | None,
    masp_event_type: str,
    height: int,
    block_index: int,
    batch_index: int,
    section: MaspTxSection,
) -> list[Event]:
    """Return ``events`` followed by a new MASP event for ``section``."""
    hex_hash = section.hash.hex().upper()
    if section.ibc:
        log.info("stashing ibc data section %s at height %d with masp tx", hex_hash, height)
    else:
        log.info("stashing masp section %s at height %d", hex_hash, height)
    indexed_tx = (
        f'{{"block_height":{height},"block_index":{block_index},"batch_index":{batch_index}}}'
    )
    event = Event(
        type=masp_event_type,
        attributes=[
            EventAttribute(key="height", value=str(height), index=True),
            EventAttribute(key="indexed-tx", value=indexed_tx, index=True),
            EventAttribute(key="section", value=_section_value(section), index=True),
            EventAttribute(key="event-level", value="tx", index=True),
        ],
    )
    return [*(events or []), event]


def emit_masp_events(
    height: int,
    end_block_events: Sequence[Event] | None,
    old_refs: Sequence[IndexedMaspSection],
    new_refs: Sequence[IndexedMaspSection],
) -> list[Event]:
    """Append one MASP event per new reference, telling fee payments from transfers.

    A new reference whose section appears in the old references at the same
    position or later is a fee payment; one found earlier is a transfer.
    """
    events = list(end_block_events or [])
    for new_index, new_ref in enumerate(new_refs):
        old_index = next(
            (i for i, old_ref in enumerate(old_refs) if new_ref.same_section(old_ref)),
            None,
        )
        if old_index is None:
            raise SectionError(f"missing masp event at height {height}: {new_ref!r}")
        if old_index >= new_index:
            log.info("found masp fee payment: height=%d %r", height, new_ref)
            event_type = EVENT_MASP_FEE_PAYMENT
        else:
            log.info("found regular masp transfer: height=%d %r", height, new_ref)
            event_type = EVENT_MASP_TRANSFER
        events = append_new_masp_event(
            events,
            event_type,
            height,
            new_ref.block_index,
            new_ref.masp_tx_index,
            new_ref.section,
        )
    return events