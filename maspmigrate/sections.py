"""MASP transaction section references as stored in old events."""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from typing import Any

HASH_LEN = 32

_HEX_RE = re.compile(r"[0-9a-fA-F]*")


class SectionError(ValueError):
    """Raised when a MASP section reference is malformed."""


@dataclass(frozen=True)
class MaspTxSection:
    """A section of a Namada transaction holding MASP data."""

    ibc: bool
    hash: bytes

    def __post_init__(self) -> None:
        if len(self.hash) != HASH_LEN:
            raise SectionError(f"section hash must be {HASH_LEN} bytes, got {len(self.hash)}")


@dataclass(frozen=True)
class IndexedMaspSection:
    """A MASP section together with its location in a block."""

    section: MaspTxSection
    block_index: int = 0
    masp_tx_index: int = 0

    def same_section(self, other: IndexedMaspSection) -> bool:
        """Whether both refer to the same section kind and hash."""
        return self.section.ibc == other.section.ibc and self.section.hash == other.section.hash


def _lower_keys(obj: Any, what: str) -> dict[str, Any]:
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise SectionError(f"{what} must be a json object")
    return {str(key).lower(): value for key, value in obj.items()}


def _json_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise SectionError(f"invalid base64 data: {exc}") from exc
    if isinstance(value, list):
        if not all(isinstance(b, int) and not isinstance(b, bool) for b in value):
            raise SectionError("byte array must hold integers")
        try:
            return bytes(value)
        except ValueError as exc:
            raise SectionError(f"invalid byte array: {exc}") from exc
    raise SectionError("byte data must be a base64 string or an array of integers")


@dataclass(frozen=True)
class MaspDataRef:
    """One reference to MASP data: either an IBC data hash or a MASP tx id."""

    ibc_data: str = ""
    masp_section: bytes = b""

    @classmethod
    def from_json(cls, obj: Any) -> MaspDataRef:
        """Build a reference from its decoded JSON object."""
        fields = _lower_keys(obj, "masp data ref")
        ibc_data = fields.get("ibcdata")
        if ibc_data is None:
            ibc_data = ""
        if not isinstance(ibc_data, str):
            raise SectionError("IbcData must be a string")
        return cls(ibc_data=ibc_data, masp_section=_json_bytes(fields.get("maspsection")))

    def to_masp_tx_section(self) -> MaspTxSection:
        """Convert the reference into the section it points at."""
        if self.ibc_data:
            n = len(self.ibc_data) // 2
            if n != HASH_LEN:
                raise SectionError(f"invalid ibc data section length {n}")
            if len(self.ibc_data) % 2 or not _HEX_RE.fullmatch(self.ibc_data):
                raise SectionError("failed to decode ibc data section: invalid hex")
            return MaspTxSection(ibc=True, hash=bytes.fromhex(self.ibc_data))
        n = len(self.masp_section)
        if n != HASH_LEN:
            raise SectionError(f"invalid masp tx id length {n}")
        return MaspTxSection(ibc=False, hash=bytes(self.masp_section))


@dataclass(frozen=True)
class MaspDataRefs:
    """The MASP data references attached to one transaction."""

    tx_index: int = 0
    masp_refs: list[MaspDataRef] = field(default_factory=list)


def parse_masp_data_refs(text: str) -> MaspDataRefs:
    """Parse the JSON value of a ``masp_data_refs`` event attribute."""
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SectionError(f"invalid masp data refs json: {exc}") from exc
    fields = _lower_keys(obj, "masp data refs")
    tx_index = fields.get("tx_index", 0)
    if tx_index is None:
        tx_index = 0
    if not isinstance(tx_index, int) or isinstance(tx_index, bool):
        raise SectionError("tx_index must be an integer")
    refs = fields.get("masp_refs")
    if refs is None:
        refs = []
    if not isinstance(refs, list):
        raise SectionError("masp_refs must be an array")
    return MaspDataRefs(tx_index=tx_index, masp_refs=[MaspDataRef.from_json(r) for r in refs])