"""Protobuf wire decoding of the CometBFT records this tool reads and writes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, NamedTuple

_VARINT = 0
_FIXED64 = 1
_LEN = 2
_FIXED32 = 5


class WireError(ValueError):
    """Raised when protobuf data cannot be decoded."""


class _Field(NamedTuple):
    number: int
    wire_type: int
    value: int | bytes
    raw: bytes


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise WireError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise WireError("varint too long")


def _fields(data: bytes) -> Iterator[_Field]:
    pos = 0
    while pos < len(data):
        start = pos
        key, pos = _read_varint(data, pos)
        number, wire_type = key >> 3, key & 7
        if number == 0:
            raise WireError("invalid field number 0")
        if wire_type == _VARINT:
            value, pos = _read_varint(data, pos)
        elif wire_type in (_FIXED64, _FIXED32):
            size = 8 if wire_type == _FIXED64 else 4
            if pos + size > len(data):
                raise WireError("truncated fixed-width field")
            value = int.from_bytes(data[pos : pos + size], "little")
            pos += size
        elif wire_type == _LEN:
            length, pos = _read_varint(data, pos)
            end = pos + length
            if end > len(data):
                raise WireError(f"field {number} is truncated")
            value = bytes(data[pos:end])
            pos = end
        else:
            raise WireError(f"unsupported wire type {wire_type}")
        yield _Field(number, wire_type, value, bytes(data[start:pos]))


def _expect(f: _Field, wire_type: int) -> None:
    if f.wire_type != wire_type:
        raise WireError(f"field {f.number} has wire type {f.wire_type}, expected {wire_type}")


def _int64(value: int) -> int:
    value &= (1 << 64) - 1
    return value - (1 << 64) if value >= 1 << 63 else value


def _text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="surrogateescape")


def _encode_varint(value: int) -> bytes:
    if value < 0:
        value += 1 << 64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(number: int, wire_type: int) -> bytes:
    return _encode_varint(number << 3 | wire_type)


def _len_field(number: int, payload: bytes) -> bytes:
    return _key(number, _LEN) + _encode_varint(len(payload)) + payload


def _str_field(number: int, text: str) -> bytes:
    if not text:
        return b""
    return _len_field(number, text.encode("utf-8", errors="surrogateescape"))


@dataclass
class EventAttribute:
    """A key/value attribute of an ABCI event."""

    key: str = ""
    value: str = ""
    index: bool = False

    @classmethod
    def _decode(cls, data: bytes) -> EventAttribute:
        attr = cls()
        for f in _fields(data):
            if f.number == 1:
                _expect(f, _LEN)
                attr.key = _text(f.value)
            elif f.number == 2:
                _expect(f, _LEN)
                attr.value = _text(f.value)
            elif f.number == 3:
                _expect(f, _VARINT)
                attr.index = bool(f.value)
        return attr

    def _encode(self) -> bytes:
        out = _str_field(1, self.key) + _str_field(2, self.value)
        if self.index:
            out += _key(3, _VARINT) + b"\x01"
        return out


@dataclass
class Event:
    """An ABCI event: a type and its attributes."""

    type: str = ""
    attributes: list[EventAttribute] = field(default_factory=list)

    @classmethod
    def _decode(cls, data: bytes) -> Event:
        event = cls()
        for f in _fields(data):
            if f.number == 1:
                _expect(f, _LEN)
                event.type = _text(f.value)
            elif f.number == 2:
                _expect(f, _LEN)
                event.attributes.append(EventAttribute._decode(f.value))
        return event

    def _encode(self) -> bytes:
        return _str_field(1, self.type) + b"".join(
            _len_field(2, attr._encode()) for attr in self.attributes
        )


@dataclass
class ABCIResponses:
    """Stored ABCI responses of a block; only end-block events are interpreted.

    All other fields are kept as raw bytes so that re-encoding preserves them.
    """

    events: list[Event] = field(default_factory=list)
    has_end_block: bool = False
    other_fields: list[tuple[int, bytes]] = field(default_factory=list)
    end_block_other_fields: list[tuple[int, bytes]] = field(default_factory=list)

    @classmethod
    def decode(cls, data: bytes) -> ABCIResponses:
        """Decode stored ABCI responses."""
        result = cls()
        for f in _fields(data):
            if f.number != 2:
                result.other_fields.append((f.number, f.raw))
                continue
            _expect(f, _LEN)
            result.has_end_block = True
            for inner in _fields(f.value):
                if inner.number == 3:
                    _expect(inner, _LEN)
                    result.events.append(Event._decode(inner.value))
                else:
                    result.end_block_other_fields.append((inner.number, inner.raw))
        return result

    def encode(self) -> bytes:
        """Encode back into protobuf, fields in field-number order."""
        end_block = b"".join(raw for n, raw in self.end_block_other_fields if n < 3)
        end_block += b"".join(_len_field(3, event._encode()) for event in self.events)
        end_block += b"".join(raw for n, raw in self.end_block_other_fields if n > 3)
        out = [raw for n, raw in self.other_fields if n < 2]
        if self.has_end_block or end_block:
            out.append(_len_field(2, end_block))
        out.extend(raw for n, raw in self.other_fields if n > 2)
        return b"".join(out)


@dataclass(frozen=True)
class BlockStoreState:
    """The base and latest height recorded by the block store."""

    base: int = 0
    height: int = 0

    @classmethod
    def decode(cls, data: bytes) -> BlockStoreState:
        """Decode the block store state record."""
        base = height = 0
        for f in _fields(data):
            if f.number == 1:
                _expect(f, _VARINT)
                base = _int64(f.value)
            elif f.number == 2:
                _expect(f, _VARINT)
                height = _int64(f.value)
        return cls(base=base, height=height)


@dataclass
class Block:
    """A block's chain id, height and raw transactions."""

    chain_id: str = ""
    height: int = 0
    txs: list[bytes] = field(default_factory=list)

    @classmethod
    def decode(cls, data: bytes) -> Block:
        """Decode a block assembled from its parts."""
        block = cls()
        for f in _fields(data):
            if f.number == 1:
                _expect(f, _LEN)
                for h in _fields(f.value):
                    if h.number == 2:
                        _expect(h, _LEN)
                        block.chain_id = _text(h.value)
                    elif h.number == 3:
                        _expect(h, _VARINT)
                        block.height = _int64(h.value)
            elif f.number == 2:
                _expect(f, _LEN)
                for d in _fields(f.value):
                    if d.number == 1:
                        _expect(d, _LEN)
                        block.txs.append(d.value)
        return block


def decode_part_set_total(block_meta_bytes: bytes) -> int:
    """Return the number of parts recorded in a block meta record."""
    total = 0
    for f in _fields(block_meta_bytes):
        if f.number != 1:
            continue
        _expect(f, _LEN)
        for b in _fields(f.value):
            if b.number != 2:
                continue
            _expect(b, _LEN)
            for p in _fields(b.value):
                if p.number == 1:
                    _expect(p, _VARINT)
                    total = p.value & 0xFFFFFFFF
    return total


def decode_part_bytes(part_bytes: bytes) -> bytes:
    """Return the payload of a stored block part."""
    payload = b""
    for f in _fields(part_bytes):
        if f.number == 2:
            _expect(f, _LEN)
            payload = f.value
    return payload