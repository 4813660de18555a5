"""Sequential field extraction from gap-aware message payloads.

A Packet holds the unparsed remainder of one message. A decoder peels
fixed-width integers off the front, records whatever else it learns as named
fields, sets an opcode and description, and finally asks for a description:

    2024-01-01T00:00:00+00:00 Generic 7: Keepalive
          Payload: 'hello'
     0                   1                   2                   3
     0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |        length (0x0009)        | opcode (0x07) |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    00000000  68 65 6c 6c 6f                                    hello
    00000005

Decoders for a particular protocol hold a Packet and forward to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from pynetshovel.conversation import NEVER, Utterance
from pynetshovel.errors import MissingDataError, ShortReadError
from pynetshovel.gapstring import ByteOrder, GapString, uint_format

logger = logging.getLogger(__name__)

UNDEFINED_OPCODE = -1

# Header diagram layout
ROW_BITS = 32
_RULER = (
    "".join(f" {i // 10 if i % 10 == 0 else ' '}" for i in range(ROW_BITS)).rstrip(),
    "".join(f" {i % 10}" for i in range(ROW_BITS)),
)
_ELLIPSIS = "…"


@dataclass(frozen=True, slots=True)
class HeaderField:
    """An integer peeled off the front of a payload."""

    name: str
    bits: int
    value: int
    order: ByteOrder

    def label(self) -> str:
        return f"{self.name} (0x{self.value:0{self.bits // 4}x})"


@dataclass(frozen=True, slots=True)
class NamedField:
    key: str
    value: str


def _separator(bits: int) -> str:
    return "+" + "-+" * bits


def _timestamp(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat()


class Packet:
    """One message being decoded.

    Attributes:
        opcode: Message type, UNDEFINED_OPCODE until a decoder sets it
        description: Human readable message type
        when: Timestamp of the data the message came from
        payload: What is left to parse
    """

    name = "Generic"

    def __init__(
        self,
        payload: GapString | None = None,
        when: datetime = NEVER,
        opcode: int = UNDEFINED_OPCODE,
        description: str = "Undefined",
    ) -> None:
        self.opcode = opcode
        self.description = description
        self.when = when
        self.payload = payload if payload is not None else GapString()
        self._offset = 0  # bytes peeled so far
        self._header: list[HeaderField] = []
        self._fields: list[NamedField] = []

    @classmethod
    def from_utterance(cls, utterance: Utterance) -> Packet:
        """Return a packet holding an utterance's data and timestamp."""
        return cls(utterance.data, utterance.when)

    @property
    def header(self) -> tuple[HeaderField, ...]:
        return tuple(self._header)

    @property
    def fields(self) -> tuple[NamedField, ...]:
        return tuple(self._fields)

    def peel(self, length: int) -> GapString:
        """Remove and return the first length bytes of the payload.

        The payload is left untouched if this fails.

        Raises:
            ShortReadError: If fewer than length bytes remain
            MissingDataError: If any of the bytes fall in a gap
        """
        available = len(self.payload)
        if length > available:
            raise ShortReadError(length, available)
        head = self.payload.slice(0, length)
        if head.missing():
            raise MissingDataError(self._offset, length)
        self.payload = self.payload.slice(length, available)
        self._offset += length
        return head

    def read_unsigned_int(self, order: ByteOrder, bits: int, name: str) -> int:
        """Peel an unsigned integer and record it as a header field.

        Args:
            order: "little" or "big"
            bits: Width in bits: 8, 16, 32 or 64
            name: Field name shown in the header diagram

        Returns:
            The decoded value

        Raises:
            InvalidWidthError: If bits is not a supported width
            ShortReadError: If the payload is too short
            MissingDataError: If the field falls in a gap
        """
        fmt = uint_format(bits, order)
        value: int = fmt.parse(self.peel(bits // 8).materialize())
        self._header.append(HeaderField(name, bits, value, order))
        logger.debug("%s: %s = 0x%0*x", self.name, name, bits // 4, value)
        return value

    def uint8(self, name: str) -> int:
        return self.read_unsigned_int("little", 8, name)

    def uint16_le(self, name: str) -> int:
        return self.read_unsigned_int("little", 16, name)

    def uint16_be(self, name: str) -> int:
        return self.read_unsigned_int("big", 16, name)

    def uint32_le(self, name: str) -> int:
        return self.read_unsigned_int("little", 32, name)

    def uint32_be(self, name: str) -> int:
        return self.read_unsigned_int("big", 32, name)

    def uint64_le(self, name: str) -> int:
        return self.read_unsigned_int("little", 64, name)

    def uint64_be(self, name: str) -> int:
        return self.read_unsigned_int("big", 64, name)

    def set(self, key: str, value: str) -> None:
        """Record a named field. Keys may repeat; order is kept."""
        self._fields.append(NamedField(key, value))

    def set_string(self, key: str, value: str) -> None:
        self.set(key, repr(value))

    def set_int(self, key: str, value: int) -> None:
        self.set(key, f"{value} == {value:#x}")

    def set_uint(self, key: str, value: int) -> None:
        if value < 0:
            raise ValueError(f"{key}: unsigned value is negative: {value}")
        self.set_int(key, value)

    def set_bytes(self, key: str, value: bytes) -> None:
        self.set(key, value.hex(" "))

    def set_gap_string(self, key: str, value: GapString) -> None:
        self.set(key, f"{value.hex_string()}  {value.glyphs()}")

    def describe_header(self) -> str:
        """Return a bit diagram of the header fields read so far.

        Rows are 32 bits wide. A field that crosses a row boundary is split,
        and each part carries the label, truncated to fit.
        """
        lines = [*_RULER, _separator(ROW_BITS)]
        row = ""
        row_bits = 0

        for field in self._header:
            label = field.label()
            bits = field.bits
            while bits > 0:
                cell_bits = min(bits, ROW_BITS - row_bits)
                width = cell_bits * 2 - 1
                if len(label) > width:
                    text = label[: width - 1] + _ELLIPSIS
                else:
                    text = label
                row += "|" + text.center(width)
                row_bits += cell_bits
                bits -= cell_bits
                if row_bits == ROW_BITS:
                    lines.append(row + "|")
                    lines.append(_separator(ROW_BITS))
                    row = ""
                    row_bits = 0

        if row_bits:
            lines.append(row + "|")
            lines.append(_separator(row_bits))

        return "\n".join(lines) + "\n"

    def describe(self) -> str:
        """Return a multi-line description of everything decoded so far."""
        out = [f"{_timestamp(self.when)} {self.name} {self.opcode}: {self.description}\n"]
        for field in self._fields:
            out.append(f"      {field.key}: {field.value}\n")
        if self._header:
            out.append(self.describe_header())
        out.append(self.payload.hexdump())
        return "".join(out)

    def __str__(self) -> str:
        return self.describe()
