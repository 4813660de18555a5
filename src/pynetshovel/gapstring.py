"""Byte sequences with gaps: holes where no data was observed.

Captured TCP conversations drop packets, start in the middle of a stream, or
get cut down by capture filters. A GapString stands in for such a
conversation: it has a logical length, can be sliced anywhere, and remembers
which bytes were never seen.

Gaps are stored as a length only. They are expanded into filler bytes only
when explicitly asked to (materialize with a fill pattern, hexdump, UTF-16
decoding). Observed bytes are held as memoryviews, so slicing never copies.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import islice, repeat
from typing import Iterable, Iterator, Literal, Union

from construct import (
    Construct,
    Int8ul,
    Int16ub,
    Int16ul,
    Int32ub,
    Int32ul,
    Int64ub,
    Int64ul,
)

from pynetshovel.errors import (
    InvalidWidthError,
    MissingDataError,
    OutOfRangeError,
    ShortReadError,
)

ByteOrder = Literal["little", "big"]

# Hexdump layout
HEXDUMP_WIDTH = 16  # logical bytes per line
HEXDUMP_HEX_COLUMN = 50  # width of the octet column, including trailing spaces

# Glyph shown for a byte inside a gap
GAP_GLYPH = "�"

# Code page 437, with pictures for the control characters
_CONTROL_GLYPHS = "·☺☻♥♦♣♠•◘○◙♂♀♪♫☼►◄↕‼¶§▬↨↑↓→←∟↔▲▼"
_HIGH_GLYPHS = (
    "ÇüéâäàåçêëèïîìÄÅ"
    "ÉæÆôöòûùÿÖÜ¢£¥₧ƒ"
    "áíóúñÑªº¿⌐¬½¼¡«»"
    "░▒▓│┤╡╢╖╕╣║╗╝╜╛┐"
    "└┴┬├─┼╞╟╚╔╩╦╠═╬╧"
    "╨╤╥╙╘╒╓╫╪┘┌█▄▌▐▀"
    "αßΓπΣσµτΦΘΩδ∞φε∩"
    "≡±≥≤⌠⌡÷≈°∀∃√ⁿ²■¤"
)

# One display glyph for every octet value 0x00-0xff
GLYPHS: str = (
    _CONTROL_GLYPHS + "".join(chr(c) for c in range(0x20, 0x7F)) + "⌂" + _HIGH_GLYPHS
)

_UINT_FORMATS: dict[tuple[int, ByteOrder], Construct] = {
    (8, "little"): Int8ul,
    (8, "big"): Int8ul,
    (16, "little"): Int16ul,
    (16, "big"): Int16ub,
    (32, "little"): Int32ul,
    (32, "big"): Int32ub,
    (64, "little"): Int64ul,
    (64, "big"): Int64ub,
}


def uint_format(bits: int, order: ByteOrder) -> Construct:
    """Return the construct format for an unsigned integer field.

    Args:
        bits: Field width in bits (8, 16, 32 or 64)
        order: "little" or "big"

    Returns:
        construct integer format

    Raises:
        InvalidWidthError: If bits is not a supported width
    """
    try:
        return _UINT_FORMATS[(bits, order)]
    except KeyError:
        raise InvalidWidthError(bits) from None


@dataclass(frozen=True, slots=True)
class Gap:
    """A run of bytes that were never observed."""

    length: int

    def __len__(self) -> int:
        return self.length


@dataclass(frozen=True, slots=True)
class Data:
    """A run of observed bytes."""

    view: memoryview

    def __len__(self) -> int:
        return len(self.view)

    def __repr__(self) -> str:
        return f"Data({bytes(self.view)!r})"


Chunk = Union[Gap, Data]


def _slice_chunk(chunk: Chunk, start: int, end: int) -> Chunk:
    if isinstance(chunk, Gap):
        return Gap(end - start)
    return Data(chunk.view[start:end])


def _cycle(pattern: bytes, offset: int, length: int) -> bytes:
    """Repeat pattern so that output byte i is pattern[(offset + i) % len(pattern)]."""
    k = offset % len(pattern)
    rotated = pattern[k:] + pattern[:k]
    return (rotated * (length // len(rotated) + 1))[:length]


def _xor(data: memoryview, mask: bytes, offset: int) -> bytes:
    n = len(data)
    stream = _cycle(mask, offset, n)
    return (int.from_bytes(data, "big") ^ int.from_bytes(stream, "big")).to_bytes(n, "big")


def _octets(values: tuple[int | None, ...]) -> str:
    tokens = ["--" if v is None else f"{v:02x}" for v in values]
    if len(tokens) > 8:
        return " ".join(tokens[:8]) + "  " + " ".join(tokens[8:])
    return " ".join(tokens)


def _glyph(value: int | None) -> str:
    return GAP_GLYPH if value is None else GLYPHS[value]


class GapString:
    """An immutable byte sequence that may contain gaps.

    Every operation returns a new GapString. Underlying byte storage is shared
    between a GapString and its slices.

    Example:
        >>> g = GapString.of_string("moo").append_gap(2).append_string("bar")
        >>> len(g), g.missing()
        (8, 2)
        >>> g.as_text("DROP")
        'mooPDbar'
    """

    __slots__ = ("_chunks", "_length")

    def __init__(self, chunks: Iterable[Chunk] = ()) -> None:
        self._chunks: tuple[Chunk, ...] = tuple(c for c in chunks if len(c) > 0)
        self._length = sum(len(c) for c in self._chunks)

    @classmethod
    def of_gap(cls, length: int) -> GapString:
        """Return a GapString consisting of a single gap."""
        if length < 0:
            raise ValueError(f"Gap length must not be negative: {length}")
        return cls((Gap(length),))

    @classmethod
    def of_bytes(cls, data: bytes | bytearray | memoryview) -> GapString:
        """Return a GapString holding data.

        Mutable buffers are copied so the result cannot change underneath.
        """
        if not isinstance(data, bytes):
            data = bytes(data)
        return cls((Data(memoryview(data)),))

    @classmethod
    def of_string(cls, text: str, encoding: str = "utf-8") -> GapString:
        """Return a GapString holding the encoded text."""
        return cls.of_bytes(text.encode(encoding))

    def __len__(self) -> int:
        return self._length

    def length(self) -> int:
        """Return the logical length, counting gap bytes."""
        return self._length

    def missing(self) -> int:
        """Return the total length of all gaps."""
        return sum(c.length for c in self._chunks if isinstance(c, Gap))

    def chunks(self) -> tuple[Chunk, ...]:
        return self._chunks

    def values(self) -> Iterator[int | None]:
        """Iterate over logical bytes, yielding None for each gap byte."""
        for chunk in self._chunks:
            if isinstance(chunk, Gap):
                yield from repeat(None, chunk.length)
            else:
                yield from chunk.view

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GapString):
            return NotImplemented
        return self._length == other._length and all(
            a == b for a, b in zip(self.values(), other.values())
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"GapString({list(self._chunks)!r})"

    def __bytes__(self) -> bytes:
        return self.materialize()

    def append(self, other: GapString) -> GapString:
        """Return this GapString with other appended."""
        if len(other) == 0:
            return self
        return GapString(self._chunks + other._chunks)

    def append_gap(self, length: int) -> GapString:
        return self.append(GapString.of_gap(length))

    def append_bytes(self, data: bytes | bytearray | memoryview) -> GapString:
        return self.append(GapString.of_bytes(data))

    def append_string(self, text: str, encoding: str = "utf-8") -> GapString:
        return self.append(GapString.of_string(text, encoding))

    def slice(self, start: int, end: int) -> GapString:
        """Return the logical range [start, end), like data[start:end].

        Gap chunks are cut down to the requested length, data chunks are
        re-sliced without copying.

        Raises:
            OutOfRangeError: If the range does not lie within this GapString
        """
        if start < 0 or end < start or end > self._length:
            raise OutOfRangeError(
                f"Slice [{start}:{end}] out of range for length {self._length}"
            )

        out: list[Chunk] = []
        pos = 0
        for chunk in self._chunks:
            chunk_start = pos
            pos += len(chunk)
            if pos <= start:
                continue
            if chunk_start >= end:
                break
            out.append(
                _slice_chunk(chunk, max(start, chunk_start) - chunk_start, min(end, pos) - chunk_start)
            )
        return GapString(out)

    def value_at(self, pos: int) -> int | None:
        """Return the byte at pos, or None if pos lies inside a gap.

        Raises:
            OutOfRangeError: If pos is beyond the end
        """
        (chunk,) = self.slice(pos, pos + 1)._chunks
        if isinstance(chunk, Gap):
            return None
        return chunk.view[0]

    def xor(self, mask: bytes | bytearray | list[int]) -> GapString:
        """Return this GapString with a cycling XOR mask applied.

        The mask position follows the logical offset across the whole
        sequence, so gaps advance it too. Gaps stay gaps.

        Raises:
            ValueError: If mask is empty
        """
        mask = bytes(mask)
        if not mask:
            raise ValueError("XOR mask must not be empty")

        out: list[Chunk] = []
        pos = 0
        for chunk in self._chunks:
            if isinstance(chunk, Data):
                out.append(Data(memoryview(_xor(chunk.view, mask, pos))))
            else:
                out.append(chunk)
            pos += len(chunk)
        return GapString(out)

    def materialize(self, fill: bytes = b"") -> bytes:
        """Flatten into bytes.

        Args:
            fill: Pattern for gap bytes; byte i of the output gets
                fill[i % len(fill)]. Gaps are left out when fill is empty.

        Returns:
            Observed bytes, with gaps filled or omitted
        """
        parts: list[bytes | memoryview] = []
        pos = 0
        for chunk in self._chunks:
            if isinstance(chunk, Data):
                parts.append(chunk.view)
            elif fill:
                parts.append(_cycle(fill, pos, chunk.length))
            pos += len(chunk)
        return b"".join(parts)

    def as_text(self, fill: str = "", encoding: str = "latin-1") -> str:
        """Return materialize(fill) as text.

        The default latin-1 encoding maps every byte to exactly one character.

        Raises:
            UnicodeEncodeError: If fill cannot be encoded with encoding
        """
        data = self.materialize(fill.encode(encoding))
        return data.decode(encoding, errors="replace")

    def hex_string(self) -> str:
        """Return lower-case hex of the observed bytes; gaps contribute nothing."""
        return self.materialize().hex()

    def glyphs(self) -> str:
        """Return one display glyph per logical byte."""
        return "".join(_glyph(v) for v in self.values())

    def hexdump(self) -> str:
        """Return a hexdump, with "--" for every missing byte.

        Runs of identical lines collapse to a single "*" line. The last line
        is the total length.
        """
        lines: list[str] = []
        values = self.values()
        pos = 0
        prev: tuple[int | None, ...] | None = None
        skipping = False

        while True:
            row = tuple(islice(values, HEXDUMP_WIDTH))
            if not row:
                break
            if row == prev:
                if not skipping:
                    lines.append("*")
                    skipping = True
            else:
                glyphs = "".join(_glyph(v) for v in row)
                lines.append(f"{pos:08x}  {_octets(row):<{HEXDUMP_HEX_COLUMN}}{glyphs}")
                prev = row
                skipping = False
            pos += len(row)

        lines.append(f"{pos:08x}")
        return "\n".join(lines) + "\n"

    def _read_uint(self, size: int, order: ByteOrder) -> tuple[int, GapString]:
        if size > self._length:
            raise ShortReadError(size, self._length)
        head = self.slice(0, size)
        if head.missing():
            raise MissingDataError(0, size)
        value = uint_format(size * 8, order).parse(head.materialize())
        return value, self.slice(size, self._length)

    def read_uint16_le(self) -> tuple[int, GapString]:
        """Return a little-endian uint16 from the front, and the rest.

        Raises:
            ShortReadError: If fewer than 2 bytes remain
            MissingDataError: If the 2 bytes overlap a gap
        """
        return self._read_uint(2, "little")

    def read_uint16_be(self) -> tuple[int, GapString]:
        return self._read_uint(2, "big")

    def read_uint32_le(self) -> tuple[int, GapString]:
        return self._read_uint(4, "little")

    def read_uint32_be(self) -> tuple[int, GapString]:
        return self._read_uint(4, "big")

    def decode_utf16(self, order: ByteOrder, fill: bytes = b"") -> str:
        """Decode as UTF-16 after materialize(fill).

        Surrogate pairs are combined; unpaired surrogates become U+FFFD. A
        trailing odd byte is dropped.
        """
        data = self.materialize(fill)
        data = data[: len(data) - len(data) % 2]
        codec = "utf-16-le" if order == "little" else "utf-16-be"
        return data.decode(codec, errors="replace")

    def decode_utf16_le(self, fill: bytes = b"") -> str:
        """Decode as UTF-16 little endian, as used all over Windows."""
        return self.decode_utf16("little", fill)

    def decode_utf16_be(self, fill: bytes = b"") -> str:
        return self.decode_utf16("big", fill)
