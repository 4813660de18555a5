"""Exceptions raised while slicing and decoding gap-aware data."""

from __future__ import annotations


class NetshovelError(Exception):
    """Base class for all pynetshovel errors."""


class ShortReadError(NetshovelError):
    """More bytes were requested than remain."""

    def __init__(self, wanted: int, available: int) -> None:
        super().__init__(f"Short read: wanted {wanted} bytes, {available} available")
        self.wanted = wanted
        self.available = available


class MissingDataError(NetshovelError):
    """The requested region overlaps a gap."""

    def __init__(self, offset: int, length: int) -> None:
        super().__init__(
            f"Missing data: {length} bytes at offset {offset} overlap a gap"
        )
        self.offset = offset
        self.length = length


class InvalidWidthError(NetshovelError, ValueError):
    """A field width other than 8, 16, 32 or 64 bits was requested."""

    def __init__(self, bits: int) -> None:
        super().__init__(f"Invalid field width: {bits} bits")
        self.bits = bits


class OutOfRangeError(NetshovelError, IndexError):
    """A slice or index falls outside the logical length of a sequence."""
