"""Blocking, pull-based reads over one direction of a TCP conversation.

A reassembly engine pushes timestamped segment runs into a Conversation as it
sequences them. One decoding thread per conversation pulls the data back out
with blocking reads of "exactly N bytes" or "whatever arrives next", so a
decoder can be written as straight-line code.

The two sides are joined by a bounded queue. A producer that gets ahead of
its consumer blocks until there is room again.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator, NamedTuple

from pynetshovel.gapstring import GapString

logger = logging.getLogger(__name__)

QUEUE_CAPACITY = 100  # utterances buffered between producer and consumer
MAX_READ_LENGTH = 0x100000  # largest length a single read may ask for
NEXT_UTTERANCE = -1  # read() length meaning "the next utterance, whatever its size"

# Timestamp carried by data that was never stamped
NEVER = datetime.fromtimestamp(0, tz=timezone.utc)


class Run(NamedTuple):
    """One reassembly run: skip unobserved bytes, then data."""

    skip: int
    data: bytes


@dataclass(frozen=True, slots=True)
class Utterance:
    """One timestamped delivery of conversation bytes."""

    when: datetime
    data: GapString


class ConversationState(Enum):
    OPEN = "open"  # accepting segments
    DRAINING = "draining"  # complete, buffered data still readable
    CLOSED = "closed"  # every read reports end of data


class Conversation:
    """One direction of a TCP flow, exposed as a readable queue of utterances.

    on_segments() and on_complete() are called by the producer. read() is
    called by exactly one consumer thread.

    Example:
        >>> conv = Conversation()
        >>> conv.on_segments(when, [(0, b"AB"), (3, b"CD")])
        >>> conv.on_complete()
        >>> utterance, end_of_data = conv.read(4)
    """

    def __init__(self, capacity: int = QUEUE_CAPACITY, name: str = "") -> None:
        """Initialize an open conversation.

        Args:
            capacity: Number of utterances the producer may get ahead by
            name: Label used in log messages
        """
        if capacity < 1:
            raise ValueError(f"Queue capacity must be at least 1, got {capacity}")
        self.name = name
        self._capacity = capacity
        self._queue: deque[Utterance] = deque()
        self._cond = threading.Condition()
        self._complete = False
        self._cancelled = False

        # Look-ahead that has been pulled off the queue but not yet returned
        self._pending = GapString()
        self._pending_when = NEVER

    def __repr__(self) -> str:
        return f"Conversation({self.name!r}, state={self.state.name})"

    @property
    def state(self) -> ConversationState:
        with self._cond:
            if not (self._complete or self._cancelled):
                return ConversationState.OPEN
            if self._queue or (len(self._pending) > 0 and not self._cancelled):
                return ConversationState.DRAINING
            return ConversationState.CLOSED

    def on_segments(self, when: datetime, runs: Iterable[tuple[int, bytes]]) -> None:
        """Queue one reassembly delivery as an utterance.

        Each run contributes a gap of its skip length, then its bytes. A
        delivery without any length (SYN, ACK, FIN and the like) is dropped.
        Blocks while the queue is full.

        Args:
            when: Timestamp of the delivery
            runs: Ordered (skip, data) pairs

        Raises:
            RuntimeError: If called after on_complete()
        """
        data = GapString()
        for skip, payload in runs:
            if skip > 0:
                data = data.append_gap(skip)
            data = data.append_bytes(payload)

        if len(data) == 0:
            return

        with self._cond:
            if self._complete:
                raise RuntimeError(f"{self.name}: segments delivered after completion")
            while len(self._queue) >= self._capacity and not self._cancelled:
                self._cond.wait()
            if self._cancelled:
                logger.debug("%s: dropping %d bytes, conversation cancelled", self.name, len(data))
                return
            self._queue.append(Utterance(when, data))
            self._cond.notify_all()

        logger.debug("%s: queued %d bytes (%d missing)", self.name, len(data), data.missing())

    def on_complete(self) -> None:
        """Signal that no more segments will arrive."""
        with self._cond:
            self._complete = True
            self._cond.notify_all()
        logger.debug("%s: reassembly complete", self.name)

    def cancel(self) -> None:
        """Abandon the conversation.

        Queued data is discarded, blocked and future reads report end of data,
        and a producer blocked on a full queue is released. Later deliveries
        are dropped.
        """
        with self._cond:
            self._cancelled = True
            self._queue.clear()
            self._cond.notify_all()
        logger.debug("%s: cancelled", self.name)

    def _next(self) -> Utterance | None:
        """Block until an utterance is available; None at end of data."""
        with self._cond:
            while not self._queue and not self._complete and not self._cancelled:
                self._cond.wait()
            if not self._queue:
                return None
            utterance = self._queue.popleft()
            self._cond.notify_all()
            return utterance

    def read(self, length: int) -> tuple[Utterance, bool]:
        """Read from the conversation, blocking until data or completion.

        Args:
            length: NEXT_UTTERANCE for the next utterance (or buffered
                remainder) as delivered, otherwise the number of logical
                bytes wanted

        Returns:
            Tuple of (utterance, end_of_data). With a positive length the
            utterance holds exactly length bytes unless end_of_data is set, in
            which case it holds whatever was left (possibly nothing). Its
            timestamp is that of the last utterance that contributed data.

        Raises:
            ValueError: If length is negative (other than NEXT_UTTERANCE) or
                larger than MAX_READ_LENGTH
        """
        if length > MAX_READ_LENGTH:
            raise ValueError(f"Read too large: 0x{length:x} bytes (max 0x{MAX_READ_LENGTH:x})")
        if length < 0 and length != NEXT_UTTERANCE:
            raise ValueError(f"Invalid read length: {length}")

        if self._cancelled:
            self._pending = GapString()
            return Utterance(self._pending_when, GapString()), True

        if length == NEXT_UTTERANCE:
            if len(self._pending) > 0:
                utterance = Utterance(self._pending_when, self._pending)
                self._pending = GapString()
                return utterance, False
            next_utterance = self._next()
            if next_utterance is None:
                return Utterance(self._pending_when, GapString()), True
            self._pending_when = next_utterance.when
            return next_utterance, False

        if length == 0:
            return Utterance(self._pending_when, GapString()), False

        while len(self._pending) < length:
            next_utterance = self._next()
            if next_utterance is None:
                # Hand over whatever is left along with end of data
                utterance = Utterance(self._pending_when, self._pending)
                self._pending = GapString()
                return utterance, True
            self._pending = self._pending.append(next_utterance.data)
            self._pending_when = next_utterance.when

        utterance = Utterance(self._pending_when, self._pending.slice(0, length))
        self._pending = self._pending.slice(length, len(self._pending))
        return utterance, False

    def utterances(self) -> Iterator[Utterance]:
        """Yield utterances as delivered until end of data."""
        while True:
            utterance, end_of_data = self.read(NEXT_UTTERANCE)
            if end_of_data:
                return
            yield utterance

    def __iter__(self) -> Iterator[Utterance]:
        return self.utterances()
