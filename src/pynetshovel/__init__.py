"""pynetshovel - Building blocks for decoding protocols in lossy TCP captures.

Captured conversations are full of holes: dropped packets, captures that start
mid-stream, snap lengths and filters. This library treats such a conversation
as one continuous byte sequence with gaps in it, so a decoder can read and
slice it as if nothing were missing, and find out exactly where something was.

Example:
    >>> from pynetshovel import Packet, Shovel
    >>> def decode(flow, conversation):
    ...     while True:
    ...         utterance, end_of_data = conversation.read(4)
    ...         if end_of_data:
    ...             return
    ...         pkt = Packet.from_utterance(utterance)
    ...         pkt.opcode = pkt.uint32_be("opcode")
    ...         print(pkt.describe())
    >>> with Shovel(decode) as shovel:
    ...     shovel.shovel_file("capture.pcap")
"""

import importlib.metadata as _importlib_metadata

from pynetshovel.conversation import (
    MAX_READ_LENGTH,
    NEVER,
    NEXT_UTTERANCE,
    QUEUE_CAPACITY,
    Conversation,
    ConversationState,
    Run,
    Utterance,
)
from pynetshovel.errors import (
    InvalidWidthError,
    MissingDataError,
    NetshovelError,
    OutOfRangeError,
    ShortReadError,
)
from pynetshovel.gapstring import GAP_GLYPH, GLYPHS, ByteOrder, Data, Gap, GapString
from pynetshovel.packet import UNDEFINED_OPCODE, HeaderField, NamedField, Packet
from pynetshovel.shovel import FlowKey, SegmentTracker, Shovel

__version__: str = _importlib_metadata.version(__package__ or __name__)

__all__ = [
    # Version
    "__version__",
    # Gap-aware bytes
    "GapString",
    "Gap",
    "Data",
    "ByteOrder",
    "GLYPHS",
    "GAP_GLYPH",
    # Conversations
    "Conversation",
    "ConversationState",
    "Utterance",
    "Run",
    "NEXT_UTTERANCE",
    "QUEUE_CAPACITY",
    "MAX_READ_LENGTH",
    "NEVER",
    # Field extraction
    "Packet",
    "HeaderField",
    "NamedField",
    "UNDEFINED_OPCODE",
    # Capture driver
    "Shovel",
    "FlowKey",
    "SegmentTracker",
    # Errors
    "NetshovelError",
    "ShortReadError",
    "MissingDataError",
    "InvalidWidthError",
    "OutOfRangeError",
]
