"""A decoder that does nothing but dump every utterance.

Copy this as the starting point for a protocol decoder: the message type holds
a Packet and forwards to it, and decode() pulls data out of the Conversation
until it runs dry.
"""

from __future__ import annotations

import sys
import threading
from typing import TextIO

from pynetshovel.conversation import Conversation, Utterance
from pynetshovel.packet import Packet
from pynetshovel.shovel import FlowKey

# Decoder threads share stdout
_output_lock = threading.Lock()


class SimplePacket:
    """One utterance, described as an undecoded message."""

    def __init__(self, flow: FlowKey, utterance: Utterance) -> None:
        self.flow = flow
        self.packet = Packet.from_utterance(utterance)
        self.packet.name = "Simple"
        self.packet.set_uint("Length", len(utterance.data))
        if utterance.data.missing():
            self.packet.set_uint("Missing", utterance.data.missing())

    def describe(self) -> str:
        return f"Simple {self.flow}\n{self.packet.describe()}"


def decode(flow: FlowKey, conversation: Conversation, out: TextIO | None = None) -> None:
    """Print every utterance of a conversation."""
    for utterance in conversation:
        text = SimplePacket(flow, utterance).describe()
        with _output_lock:
            print(text, file=out or sys.stdout)
