"""Feed TCP packets from capture files to per-conversation decoders.

Every direction of every TCP flow gets its own Conversation and its own
decoder thread, so separate flows decode concurrently while each flow decodes
strictly in order.

Segments are expected in order. A forward jump in sequence numbers becomes a
gap, retransmitted bytes are dropped, and out-of-order segments are not
buffered. Once a flow ends with FIN or RST, the next packet on the same
addresses and ports starts a new Conversation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from os import PathLike
from typing import Callable

from scapy.layers.inet import IP, TCP
from scapy.layers.inet6 import IPv6
from scapy.packet import Packet as ScapyPacket
from scapy.packet import Raw
from scapy.utils import PcapReader

from pynetshovel.conversation import QUEUE_CAPACITY, Conversation, Run
from pynetshovel.errors import NetshovelError

logger = logging.getLogger(__name__)

SEQ_MODULUS = 1 << 32

# TCP flag bits
FIN = 0x01
SYN = 0x02
RST = 0x04


@dataclass(frozen=True, slots=True)
class FlowKey:
    """One direction of a TCP flow."""

    src: str
    sport: int
    dst: str
    dport: int

    @classmethod
    def from_packet(cls, packet: ScapyPacket) -> FlowKey:
        network = packet[IP] if IP in packet else packet[IPv6]
        return cls(network.src, packet[TCP].sport, network.dst, packet[TCP].dport)

    def __str__(self) -> str:
        return f"{self.src}:{self.sport} → {self.dst}:{self.dport}"


class SegmentTracker:
    """Track the next expected sequence number of one flow direction."""

    def __init__(self) -> None:
        self.next_seq: int | None = None

    def track(self, seq: int, payload: bytes, syn: bool = False) -> Run | None:
        """Turn one segment into a reassembly run.

        Args:
            seq: Sequence number from the TCP header
            payload: Segment payload
            syn: Whether the SYN flag is set (it consumes one sequence number)

        Returns:
            Run with the gap before the payload, or None if the segment adds
            nothing new
        """
        if syn:
            seq = (seq + 1) % SEQ_MODULUS
        if self.next_seq is None:
            self.next_seq = seq

        skip = (seq - self.next_seq) % SEQ_MODULUS
        if skip >= SEQ_MODULUS // 2:
            # Starts before data already delivered
            behind = SEQ_MODULUS - skip
            if behind >= len(payload):
                logger.debug("Dropping retransmission of %d bytes at seq %d", len(payload), seq)
                return None
            payload = payload[behind:]
            skip = 0

        if skip:
            logger.debug("Gap of %d bytes before seq %d", skip, seq)
        self.next_seq = (self.next_seq + skip + len(payload)) % SEQ_MODULUS
        if not skip and not payload:
            return None
        return Run(skip, payload)


Decoder = Callable[[FlowKey, Conversation], None]


@dataclass
class _Flow:
    conversation: Conversation
    thread: threading.Thread
    tracker: SegmentTracker = field(default_factory=SegmentTracker)


class Shovel:
    """Dispatch TCP packets to one decoder thread per flow direction.

    Example:
        >>> def decode(flow, conversation):
        ...     for utterance in conversation:
        ...         print(flow, utterance.data.hexdump())
        >>> with Shovel(decode) as shovel:
        ...     shovel.shovel_file("capture.pcap")
    """

    def __init__(self, decoder: Decoder, capacity: int = QUEUE_CAPACITY) -> None:
        """Initialize the shovel.

        Args:
            decoder: Called once per flow direction, on its own thread, with
                the flow and its Conversation
            capacity: Utterances buffered per conversation before the
                packet feed blocks
        """
        self._decoder = decoder
        self._capacity = capacity
        self._flows: dict[FlowKey, _Flow] = {}  # open flows only
        self._threads: list[threading.Thread] = []  # decoders of finished flows
        self.flow_count = 0
        self.packet_count = 0

    def __enter__(self) -> Shovel:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self, flow: FlowKey, conversation: Conversation) -> None:
        try:
            self._decoder(flow, conversation)
        except NetshovelError as e:
            logger.warning("%s: decode failed: %s", flow, e)
        except Exception:
            logger.exception("%s: decoder crashed", flow)
        finally:
            # Nobody is reading any more; keep the producer from blocking
            conversation.cancel()

    def _open(self, key: FlowKey) -> _Flow:
        logger.info("New flow %s", key)
        conversation = Conversation(self._capacity, name=str(key))
        thread = threading.Thread(
            target=self._run, args=(key, conversation), name=f"decode {key}", daemon=True
        )
        flow = _Flow(conversation, thread)
        self._flows[key] = flow
        self.flow_count += 1
        thread.start()
        return flow

    def _complete(self, key: FlowKey) -> None:
        """End a flow. A later packet on the same key starts a new one."""
        flow = self._flows.pop(key)
        flow.conversation.on_complete()
        self._threads.append(flow.thread)
        logger.debug("Flow %s complete", key)

    def feed(self, packet: ScapyPacket) -> None:
        """Process one captured packet. Non-TCP packets are ignored."""
        if TCP not in packet or (IP not in packet and IPv6 not in packet):
            return
        self.packet_count += 1

        tcp = packet[TCP]
        key = FlowKey.from_packet(packet)
        flags = int(tcp.flags)
        payload = bytes(packet[Raw].load) if Raw in packet else b""

        flow = self._flows.get(key)
        if flow is None:
            if not payload and not flags & SYN:
                return
            flow = self._open(key)

        if flags & RST:
            self._complete(key)
            return

        if payload or flags & FIN:
            run = flow.tracker.track(tcp.seq, payload, syn=bool(flags & SYN))
            if run is not None:
                when = datetime.fromtimestamp(float(packet.time), tz=timezone.utc)
                flow.conversation.on_segments(when, [run])
        elif flags & SYN:
            flow.tracker.track(tcp.seq, b"", syn=True)

        if flags & FIN:
            self._complete(key)

    def shovel_file(self, path: str | PathLike[str]) -> int:
        """Feed every packet of a pcap or pcapng file.

        Returns:
            Number of TCP packets read from the file
        """
        logger.info("Reading %s", path)
        before = self.packet_count
        with PcapReader(str(path)) as reader:
            for packet in reader:
                self.feed(packet)
        return self.packet_count - before

    def close(self) -> None:
        """Complete every open conversation and wait for all decoders."""
        for key in list(self._flows):
            self._complete(key)
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        logger.info("%d flows decoded from %d packets", self.flow_count, self.packet_count)
