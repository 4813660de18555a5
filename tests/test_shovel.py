from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

import pytest
from scapy.layers.inet import IP, TCP, UDP
from scapy.layers.inet6 import IPv6
from scapy.layers.l2 import Ether
from scapy.packet import Raw
from scapy.utils import wrpcap

from pynetshovel.conversation import NEXT_UTTERANCE, Run
from pynetshovel.errors import ShortReadError
from pynetshovel.shovel import SEQ_MODULUS, FlowKey, SegmentTracker, Shovel

CLIENT = FlowKey("10.0.0.1", 1234, "10.0.0.2", 80)
ETHER = Ether(src="02:00:00:00:00:01", dst="02:00:00:00:00:02")


def segment(seq, flags="PA", load=b"", when=1700000000.0, src=CLIENT):
    pkt = IP(src=src.src, dst=src.dst) / TCP(sport=src.sport, dport=src.dport, flags=flags, seq=seq)
    if load:
        pkt = pkt / Raw(load=load)
    pkt.time = when
    return pkt


class Recorder:
    """Decoder that keeps every conversation it sees."""

    def __init__(self):
        self.lock = threading.Lock()
        self.sessions = []

    def __call__(self, flow, conversation):
        utterances = list(conversation)
        with self.lock:
            self.sessions.append((flow, utterances))

    def payloads(self, flow):
        """Materialized utterances of each conversation on flow, sorted."""
        with self.lock:
            return sorted(
                [u.data.materialize() for u in utterances]
                for key, utterances in self.sessions
                if key == flow
            )

    def utterances(self, flow):
        with self.lock:
            [utterances] = [u for key, u in self.sessions if key == flow]
        return utterances


def test_flow_key():
    pkt = segment(1)
    key = FlowKey.from_packet(pkt)
    assert key == CLIENT
    assert key != FlowKey("10.0.0.2", 80, "10.0.0.1", 1234)
    assert str(key) == "10.0.0.1:1234 → 10.0.0.2:80"


def test_flow_key_ipv6():
    pkt = IPv6(src="::1", dst="::2") / TCP(sport=5, dport=6)
    assert FlowKey.from_packet(pkt) == FlowKey("::1", 5, "::2", 6)


def test_tracker_in_order():
    tracker = SegmentTracker()
    assert tracker.track(100, b"abc") == Run(0, b"abc")
    assert tracker.track(103, b"de") == Run(0, b"de")
    assert tracker.next_seq == 105


def test_tracker_gap():
    tracker = SegmentTracker()
    tracker.track(100, b"abc")
    assert tracker.track(110, b"x") == Run(7, b"x")
    assert tracker.next_seq == 111


def test_tracker_drops_retransmission():
    tracker = SegmentTracker()
    tracker.track(100, b"abcdef")
    assert tracker.track(100, b"abc") is None
    assert tracker.track(103, b"def") is None
    assert tracker.next_seq == 106


def test_tracker_trims_overlap():
    tracker = SegmentTracker()
    tracker.track(100, b"abc")
    assert tracker.track(101, b"bcde") == Run(0, b"de")
    assert tracker.next_seq == 105


def test_tracker_syn_consumes_one():
    tracker = SegmentTracker()
    assert tracker.track(1000, b"", syn=True) is None
    assert tracker.track(1001, b"a") == Run(0, b"a")


def test_tracker_wraps():
    tracker = SegmentTracker()
    tracker.track(SEQ_MODULUS - 2, b"abcd")
    assert tracker.next_seq == 2
    assert tracker.track(2, b"e") == Run(0, b"e")
    assert tracker.track(SEQ_MODULUS - 1, b"bcdef") == Run(0, b"f")


def test_tracker_gap_before_fin():
    tracker = SegmentTracker()
    tracker.track(100, b"abc")
    assert tracker.track(103, b"") is None
    assert tracker.track(108, b"") == Run(5, b"")


def test_feed():
    recorder = Recorder()
    with Shovel(recorder) as shovel:
        shovel.feed(segment(100, flags="S", when=1.0))
        shovel.feed(segment(101, load=b"hello", when=2.0))
        shovel.feed(segment(111, load=b"world", when=3.0))
        shovel.feed(segment(116, flags="FA", when=4.0))

    assert shovel.packet_count == 4
    assert shovel.flow_count == 1
    utterances = recorder.utterances(CLIENT)
    assert [u.data.as_text("-") for u in utterances] == ["hello", "-----world"]
    assert utterances[0].when == datetime.fromtimestamp(2.0, tz=timezone.utc)
    assert utterances[1].data.missing() == 5


def test_feed_separates_directions():
    recorder = Recorder()
    server = FlowKey(CLIENT.dst, CLIENT.dport, CLIENT.src, CLIENT.sport)
    with Shovel(recorder) as shovel:
        shovel.feed(segment(1, load=b"ping"))
        shovel.feed(segment(9000, load=b"pong", src=server))
        shovel.feed(segment(5, load=b"ping"))

    assert recorder.payloads(CLIENT) == [[b"ping", b"ping"]]
    assert recorder.payloads(server) == [[b"pong"]]


def test_feed_ignores_other_traffic():
    recorder = Recorder()
    with Shovel(recorder) as shovel:
        shovel.feed(IP() / UDP() / Raw(load=b"dns"))
        shovel.feed(segment(1, flags="A"))
    assert shovel.packet_count == 1
    assert shovel.flow_count == 0
    assert recorder.sessions == []


def test_reset_completes_flow():
    recorder = Recorder()
    with Shovel(recorder) as shovel:
        shovel.feed(segment(1, load=b"abc"))
        shovel.feed(segment(4, flags="R"))
        shovel.feed(segment(4, flags="A"))
    assert recorder.payloads(CLIENT) == [[b"abc"]]


def test_reused_addresses_start_new_conversation():
    recorder = Recorder()
    with Shovel(recorder) as shovel:
        shovel.feed(segment(100, flags="S"))
        shovel.feed(segment(101, load=b"first"))
        shovel.feed(segment(106, flags="FA"))
        shovel.feed(segment(5000, flags="S"))
        shovel.feed(segment(5001, load=b"second"))
        shovel.feed(segment(5007, flags="FA"))

    assert shovel.flow_count == 2
    assert recorder.payloads(CLIENT) == [[b"first"], [b"second"]]


def test_data_after_reset_starts_new_conversation():
    recorder = Recorder()
    with Shovel(recorder) as shovel:
        shovel.feed(segment(1, load=b"abc"))
        shovel.feed(segment(4, flags="R"))
        shovel.feed(segment(900, load=b"late"))

    assert recorder.payloads(CLIENT) == [[b"abc"], [b"late"]]


def test_failing_decoder_does_not_block(caplog):
    def decoder(flow, conversation):
        conversation.read(NEXT_UTTERANCE)
        raise ShortReadError(4, 0)

    with caplog.at_level(logging.WARNING, logger="pynetshovel.shovel"):
        with Shovel(decoder, capacity=1) as shovel:
            for i in range(20):
                shovel.feed(segment(1 + i, load=b"x"))

    assert "decode failed" in caplog.text
    assert "Short read" in caplog.text


def test_crashing_decoder_is_logged(caplog):
    def decoder(flow, conversation):
        raise KeyError("boom")

    with caplog.at_level(logging.ERROR, logger="pynetshovel.shovel"):
        with Shovel(decoder) as shovel:
            shovel.feed(segment(1, load=b"x"))

    assert "decoder crashed" in caplog.text


def test_shovel_file(tmp_path):
    packets = [
        ETHER / segment(100, flags="S", when=1.0),
        ETHER / segment(101, load=b"GET / HTTP/1.0\r\n\r\n", when=2.0),
        ETHER / IP() / UDP() / Raw(load=b"noise"),
        ETHER / segment(119, flags="FA", when=3.0),
    ]
    for pkt in packets:
        pkt.time = 1.0
    path = tmp_path / "capture.pcap"
    wrpcap(str(path), packets)

    recorder = Recorder()
    with Shovel(recorder) as shovel:
        assert shovel.shovel_file(path) == 3

    [utterance] = recorder.utterances(CLIENT)
    assert utterance.data.materialize() == b"GET / HTTP/1.0\r\n\r\n"


def test_shovel_file_missing(tmp_path):
    with Shovel(Recorder()) as shovel:
        with pytest.raises(OSError):
            shovel.shovel_file(tmp_path / "nope.pcap")
