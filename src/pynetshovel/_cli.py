"""Command-line front end: dump every TCP utterance found in packet captures.

Each pcap or pcapng file named on the command line is read in turn. Every
direction of every TCP flow is printed utterance by utterance, with hexdumps
showing any bytes the capture missed.
"""

from __future__ import annotations

import argparse
import logging
import sys

from scapy.error import Scapy_Exception

from pynetshovel import simple
from pynetshovel.conversation import QUEUE_CAPACITY
from pynetshovel.shovel import Shovel

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def shovel_files(paths: list[str], capacity: int = QUEUE_CAPACITY) -> int:
    """Run the simple decoder over every capture file.

    Args:
        paths: Capture files to read, in order
        capacity: Utterances buffered per conversation

    Returns:
        Exit code (0 for success, 1 if any file could not be read)
    """
    exit_code = 0
    with Shovel(simple.decode, capacity=capacity) as shovel:
        for path in paths:
            print(f"[*] Reading {path}...", file=sys.stderr)
            try:
                count = shovel.shovel_file(path)
            except (OSError, Scapy_Exception) as e:
                print(f"[!] Error reading {path}: {e}", file=sys.stderr)
                exit_code = 1
                continue
            print(f"[*] {count} TCP packets in {path}", file=sys.stderr)
    return exit_code


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Dump every TCP utterance in packet captures, dropped data included"
    )
    parser.add_argument("pcaps", nargs="+", help="Packet capture files (pcap or pcapng)")
    parser.add_argument(
        "--capacity",
        type=int,
        default=QUEUE_CAPACITY,
        help=f"Utterances buffered per conversation (default: {QUEUE_CAPACITY})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log reassembly details")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
    )

    if args.capacity < 1:
        print("[!] Error: --capacity must be at least 1", file=sys.stderr)
        sys.exit(1)

    try:
        sys.exit(shovel_files(args.pcaps, capacity=args.capacity))
    except KeyboardInterrupt:
        print("\n[*] Interrupted by user", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
