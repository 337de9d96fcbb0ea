"""Monitor the load of one or more CAN buses."""

from __future__ import annotations

import getopt
import os
import re
import select
import socket
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .canframelen import CAN_MTU, CanFrame, CflMode, can_frame_length
from .terminal import ATTRESET, CLR_SCREEN, CSR_HOME, FGBLUE, FGRED

MAXSOCK = 16  # max. number of CAN interfaces given on the command line
IFNAMSIZ = 16
PERCENTRES = 5  # resolution in percent for the bargraph
NUMBAR = 100 // PERCENTRES  # number of bargraph elements
MAX_BITRATE = 1000000

_MODE_TEXT = {
    CflMode.NO_BITSTUFFING: "(ignore bitstuffing)",
    CflMode.WORSTCASE: "(worst case bitstuffing)",
    CflMode.EXACT: "(exact bitstuffing)",
}

_ATOI = re.compile(r"\s*([+-]?\d+)")


@dataclass
class BusStats:
    """Per-interface counters collected during one measurement interval."""

    devname: str
    bitrate: int
    recv_frames: int = 0
    recv_bits_total: int = 0
    recv_bits_payload: int = 0
    bitrate_text: str = field(default="", compare=False)

    @property
    def bitrate_width(self) -> int:
        return len(self.bitrate_text) if self.bitrate_text else len(str(self.bitrate))

    def record(self, frame: CanFrame, mode: CflMode | int = CflMode.WORSTCASE) -> None:
        """Account for one received classic CAN frame."""
        self.recv_frames += 1
        self.recv_bits_payload += frame.len * 8
        self.recv_bits_total += can_frame_length(frame, mode, CAN_MTU)

    def percent(self) -> int:
        """Bus load of the interval in percent (may exceed 100)."""
        if not self.bitrate:
            return 0
        return (self.recv_bits_total * 100) // self.bitrate

    def reset(self) -> None:
        """Clear the counters for the next interval."""
        self.recv_frames = 0
        self.recv_bits_total = 0
        self.recv_bits_payload = 0


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def parse_interface_spec(spec: str) -> BusStats:
    """Parse '<ifname>@<bitrate>' into fresh statistics for that interface."""
    if len(spec) >= IFNAMSIZ + len("@1000000") + 1 + 1:
        raise ValueError(f"name of CAN device '{spec}' is too long!")
    name, sep, rate_text = spec.partition("@")
    if not sep:
        raise ValueError(f"missing '@<bitrate>' in '{spec}'")
    if len(name) >= IFNAMSIZ:
        raise ValueError(f"name of CAN device '{spec}' is too long!")
    bitrate = _atoi(rate_text)
    if bitrate <= 0 or bitrate > MAX_BITRATE:
        raise ValueError(f"invalid bitrate for CAN device '{spec}'!")
    return BusStats(devname=name, bitrate=bitrate, bitrate_text=rate_text)


def format_stats(
    stats: Iterable[BusStats],
    mode: CflMode | int = CflMode.WORSTCASE,
    prg: str = "canbusload",
    now: datetime | None = None,
    redraw: bool = False,
    timestamp: bool = False,
    color: bool = False,
    bargraph: bool = False,
) -> str:
    """Render the collected statistics of one interval as text."""
    stats = list(stats)
    parts = []
    if redraw:
        parts.append(CSR_HOME)
    if timestamp:
        when = now if now is not None else datetime.now()
        try:
            mode_text = _MODE_TEXT[CflMode(mode)]
        except ValueError:
            mode_text = "(unknown bitstuffing)"
        parts.append(f"{prg} {when:%Y-%m-%d %H:%M:%S} {mode_text}\n")

    name_width = max((len(st.devname) for st in stats), default=0)
    rate_width = max((st.bitrate_width for st in stats), default=0)

    for index, st in enumerate(stats):
        if color:
            parts.append(FGRED if index % 2 else FGBLUE)
        percent = st.percent()
        parts.append(
            f" {st.devname:>{name_width}}@{st.bitrate:<{rate_width}d}"
            f" {st.recv_frames:5d} {st.recv_bits_total:7d}"
            f" {st.recv_bits_payload:6d} {percent:3d}%"
        )
        if bargraph:
            filled = min(percent, 100) // PERCENTRES
            parts.append(" |" + "X" * filled + "." * (NUMBAR - filled) + "|")
        if color:
            parts.append(ATTRESET)
        parts.append("\n")
    parts.append("\n")
    return "".join(parts)


def _usage(prg: str) -> str:
    return (
        f"{prg} - monitor CAN bus load.\n"
        f"\nUsage: {prg} [options] <CAN interface>+\n"
        f"  (use CTRL-C to terminate {prg})\n\n"
        "Options:\n"
        "         -t  (show current time on the first line)\n"
        "         -c  (colorize lines)\n"
        f"         -b  (show bargraph in {PERCENTRES}% resolution)\n"
        "         -r  (redraw the terminal - similar to top)\n"
        "         -i  (ignore bitstuffing in bandwidth calculation)\n"
        "         -e  (exact calculation of stuffed bits)\n"
        "\n"
        f"Up to {MAXSOCK} CAN interfaces with mandatory bitrate can be specified on the \n"
        "commandline in the form: <ifname>@<bitrate>\n\n"
        "The bitrate is mandatory as it is needed to know the CAN bus bitrate to\n"
        "calculate the bus load percentage based on the received CAN frames.\n"
        "Due to the bitstuffing estimation the calculated busload may exceed 100%.\n"
        "For each given interface the data is presented in one line which contains:\n\n"
        "(interface) (received CAN frames) (used bits total) (used bits for payload)\n"
        "\nExamples:\n"
        "\nuser$> canbusload can0@100000 can1@500000 can2@500000 can3@500000 -r -t -b -c\n\n"
        f"{prg} 2014-02-01 21:13:16 (worst case bitstuffing)\n"
        " can0@100000   805   74491  36656  74% |XXXXXXXXXXXXXX......|\n"
        " can1@500000   796   75140  37728  15% |XXX.................|\n"
        " can2@500000     0       0      0   0% |....................|\n"
        " can3@500000    47    4633   2424   0% |....................|\n"
        "\n"
    )


def main(argv: list[str] | None = None) -> int:
    """Command line entry point; returns the exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    prg = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "canbusload"

    try:
        opts, rest = getopt.gnu_getopt(args, "rtbcieh?")
    except getopt.GetoptError:
        sys.stderr.write(_usage(prg))
        return 1

    redraw = timestamp = color = bargraph = False
    mode = CflMode.WORSTCASE
    for opt, _value in opts:
        if opt == "-r":
            redraw = True
        elif opt == "-t":
            timestamp = True
        elif opt == "-b":
            bargraph = True
        elif opt == "-c":
            color = True
        elif opt == "-i":
            mode = CflMode.NO_BITSTUFFING
        elif opt == "-e":
            mode = CflMode.EXACT
        else:
            sys.stderr.write(_usage(prg))
            return 1

    if not rest:
        sys.stderr.write(_usage(prg))
        return 0

    if len(rest) > MAXSOCK:
        print(f"More than {MAXSOCK} CAN devices given on commandline!")
        return 1

    stats = []
    for spec in rest:
        if "@" not in spec and len(spec) < IFNAMSIZ + len("@1000000") + 2:
            sys.stderr.write(_usage(prg))
            return 1
        try:
            stats.append(parse_interface_spec(spec))
        except ValueError as exc:
            print(exc)
            return 1

    sockets: list[socket.socket] = []
    try:
        for st in stats:
            try:
                sock = socket.socket(socket.AF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
            except OSError as exc:
                print(f"socket: {exc}", file=sys.stderr)
                return 1
            sockets.append(sock)
            try:
                sock.bind((st.devname,))
            except OSError as exc:
                print(f"bind: {exc}", file=sys.stderr)
                return 1

        by_socket = dict(zip(sockets, stats))
        out = sys.stdout
        if redraw:
            out.write(CLR_SCREEN)
        next_tick = time.monotonic() + 1.0

        while True:
            timeout = max(0.0, next_tick - time.monotonic())
            ready, _, _ = select.select(sockets, [], [], timeout)
            for sock in ready:
                try:
                    raw = sock.recv(CAN_MTU)
                except OSError as exc:
                    print(f"read: {exc}", file=sys.stderr)
                    return 1
                if len(raw) < CAN_MTU:
                    print("read: incomplete CAN frame", file=sys.stderr)
                    return 1
                try:
                    frame = CanFrame.from_bytes(raw[:CAN_MTU])
                except ValueError:
                    continue
                by_socket[sock].record(frame, mode)

            if time.monotonic() >= next_tick:
                out.write(
                    format_stats(stats, mode, prg, None, redraw, timestamp, color, bargraph)
                )
                out.flush()
                for st in stats:
                    st.reset()
                next_tick += 1.0
    except KeyboardInterrupt:
        return 0
    finally:
        for sock in sockets:
            sock.close()


if __name__ == "__main__":
    sys.exit(main())