"""Full-duplex CAN test: echo frames as the device under test or generate and check them."""

from __future__ import annotations

import errno
import getopt
import os
import socket
import sys
import time
from typing import TextIO

from .canframelen import CAN_MTU, CAN_RTR_FLAG, CanFrame

CAN_MSG_ID = 0x77
CAN_MSG_LEN = 8
CAN_MSG_COUNT = 50
CAN_MSG_WAIT = 27


class EchoError(RuntimeError):
    """Sending or receiving a test frame failed."""


def format_frame(frame: CanFrame, inc: int = 0) -> str:
    """One line describing the frame with inc added to id and data bytes."""
    text = f"{(frame.can_id + inc) & 0xFFFFFFFF:04x}: "
    if frame.can_id & CAN_RTR_FLAG:
        return text + "remote request"
    return text + f"[{frame.len}]" + "".join(f" {(b + inc) & 0xFF:02x}" for b in frame.data)


def _compare_report(reason: str, expected: CanFrame, received: CanFrame, inc: int) -> str:
    return (
        f"{reason}\n"
        f"expected: {format_frame(expected, inc)}\n"
        f"received: {format_frame(received, 0)}\n"
    )


def compare_frame(expected: CanFrame, received: CanFrame, inc: int = 0) -> str:
    """Report of the differences between received and expected+inc; empty if equal."""
    if received.can_id != (expected.can_id + inc) & 0xFFFFFFFF:
        return _compare_report("Message ID mismatch!", expected, received, inc)
    if received.len != expected.len:
        return _compare_report("Message length mismatch!", expected, received, inc)
    return "".join(
        _compare_report(f"Databyte {i:x} mismatch!", expected, received, inc)
        for i, (got, want) in enumerate(zip(received.data, expected.data))
        if got != (want + inc) & 0xFF
    )


def check_frame(frame: CanFrame) -> str:
    """Report what makes the frame differ from a generated test frame; empty if none."""
    report = []
    if frame.can_id != CAN_MSG_ID:
        report.append(f"unexpected Message ID 0x{frame.can_id:04x}!\n")
    if frame.len != CAN_MSG_LEN:
        report.append(f"unexpected Message length {frame.len}!\n")
    data = frame.data
    if any(cur != (prev + 1) & 0xFF for prev, cur in zip(data, data[1:])):
        report.append("Frame inconsistent!\n")
        report.append(format_frame(frame, 0) + "\n")
    return "".join(report)


def inc_frame(frame: CanFrame) -> CanFrame:
    """The frame with its id and every data byte incremented by one."""
    return CanFrame(
        can_id=(frame.can_id + 1) & 0xFFFFFFFF,
        data=bytes((b + 1) & 0xFF for b in frame.data),
        flags=frame.flags,
        len8_dlc=frame.len8_dlc,
        fd=frame.fd,
    )


def _recv_frame(sock) -> CanFrame:
    try:
        raw = sock.recv(CAN_MTU)
    except OSError as exc:
        raise EchoError(f"recv failed: {exc}") from exc
    if len(raw) != CAN_MTU:
        raise EchoError(f"recv returned {len(raw)}")
    try:
        return CanFrame.from_bytes(raw)
    except ValueError as exc:
        raise EchoError(str(exc)) from exc


def _send_frame(sock, frame: CanFrame, verbose: int, out: TextIO) -> None:
    raw = frame.to_bytes()
    while True:
        try:
            sent = sock.send(raw)
        except OSError as exc:
            if exc.errno != errno.ENOBUFS:
                raise EchoError(f"send failed: {exc}") from exc
            if verbose:
                out.write("N")
                out.flush()
            continue
        if sent != len(raw):
            raise EchoError(f"send returned {sent}")
        return


def _echo_progress(value: int, out: TextIO) -> None:
    if value == 0xFF:
        out.write(".")
        out.flush()


def echo_dut(sock, verbose: int = 0, out: TextIO | None = None) -> None:
    """Send back every received frame with id and data incremented.

    Runs until receiving or sending fails, which raises EchoError.
    """
    out = out if out is not None else sys.stdout
    frame_count = 0
    while True:
        frame = _recv_frame(sock)
        frame_count += 1
        if verbose == 1:
            _echo_progress(frame.data[0] if frame.data else 0, out)
        elif verbose > 1:
            out.write(format_frame(frame, 0) + "\n")

        out.write(check_frame(frame))
        _send_frame(sock, inc_frame(frame), verbose, out)

        # force interlacing of the frames sent by the DUT and the host
        if frame_count == CAN_MSG_WAIT:
            frame_count = 0
            time.sleep(0.003)


def echo_gen(
    sock,
    inflight_count: int = CAN_MSG_COUNT,
    test_loops: int = 0,
    verbose: int = 0,
    out: TextIO | None = None,
) -> int:
    """Generate test frames and check the echoed answers; returns the loop count.

    Stops at the first mismatch, after test_loops answers (0 = unlimited),
    or raises EchoError when the socket fails.
    """
    out = out if out is not None else sys.stdout
    if inflight_count < 1:
        raise ValueError("inflight_count must be at least 1")

    tx_frames: list[CanFrame | None] = [None] * inflight_count
    recv_tx = [False] * inflight_count
    counter = 0
    send_pos = recv_rx_pos = recv_tx_pos = unprocessed = loops = 0
    running = True

    while running:
        if unprocessed < inflight_count:
            frame = CanFrame(
                can_id=CAN_MSG_ID,
                data=bytes((counter + i) & 0xFF for i in range(CAN_MSG_LEN)),
            )
            tx_frames[send_pos] = frame
            recv_tx[send_pos] = False
            _send_frame(sock, frame, verbose, out)

            send_pos = (send_pos + 1) % inflight_count
            unprocessed += 1
            if verbose == 1:
                _echo_progress(counter, out)
            counter = (counter + 1) & 0xFF

            time.sleep(0.003 if counter % 33 == 0 else 0.001)
            continue

        rx_frame = _recv_frame(sock)
        if verbose > 1:
            out.write(format_frame(rx_frame, 0) + "\n")

        if rx_frame.can_id == CAN_MSG_ID:
            report = compare_frame(tx_frames[recv_tx_pos], rx_frame, 0)
            if report:
                out.write(report)
                running = False
            recv_tx[recv_tx_pos] = True
            recv_tx_pos = (recv_tx_pos + 1) % inflight_count
            continue

        if not recv_tx[recv_rx_pos]:
            out.write("RX before TX!\n" + format_frame(rx_frame, 0) + "\n")
            running = False
        report = compare_frame(tx_frames[recv_rx_pos], rx_frame, 1)
        if report:
            out.write(report)
            running = False
        recv_rx_pos = (recv_rx_pos + 1) % inflight_count

        loops += 1
        if test_loops and loops >= test_loops:
            break
        unprocessed -= 1

    out.write(f"\nTest messages sent and received: {loops}\n")
    return loops


def _usage(prg: str) -> str:
    return (
        f"{prg} - Full-duplex test program (DUT and host part).\n"
        f"Usage: {prg} [options] <can-interface>\n"
        "\n"
        "Options:\n"
        "         -v       (low verbosity)\n"
        "         -vv      (high verbosity)\n"
        "         -g       (generate messages)\n"
        "         -l COUNT (test loop count)\n"
        f"         -f COUNT (number of frames in flight, default: {CAN_MSG_COUNT})\n"
        "\n"
        "With the option '-g' CAN messages are generated and checked\n"
        "on <can-interface>, otherwise all messages received on the\n"
        "<can-interface> are sent back incrementing the CAN id and\n"
        "all data bytes. The program can be aborted with ^C.\n"
        "\n"
        "Examples:\n"
        "\ton DUT:\n"
        f"{prg} -v can0\n"
        "\ton Host:\n"
        f"{prg} -g -v can2\n"
    )


def _atoi(text: str) -> int:
    digits = text.strip()
    sign = -1 if digits.startswith("-") else 1
    digits = digits.lstrip("+-")
    number = ""
    for ch in digits:
        if not ch.isdigit():
            break
        number += ch
    return sign * int(number) if number else 0


def main(argv: list[str] | None = None) -> int:
    """Command line entry point; returns the exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    prg = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "canfdtest"

    try:
        opts, rest = getopt.gnu_getopt(args, "f:gl:v?")
    except getopt.GetoptError:
        sys.stderr.write(_usage(prg))
        return 1

    verbose = 0
    inflight_count = CAN_MSG_COUNT
    test_loops = 0
    generate = False
    for opt, value in opts:
        if opt == "-v":
            verbose += 1
        elif opt == "-f":
            inflight_count = _atoi(value)
        elif opt == "-l":
            test_loops = _atoi(value)
        elif opt == "-g":
            generate = True
        else:
            sys.stderr.write(_usage(prg))
            return 1

    if len(rest) != 1:
        sys.stderr.write(_usage(prg))
        return 1
    ifname = rest[0]

    family, sock_type, proto = socket.AF_CAN, socket.SOCK_RAW, socket.CAN_RAW
    print(
        f"interface = {ifname}, family = {int(family)}, "
        f"type = {int(sock_type)}, proto = {int(proto)}"
    )

    try:
        sock = socket.socket(family, sock_type, proto)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    with sock:
        if generate:
            try:
                sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_RECV_OWN_MSGS, 1)
            except OSError as exc:
                print(f"setsockopt: {exc}", file=sys.stderr)
                return 1
        try:
            socket.if_nametoindex(ifname)
        except OSError as exc:
            print(f"if_nametoindex: {exc}", file=sys.stderr)
            return 1
        try:
            sock.bind((ifname,))
        except OSError as exc:
            print(f"bind: {exc}", file=sys.stderr)
            return 1

        status = 0
        try:
            if generate:
                echo_gen(sock, inflight_count, test_loops, verbose)
            else:
                echo_dut(sock, verbose)
        except EchoError as exc:
            print(exc, file=sys.stderr)
            status = 1
        except KeyboardInterrupt:
            if verbose:
                print("Exiting...")
            raise

    if verbose:
        print("Exiting...")
    return status


if __name__ == "__main__":
    sys.exit(main())