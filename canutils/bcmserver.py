"""TCP server that turns ASCII commands into CAN broadcast manager jobs.

Commands arrive as ``< interface command ival_s ival_us can_id dlc [data]* >``
where only ``can_id`` and ``data`` are hexadecimal.  Transmit commands are
'A'dd, 'U'pdate, 'D'elete and 'S'end; receive commands are 'R'eceive setup,
'F'ilter id setup and 'X' for delete.  Received CAN messages are sent back
as ``< interface can_id dlc [data]* >`` followed by a NUL byte.
"""

from __future__ import annotations

import re
import select
import socket
import struct
import sys
import threading
import time
from dataclasses import dataclass

from .canframelen import CAN_MAX_DLEN, CAN_MTU, CanFrame

MAXLEN = 100
PORT = 28600
IFNAMSIZ = 16

# broadcast manager opcodes
TX_SETUP = 1
TX_DELETE = 2
TX_READ = 3
TX_SEND = 4
RX_SETUP = 5
RX_DELETE = 6
RX_READ = 7

# broadcast manager flags
SETTIMER = 0x0001
STARTTIMER = 0x0002
TX_COUNTEVT = 0x0004
TX_ANNOUNCE = 0x0008
TX_CP_CAN_ID = 0x0010
RX_FILTER_ID = 0x0020

# opcode, flags, count, ival1 (sec, usec), ival2 (sec, usec), can_id, nframes;
# the frames that follow are 8 byte aligned
BCM_HEAD = struct.Struct("@3I4l2I0q")

_LONG_BITS = struct.calcsize("l") * 8
_ULONG_MASK = (1 << _LONG_BITS) - 1

_COMMANDS = {
    "S": (TX_SEND, 0),
    "A": (TX_SETUP, SETTIMER | STARTTIMER),
    "U": (TX_SETUP, 0),
    "D": (TX_DELETE, 0),
    "R": (RX_SETUP, SETTIMER),
    "F": (RX_SETUP, RX_FILTER_ID | SETTIMER),
    "X": (RX_DELETE, 0),
}


class ProtocolError(ValueError):
    """A client command is malformed or unknown."""


def _signed_long(value: int) -> int:
    value &= _ULONG_MASK
    return value - (1 << _LONG_BITS) if value >> (_LONG_BITS - 1) else value


@dataclass(frozen=True)
class BcmCommand:
    """One parsed client command."""

    ifname: str
    command: str
    ival_sec: int = 0
    ival_usec: int = 0
    can_id: int = 0
    data: bytes = b""

    def opcode_and_flags(self) -> tuple[int, int]:
        """Broadcast manager opcode and flags for this command."""
        try:
            return _COMMANDS[self.command]
        except KeyError:
            raise ProtocolError(f"unknown command '{self.command}'.") from None

    def to_bcm_message(self) -> bytes:
        """The broadcast manager message head followed by one CAN frame."""
        opcode, flags = self.opcode_and_flags()
        head = BCM_HEAD.pack(
            opcode,
            flags,
            0,
            0,
            0,
            _signed_long(self.ival_sec),
            _signed_long(self.ival_usec),
            self.can_id & 0xFFFFFFFF,
            1,
        )
        frame = CanFrame(can_id=self.can_id & 0xFFFFFFFF, data=self.data)
        return head + frame.to_bytes()


class CommandAssembler:
    """Collects '<' ... '>' delimited commands from a byte stream."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, data: bytes | str) -> list[str]:
        """Consume data and return the commands it completed, in order."""
        if isinstance(data, str):
            data = data.encode("latin-1")
        commands = []
        for byte in data:
            if not self._buf:
                if byte == ord("<"):
                    self._buf.append(byte)
                continue
            if len(self._buf) > MAXLEN - 2:
                # overlong command: drop it together with this byte
                self._buf.clear()
                continue
            self._buf.append(byte)
            if byte == ord(">"):
                commands.append(self._buf.decode("latin-1"))
                self._buf.clear()
        return commands


_WS = re.compile(r"\s*")
_DEC = re.compile(r"[+-]?\d+")
_HEX = re.compile(r"[+-]?(?:0[xX](?=[0-9a-fA-F]))?[0-9a-fA-F]+")


class _Scanner:
    """Reads whitespace separated fields the way a scanf pattern does."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def _skip(self) -> None:
        self.pos = _WS.match(self.text, self.pos).end()

    def literal(self, char: str) -> bool:
        if self.text.startswith(char, self.pos):
            self.pos += len(char)
            return True
        return False

    def word(self, maxlen: int) -> str | None:
        self._skip()
        match = re.compile(rf"\S{{1,{maxlen}}}").match(self.text, self.pos)
        if not match:
            return None
        self.pos = match.end()
        return match.group()

    def char(self) -> str | None:
        self._skip()
        if self.pos >= len(self.text):
            return None
        self.pos += 1
        return self.text[self.pos - 1]

    def _number(self, pattern: re.Pattern, base: int) -> int | None:
        self._skip()
        match = pattern.match(self.text, self.pos)
        if not match:
            return None
        self.pos = match.end()
        return int(match.group(), base)

    def decimal(self) -> int | None:
        return self._number(_DEC, 10)

    def hex(self) -> int | None:
        return self._number(_HEX, 16)


def parse_command(text: str) -> BcmCommand:
    """Parse '< ifname cmd ival_s ival_us can_id dlc [data]* >'."""
    scan = _Scanner(text)
    items: list = []
    if scan.literal("<"):
        readers = [
            lambda: scan.word(IFNAMSIZ - 1),
            scan.char,
            scan.decimal,
            scan.decimal,
            scan.hex,
            scan.decimal,
        ] + [scan.hex] * CAN_MAX_DLEN
        for reader in readers:
            value = reader()
            if value is None:
                break
            items.append(value)

    if len(items) < 6:
        raise ProtocolError(f"incomplete command {text!r}")
    dlc = items[5] & 0xFF
    if dlc > CAN_MAX_DLEN:
        raise ProtocolError(f"invalid data length {dlc}")
    if len(items) != 6 + dlc:
        raise ProtocolError(f"expected {dlc} data bytes in {text!r}")

    return BcmCommand(
        ifname=items[0],
        command=items[1],
        ival_sec=items[2] & _ULONG_MASK,
        ival_usec=items[3] & _ULONG_MASK,
        can_id=items[4] & 0xFFFFFFFF,
        data=bytes(value & 0xFF for value in items[6:]),
    )


def format_rx_message(ifname: str, can_id: int, data: bytes) -> bytes:
    """Message for the client about a received frame, NUL terminated."""
    text = f"< {ifname} {can_id & 0xFFFFFFFF:03X} {len(data)} "
    text += "".join(f"{byte:02X} " for byte in data)
    return (text + ">").encode("latin-1") + b"\0"


def _forward_rx(bcm: socket.socket, conn: socket.socket) -> None:
    raw, address = bcm.recvfrom(BCM_HEAD.size + CAN_MTU)
    if len(raw) < BCM_HEAD.size + CAN_MTU:
        return
    head = BCM_HEAD.unpack_from(raw)
    try:
        frame = CanFrame.from_bytes(raw[BCM_HEAD.size:BCM_HEAD.size + CAN_MTU])
    except ValueError:
        return
    ifname = address[0] if isinstance(address, tuple) and address else str(address)
    conn.sendall(format_rx_message(ifname, head[7], frame.data))


def _dispatch(bcm: socket.socket, cmd: BcmCommand) -> None:
    message = cmd.to_bcm_message()
    try:
        socket.if_nametoindex(cmd.ifname)
    except OSError:
        return
    bcm.sendto(message, (cmd.ifname,))


def serve_client(conn: socket.socket) -> None:
    """Relay between one TCP client and a broadcast manager socket.

    Returns when the client disconnects or sends an invalid command; the
    cyclic jobs end when the broadcast manager socket is closed.
    """
    try:
        bcm = socket.socket(socket.AF_CAN, socket.SOCK_DGRAM, socket.CAN_BCM)
    except OSError as exc:
        print(f"bcmsocket: {exc}", file=sys.stderr)
        return

    assembler = CommandAssembler()
    with bcm:
        try:
            bcm.connect(("",))  # any device, the interface is given per sendto
        except OSError as exc:
            print(f"connect: {exc}", file=sys.stderr)
            return

        while True:
            ready, _, _ = select.select([bcm, conn], [], [])
            if bcm in ready:
                _forward_rx(bcm, conn)
            if conn in ready:
                chunk = conn.recv(MAXLEN)
                if not chunk:
                    return
                for text in assembler.feed(chunk):
                    try:
                        cmd = parse_command(text)
                    except ProtocolError:
                        return
                    try:
                        cmd.opcode_and_flags()
                    except ProtocolError as exc:
                        print(exc)
                        return
                    _dispatch(bcm, cmd)


def _serve_and_close(conn: socket.socket) -> None:
    with conn:
        try:
            serve_client(conn)
        except OSError:
            pass


def main(argv: list[str] | None = None) -> int:
    """Listen on the server port and serve every client in its own thread."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    with listener:
        while True:
            try:
                listener.bind(("", PORT))
                break
            except OSError:
                print(".", end="", flush=True)
                time.sleep(0.1)
        try:
            listener.listen(3)
        except OSError as exc:
            print(f"listen: {exc}", file=sys.stderr)
            return 1

        try:
            while True:
                try:
                    conn, _addr = listener.accept()
                except InterruptedError:
                    continue
                except OSError as exc:
                    print(f"accept: {exc}", file=sys.stderr)
                    return 1
                threading.Thread(
                    target=_serve_and_close, args=(conn,), daemon=True
                ).start()
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    sys.exit(main())