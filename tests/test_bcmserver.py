import struct

import pytest

from canutils import bcmserver
from canutils.bcmserver import (
    BcmCommand,
    CommandAssembler,
    ProtocolError,
    format_rx_message,
    parse_command,
)
from canutils.canframelen import CAN_MTU, CanFrame


def test_parse_add_command():
    cmd = parse_command("< vcan1 A 1 0 123 8 11 22 33 44 55 66 77 88 >")
    assert cmd.ifname == "vcan1"
    assert cmd.command == "A"
    assert (cmd.ival_sec, cmd.ival_usec) == (1, 0)
    assert cmd.can_id == 0x123
    assert cmd.data == bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88])


def test_parse_without_data():
    cmd = parse_command("< vcan1 D 0 0 123 0 >")
    assert cmd.command == "D"
    assert cmd.data == b""


def test_parse_rx_throttle():
    cmd = parse_command("< vcan1 R 1 500000 123 8 FF 00 F8 00 00 00 00 00 >")
    assert cmd.ival_usec == 500000
    assert cmd.data == bytes([0xFF, 0, 0xF8, 0, 0, 0, 0, 0])


@pytest.mark.parametrize(
    "text",
    [
        "< vcan1 A 0 0 123 9 1 2 3 4 5 6 7 8 9 >",
        "< vcan1 A 0 0 123 3 11 22 >",
        "< vcan1 A 0 0 123 1 11 22 >",
        "< vcan1 A 0 0 >",
        "vcan1 A 0 0 123 0 >",
        "< vcan0123456789ABC S 0 0 1 0 >",
    ],
)
def test_parse_rejects_malformed(text):
    with pytest.raises(ProtocolError):
        parse_command(text)


@pytest.mark.parametrize(
    "command, expected",
    [
        ("S", (bcmserver.TX_SEND, 0)),
        ("A", (bcmserver.TX_SETUP, bcmserver.SETTIMER | bcmserver.STARTTIMER)),
        ("U", (bcmserver.TX_SETUP, 0)),
        ("D", (bcmserver.TX_DELETE, 0)),
        ("R", (bcmserver.RX_SETUP, bcmserver.SETTIMER)),
        ("F", (bcmserver.RX_SETUP, bcmserver.RX_FILTER_ID | bcmserver.SETTIMER)),
        ("X", (bcmserver.RX_DELETE, 0)),
    ],
)
def test_opcode_and_flags(command, expected):
    cmd = parse_command(f"< vcan1 {command} 0 0 123 0 >")
    assert cmd.opcode_and_flags() == expected


def test_unknown_command_raises():
    cmd = parse_command("< vcan1 Q 0 0 123 0 >")
    with pytest.raises(ProtocolError):
        cmd.opcode_and_flags()
    with pytest.raises(ProtocolError):
        cmd.to_bcm_message()


def test_bcm_message_layout():
    cmd = parse_command("< vcan1 A 0 20000 123 4 42 42 42 42 >")
    raw = cmd.to_bcm_message()
    head = struct.Struct("@3I4l2I0q")
    assert len(raw) == head.size + CAN_MTU
    opcode, flags, count, s1, u1, s2, u2, can_id, nframes = head.unpack_from(raw)
    assert (opcode, flags) == cmd.opcode_and_flags()
    assert (count, s1, u1) == (0, 0, 0)
    assert (s2, u2) == (0, 20000)
    assert can_id == 0x123
    assert nframes == 1
    frame = CanFrame.from_bytes(raw[head.size:])
    assert frame.can_id == 0x123
    assert frame.data == b"\x42" * 4


def test_format_rx_message_example():
    message = format_rx_message("vcan1", 0x123, bytes([0x11, 0x22, 0x33, 0x44]))
    assert message == b"< vcan1 123 4 11 22 33 44 >\0"


def test_format_rx_message_pads_id_and_ends_with_nul():
    message = format_rx_message("can0", 0x5, b"")
    assert message.endswith(b">\0")
    assert message.split()[2] == b"005"


def test_assembler_across_chunks_and_garbage():
    asm = CommandAssembler()
    assert asm.feed(b"junk< vcan1 S 0 ") == []
    assert asm.feed(b"0 123 0 >< can0") == ["< vcan1 S 0 0 123 0 >"]
    assert asm.feed(" X 0 0 1 0 >") == ["< can0 X 0 0 1 0 >"]


def test_assembler_roundtrip_with_parse():
    text = "< vcan1 U 0 0 123 3 11 22 33 >"
    (got,) = CommandAssembler().feed(text.encode())
    assert parse_command(got) == BcmCommand("vcan1", "U", 0, 0, 0x123, b"\x11\x22\x33")


def test_assembler_length_limit():
    asm = CommandAssembler()
    longest = "<" + "a" * (bcmserver.MAXLEN - 3) + ">"
    assert asm.feed(longest) == [longest]
    too_long = "<" + "a" * (bcmserver.MAXLEN - 2) + ">"
    assert asm.feed(too_long) == []
    assert asm.feed("<x>") == ["<x>"]


def test_assembler_drops_overflowing_command():
    asm = CommandAssembler()
    assert asm.feed("<" + "a" * 200 + ">") == []
    assert asm.feed("<ok>") == ["<ok>"]