"""CAN frames and the number of bits they occupy on the wire."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000

CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF

CAN_MAX_DLEN = 8
CANFD_MAX_DLEN = 64

CAN_MTU = 16
CANFD_MTU = 72

CANFD_BRS = 0x01
CANFD_ESI = 0x02

_HEADER = struct.Struct("=IBBBB")

_CRC_POLY = 0x4599
_CRC_MASK = 0x7FFF

# count of leading zeros in 5 bit numbers
_CLZ5 = (5, 4, 3, 3, 2, 2, 2, 2) + (1,) * 8 + (0,) * 16


class CflMode(enum.IntEnum):
    """How stuffed bits are accounted for in the frame length."""

    NO_BITSTUFFING = 0
    WORSTCASE = 1
    EXACT = 2


@dataclass
class CanFrame:
    """A classic CAN or CAN FD frame in SocketCAN layout."""

    can_id: int = 0
    data: bytes = b""
    flags: int = 0
    len8_dlc: int = 0
    fd: bool = False
    _max: int = field(init=False, repr=False, compare=False, default=CAN_MAX_DLEN)

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        self._max = CANFD_MAX_DLEN if self.fd else CAN_MAX_DLEN
        if len(self.data) > self._max:
            raise ValueError(
                f"payload of {len(self.data)} bytes exceeds {self._max} bytes"
            )
        if not 0 <= self.can_id <= 0xFFFFFFFF:
            raise ValueError(f"CAN id {self.can_id:#x} out of range")

    @property
    def len(self) -> int:
        """Payload length in bytes."""
        return len(self.data)

    @property
    def is_extended(self) -> bool:
        return bool(self.can_id & CAN_EFF_FLAG)

    @property
    def is_remote(self) -> bool:
        return bool(self.can_id & CAN_RTR_FLAG)

    @property
    def mtu(self) -> int:
        return CANFD_MTU if self.fd else CAN_MTU

    def to_bytes(self) -> bytes:
        """Encode the frame as a SocketCAN structure in host byte order."""
        if self.fd:
            header = _HEADER.pack(self.can_id, self.len, self.flags & 0xFF, 0, 0)
        else:
            header = _HEADER.pack(self.can_id, self.len, 0, 0, self.len8_dlc & 0xFF)
        return header + self.data.ljust(self._max, b"\0")

    @classmethod
    def from_bytes(cls, data: bytes) -> CanFrame:
        """Decode a 16 byte classic or 72 byte CAN FD SocketCAN structure."""
        raw = bytes(data)
        if len(raw) == CAN_MTU:
            fd, maxdlen = False, CAN_MAX_DLEN
        elif len(raw) == CANFD_MTU:
            fd, maxdlen = True, CANFD_MAX_DLEN
        else:
            raise ValueError(f"incomplete CAN frame of {len(raw)} bytes")
        can_id, length, flags, _res, len8_dlc = _HEADER.unpack_from(raw)
        if length > maxdlen:
            raise ValueError(f"invalid payload length {length}")
        payload = raw[_HEADER.size:_HEADER.size + length]
        if fd:
            return cls(can_id=can_id, data=payload, flags=flags, fd=True)
        return cls(can_id=can_id, data=payload, len8_dlc=len8_dlc)


def _bits(bitmap: bytes, start: int, end: int):
    """Yield the bits of bitmap in [start, end), most significant first."""
    for pos in range(start, end):
        yield (bitmap[pos // 8] >> (7 - pos % 8)) & 1


def _crc15(bitmap: bytes, start: int, end: int) -> int:
    crc = 0
    for bit in _bits(bitmap, start, end):
        feedback = ((crc >> 14) & 1) ^ bit
        crc = (crc << 1) & _CRC_MASK
        if feedback:
            crc ^= _CRC_POLY
    return crc & _CRC_MASK


def _exact_length(frame: CanFrame) -> int:
    bitmap = bytearray(16)
    can_id = frame.can_id
    dlc = frame.len
    rtr = 1 if can_id & CAN_RTR_FLAG else 0

    if can_id & CAN_EFF_FLAG:
        # |.sBBBBBB BBBBBSIE EEEEEEEE EEEEEEEE|ER10DLC4 data...
        bitmap[0] = ((can_id & CAN_EFF_MASK) >> 23) & 0xFF
        bitmap[1] = ((((can_id >> 18) & 0x3F) << 3) | (3 << 1) | ((can_id >> 17) & 1)) & 0xFF
        bitmap[2] = (can_id >> 9) & 0xFF
        bitmap[3] = (can_id >> 1) & 0xFF
        bitmap[4] = ((can_id & 1) << 7) | (rtr << 6) | (dlc & 0xF)
        bitmap[5:5 + dlc] = frame.data
        start, end = 1, 40 + 8 * dlc
    else:
        # |.....sII IIIIIIII IRE0DLC4|data...
        bitmap[0] = (can_id & CAN_SFF_MASK) >> 9
        bitmap[1] = (can_id >> 1) & 0xFF
        bitmap[2] = ((can_id << 7) & 0xFF) | (rtr << 6) | (dlc & 0xF)
        bitmap[3:3 + dlc] = frame.data
        start, end = 5, 24 + 8 * dlc

    crc = _crc15(bitmap, start, end)
    bitmap[end // 8:end // 8 + 2] = ((crc << 1) & 0xFFFF).to_bytes(2, "big")
    end += 15

    mask = 0x1F
    lookfor = 0
    pos = start
    stuffed = 0
    while pos < end:
        window = ((bitmap[pos // 8] << 8) | bitmap[pos // 8 + 1]) >> (16 - 5 - pos % 8)
        lookfor = 0 if lookfor else mask
        change = (window & mask) ^ lookfor
        if change:
            pos += _CLZ5[change]
            mask = 0x1F
        else:
            pos += 5 if mask == 0x1F else 4
            if pos <= end:
                stuffed += 1
                mask = 0x1E

    # CRC delimiter, ACK, ACK delimiter, EOF and IFS
    return end - start + stuffed + 3 + 7 + 3


def can_frame_length(frame: CanFrame, mode: CflMode | int, mtu: int = CAN_MTU) -> int:
    """Number of bits the frame needs on the wire, inter frame space included.

    CAN FD frames (any mtu other than CAN_MTU) are not supported and give 0.
    """
    mode = CflMode(mode)
    if mtu != CAN_MTU:
        return 0
    eff = frame.can_id & CAN_EFF_FLAG
    if mode is CflMode.NO_BITSTUFFING:
        return (67 if eff else 47) + frame.len * 8
    if mode is CflMode.WORSTCASE:
        return (80 if eff else 55) + frame.len * 10
    return _exact_length(frame)