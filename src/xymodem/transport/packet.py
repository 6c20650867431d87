"""
XMODEM Packet Codec

Wire layout of a data packet:

    [kind][block#][255 - block#][payload: 128 | 1024 bytes][checksum: 1 byte | CRC: 2 bytes big-endian]

Control packets (EOT, ACK, NAK, CAN, 'C') are a single byte.
"""

import enum
import struct
from dataclasses import dataclass, field

from ..errors import BadComplement, ChecksumMismatch, LengthMismatch, UnknownKind
from .checksum import checksum, crc16


class PacketKind(enum.IntEnum):
    SOH = 0x01  # Start of header (128 byte blocks)
    STX = 0x02  # Start of header (1024 byte blocks)
    EOT = 0x04  # End of transmission
    ACK = 0x06  # Acknowledge
    NAK = 0x15  # Negative acknowledge
    CAN = 0x18  # Cancel
    CRC = 0x43  # 'C' character for CRC mode request

    @property
    def byte(self) -> bytes:
        return bytes([self.value])

    @property
    def is_data(self) -> bool:
        return self in (PacketKind.SOH, PacketKind.STX)


BLOCK_SIZES = {
    PacketKind.SOH: 128,
    PacketKind.STX: 1024,
}


class ChecksumMode(enum.Enum):
    STANDARD = 1  # 1-byte additive checksum
    CRC16 = 2     # 2-byte CCITT CRC

    @property
    def trailer_length(self) -> int:
        return self.value

    @property
    def probe(self) -> PacketKind:
        """The byte a receiver sends to request this mode."""
        return PacketKind.CRC if self is ChecksumMode.CRC16 else PacketKind.NAK


@dataclass(frozen=True)
class Packet:
    kind: PacketKind
    block_number: int = 0
    payload: bytes = b""
    trailer: int = field(default=0, compare=False)


def kind_for_size(block_size: int) -> PacketKind:
    for kind, size in BLOCK_SIZES.items():
        if size == block_size:
            return kind
    raise ValueError(f"Invalid block size: {block_size}")


def packet_length(kind: PacketKind, mode: ChecksumMode) -> int:
    """Total on-wire length of a data packet including the kind byte."""
    return 3 + BLOCK_SIZES[kind] + mode.trailer_length


def make_trailer(payload: bytes, mode: ChecksumMode) -> bytes:
    if mode is ChecksumMode.CRC16:
        return struct.pack(">H", crc16(payload))
    return bytes([checksum(payload)])


def encode(kind: PacketKind, block_number: int, payload: bytes, mode: ChecksumMode) -> bytes:
    """
    Frame a data block. The payload must already be padded to the block
    size of ``kind``; this function never pads.
    """
    if kind not in BLOCK_SIZES:
        raise ValueError(f"Only SOH and STX packets carry a payload, got {kind!r}")
    if len(payload) != BLOCK_SIZES[kind]:
        raise ValueError(f"{kind.name} payload must be {BLOCK_SIZES[kind]} bytes, got {len(payload)}")
    block_number &= 0xff
    header = bytes([kind, block_number, 0xff - block_number])
    return header + bytes(payload) + make_trailer(payload, mode)


def decode(raw: bytes, mode: ChecksumMode) -> Packet:
    """
    Validate and decode a raw packet.

    Raises one of UnknownKind, LengthMismatch, BadComplement or
    ChecksumMismatch; never any other exception for malformed input.
    """
    if not raw:
        raise LengthMismatch(1, 0)
    try:
        kind = PacketKind(raw[0])
    except ValueError:
        raise UnknownKind(raw[0]) from None

    if not kind.is_data:
        if len(raw) != 1:
            raise LengthMismatch(1, len(raw))
        return Packet(kind)

    expected = packet_length(kind, mode)
    if len(raw) != expected:
        raise LengthMismatch(expected, len(raw))

    block_number, complement = raw[1], raw[2]
    if complement != 0xff - block_number:
        raise BadComplement(block_number, complement)

    payload = bytes(raw[3:3 + BLOCK_SIZES[kind]])
    trailer_bytes = raw[3 + BLOCK_SIZES[kind]:]
    if mode is ChecksumMode.CRC16:
        theirs = (trailer_bytes[0] << 8) | trailer_bytes[1]
        ours = crc16(payload)
    else:
        theirs = trailer_bytes[0]
        ours = checksum(payload)
    if theirs != ours:
        raise ChecksumMismatch(theirs, ours)

    return Packet(kind, block_number, payload, theirs)
