"""
XMODEM/YMODEM protocol engine: checksums, packet codec, sender/receiver
state machines and the YMODEM batch layer.
"""

from .checksum import checksum, crc16
from .packet import PacketKind, ChecksumMode, Packet, encode, decode
from .outcome import TransferStatus, TransferOutcome
from .xmodem import Sender, Receiver
from .ymodem import YMODEM, BatchFile, BatchFileHeader, BatchResult

__all__ = [
    "checksum", "crc16",
    "PacketKind", "ChecksumMode", "Packet", "encode", "decode",
    "TransferStatus", "TransferOutcome",
    "Sender", "Receiver",
    "YMODEM", "BatchFile", "BatchFileHeader", "BatchResult",
]
