"""
Byte streams used as transports for XMODEM/YMODEM transfers.
"""

from .streams import Stream
from .dummy import DummyStream
from .loopback import LoopbackStream
from .tcp import TCPStream, SOCKET_TIMEOUT
from .serialport import SerialStream, SERIAL_TIMEOUT

__all__ = [
    "Stream", "DummyStream", "LoopbackStream",
    "TCPStream", "SOCKET_TIMEOUT", "SerialStream", "SERIAL_TIMEOUT",
]
