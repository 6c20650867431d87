"""
Stream Protocol

The byte channel the XMODEM/YMODEM engines talk through. Implementations
exist for serial ports, TCP sockets and in-memory pipes.
"""

from typing import Protocol, Optional, runtime_checkable

@runtime_checkable
class Stream(Protocol):
    """Protocol defining the interface for transfer streams (serial, TCP, loopback)."""

    def getc(self, size: int, timeout: float = 1.0) -> Optional[bytes]:
        """
        Reads up to size bytes, waiting at most timeout seconds.
        Returns None if nothing arrived in time. Raises ChannelClosed if the
        stream is closed.
        """
        ...

    def putc(self, data: bytes, timeout: float = 1.0) -> Optional[int]:
        """Writes data, returning the number of bytes written. Raises ChannelClosed if the stream is closed."""
        ...

    def close(self) -> bool:
        """Closes the stream."""
        ...
