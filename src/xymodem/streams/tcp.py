import logging
import socket
from typing import Optional, Tuple

from ..errors import ChannelClosed
from .streams import Stream

DEFAULT_TCP_PORT = 2323
SOCKET_TIMEOUT = 0.3  # seconds
CONNECTION_TIMEOUT = 5.0 # seconds


def parse_address(address: str) -> Tuple[str, int]:
    """Split 'host[:port]' into (host, port)."""
    host, _, port = address.rpartition(':')
    if not host:
        return port, DEFAULT_TCP_PORT
    return host, int(port)


class TCPStream(Stream):
    """TCP socket connection, established on initialization."""

    def __init__(self, address: str, verbose: bool = False):
        """
        Initialize and open socket connection. Raises socket.error on failure.

        Args:
            address: host name or IP address and optional port (format: 192.168.1.100:2323)
                     If no port specified, DEFAULT_TCP_PORT is used.
        """
        self.address = address
        self.socket: Optional[socket.socket] = None
        self.log = logging.getLogger(f"TCPStream({self.address})")
        self.verbose = verbose
        self._connect()

    def _connect(self):
        host, port = parse_address(self.address)
        self.log.debug(f"Attempting to connect to {host}:{port}...")
        try:
            self.socket = socket.create_connection((host, port), timeout=CONNECTION_TIMEOUT)
            # Disable Nagle's algorithm so single ACK/NAK bytes go out immediately
            self.socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self.socket.settimeout(SOCKET_TIMEOUT)
            self.log.info(f"TCP connection established to {self.address}")
        except OSError as e:
            self.log.error(f"TCP connection error during init: {str(e)}")
            self.socket = None
            raise socket.error(f"Failed to connect to {self.address}: {e}") from e

    def close(self) -> bool:
        """Close socket connection"""
        if not self.socket:
            self.log.debug("Close called but self.socket is already None.")
            return True
        try:
            self.socket.close()
            self.log.debug("Socket closed.")
            return True
        except OSError as e:
            self.log.error(f"Error closing TCP connection: {str(e)}")
            return False
        finally:
            self.socket = None

    def getc(self, size: int, timeout: float = 1.0) -> Optional[bytes]:
        """
        Read up to size bytes from the socket.

        Args:
            size: Maximum number of bytes to read.
            timeout: Seconds to wait for data to arrive.

        Returns:
            The bytes read, or None on timeout.
        """
        if not self.socket:
            raise ChannelClosed(f"{self.address} is closed")
        try:
            self.socket.settimeout(max(0.001, timeout))
            chunk = self.socket.recv(size)
        except socket.timeout:
            return None
        except OSError as e:
            self.log.error(f"Socket error during getc: {e}", exc_info=self.verbose)
            raise ChannelClosed(str(e)) from e
        if not chunk:
            self.log.warning("getc: Socket closed by peer while reading.")
            raise ChannelClosed(f"{self.address} closed by peer")
        return chunk

    def putc(self, data: bytes, timeout: float = 1.0) -> Optional[int]:
        """
        Write data to the socket.

        Args:
            data: Data to write.
            timeout: Seconds allowed for the whole write.

        Returns:
            Number of bytes written, or None if the write timed out.
        """
        if not self.socket:
            raise ChannelClosed(f"{self.address} is closed")
        try:
            self.socket.settimeout(max(0.001, timeout))
            self.socket.sendall(data)
            return len(data)
        except socket.timeout:
            self.log.warning(f"Socket write of {len(data)} bytes timed out")
            return None
        except OSError as e:
            self.log.error(f"Socket putc error: {e}", exc_info=self.verbose)
            raise ChannelClosed(str(e)) from e
