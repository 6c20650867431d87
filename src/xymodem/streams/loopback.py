"""
In-memory connected stream pair.

Bytes written to one end can be read from the other, with real blocking
reads and timeouts, so a sender and a receiver can run against each other
in two threads.
"""

import threading
import time
from typing import Optional, Tuple

from ..errors import ChannelClosed
from .streams import Stream


class _Pipe:
    """One direction of a loopback connection."""

    def __init__(self):
        self.buffer = bytearray()
        self.closed = False
        self.cond = threading.Condition()

    def write(self, data: bytes) -> None:
        with self.cond:
            if self.closed:
                raise ChannelClosed("loopback pipe is closed")
            self.buffer.extend(data)
            self.cond.notify_all()

    def read(self, size: int, timeout: float) -> Optional[bytes]:
        deadline = time.monotonic() + timeout
        with self.cond:
            while not self.buffer:
                if self.closed:
                    raise ChannelClosed("loopback pipe is closed")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self.cond.wait(remaining)
            data = bytes(self.buffer[:size])
            del self.buffer[:size]
            return data

    def close(self) -> None:
        with self.cond:
            self.closed = True
            self.cond.notify_all()


class LoopbackStream(Stream):
    """One end of an in-memory duplex connection; create with pair()."""

    def __init__(self, incoming: _Pipe, outgoing: _Pipe):
        self.incoming = incoming
        self.outgoing = outgoing
        self.bytes_written = 0

    @classmethod
    def pair(cls) -> Tuple["LoopbackStream", "LoopbackStream"]:
        a_to_b, b_to_a = _Pipe(), _Pipe()
        return cls(b_to_a, a_to_b), cls(a_to_b, b_to_a)

    def getc(self, size: int, timeout: float = 1.0) -> Optional[bytes]:
        return self.incoming.read(size, timeout)

    def putc(self, data: bytes, timeout: float = 1.0) -> Optional[int]:
        self.outgoing.write(data)
        self.bytes_written += len(data)
        return len(data)

    def close(self) -> bool:
        self.incoming.close()
        self.outgoing.close()
        return True
