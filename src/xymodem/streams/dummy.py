import logging
from collections import deque
from typing import Iterable, List, Optional, Union

from ..errors import ChannelClosed
from .streams import Stream

ScriptItem = Union[bytes, None, BaseException]

class DummyStream(Stream):
    """
    A scripted stream for testing the transfer engines without a peer.

    Each getc() call is served from a script of chunks:

    - ``bytes``: data that has "arrived"; larger chunks are handed out
      across several getc() calls.
    - ``None``: a read timeout.
    - an exception instance: raised from getc().

    The rest of a chunk counts as already arrived: a zero-timeout poll
    returns it, while a poll with nothing left over returns None without
    consuming the script. Once the script is exhausted every read times
    out. Everything written with putc() is recorded.
    """

    def __init__(self, script: Iterable[ScriptItem] = ()):
        self.log = logging.getLogger("DummyStream")
        self.script = deque(script)
        self.is_open = True
        self.sent_data: List[bytes] = []
        self.reads = 0
        self._buffer = b''

    # --- Stream Protocol Methods --- #

    def close(self) -> bool:
        """Simulates closing the stream."""
        self.is_open = False
        return True

    def getc(self, size: int, timeout: float = 1.0) -> Optional[bytes]:
        if not self.is_open:
            raise ChannelClosed("DummyStream is closed")
        if timeout <= 0 and not self._buffer:
            # A poll only sees what already arrived, never the next script item
            return None
        self.reads += 1
        if not self._buffer:
            if not self.script:
                return None
            item = self.script.popleft()
            if isinstance(item, BaseException):
                raise item
            if item is None:
                self.log.debug(f"getc(size={size}) -> timeout")
                return None
            self._buffer = bytes(item)
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        self.log.debug(f"getc(size={size}) -> {data!r}")
        return data

    def putc(self, data: bytes, timeout: float = 1.0) -> Optional[int]:
        """Records data written by the engine."""
        if not self.is_open:
            raise ChannelClosed("DummyStream is closed")
        self.log.debug(f"putc({data!r})")
        self.sent_data.append(bytes(data))
        return len(data)

    # --- Test Helper Methods --- #

    def feed(self, *items: ScriptItem) -> None:
        """Appends more items to the read script."""
        self.script.extend(items)

    def get_sent_data(self) -> List[bytes]:
        """Returns the list of chunks written via putc()."""
        return self.sent_data

    def written(self) -> bytes:
        """Returns everything written via putc() as one buffer."""
        return b''.join(self.sent_data)

    def clear_sent_data(self):
        """Clears the history of sent data."""
        self.sent_data.clear()
