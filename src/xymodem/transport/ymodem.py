"""
YMODEM Batch Layer

Runs one XMODEM exchange per block 0 header and one per file:

    receiver  C            ACK C                    ACK C            ACK
    sender       [block 0]       [blocks 1..n] EOT        [block 0 ""]

Every exchange uses a fresh Sender/Receiver. An empty filename in block 0
ends the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple

from ..errors import HeaderError
from ..streams.streams import Stream
from .outcome import TransferOutcome
from .packet import BLOCK_SIZES, ChecksumMode, PacketKind
from .xmodem import (
    DEFAULT_PROBE_INTERVAL, DEFAULT_RETRY, DEFAULT_TIMEOUT, PAD, Receiver, Sender,
)

HEADER_SIZES = (BLOCK_SIZES[PacketKind.SOH], BLOCK_SIZES[PacketKind.STX])
DATA_BLOCK_SIZE = BLOCK_SIZES[PacketKind.STX]


@dataclass(frozen=True)
class BatchFileHeader:
    """
    Contents of a YMODEM block 0: ``name NUL size [mtime [mode]] NUL``.

    ``size`` 0 means unknown. ``modification_time`` is seconds since the
    epoch and ``mode_bits`` a Unix file mode, both sent in octal.
    """
    filename: str
    size: int = 0
    modification_time: Optional[int] = None
    mode_bits: Optional[int] = None

    @property
    def is_end_of_batch(self) -> bool:
        return not self.filename

    @classmethod
    def end_of_batch(cls) -> "BatchFileHeader":
        return cls('')

    def to_payload(self) -> bytes:
        """Serialize into a zero-padded 128-byte payload, or 1024 bytes if it does not fit."""
        if self.is_end_of_batch:
            return bytes(HEADER_SIZES[0])

        fields = [str(self.size)]
        if self.modification_time is not None or self.mode_bits is not None:
            fields.append(format(self.modification_time or 0, 'o'))
        if self.mode_bits is not None:
            fields.append(format(self.mode_bits, 'o'))

        data = self.filename.encode('utf-8') + b'\x00' + ' '.join(fields).encode('ascii') + b'\x00'
        for size in HEADER_SIZES:
            if len(data) <= size:
                return data.ljust(size, b'\x00')
        raise ValueError(f'Filename too long for a YMODEM header: {self.filename!r}')

    @classmethod
    def from_payload(cls, payload: bytes) -> "BatchFileHeader":
        """
        Parse a block 0 payload. Unparseable optional fields are dropped
        with a warning; an undecodable filename raises HeaderError.
        """
        name, _, rest = bytes(payload).partition(b'\x00')
        try:
            filename = name.decode('utf-8')
        except UnicodeDecodeError as e:
            raise HeaderError(f'Invalid filename in header: {name!r}') from e
        if not filename:
            return cls.end_of_batch()

        fields = rest.split(b'\x00', 1)[0].decode('ascii', errors='replace').split()
        values: List[Optional[int]] = []
        for text, base in zip(fields, (10, 8, 8)):
            try:
                values.append(int(text, base))
            except ValueError:
                logging.getLogger('ymodem').warning(f'Ignoring malformed header field {text!r} for {filename}')
                break
        values += [None] * (3 - len(values))
        size, mtime, mode = values
        return cls(filename, size or 0, mtime, mode)


class BatchFile(NamedTuple):
    """One outgoing file; a plain (filename, size, data) tuple also works."""
    filename: str
    size: int
    data: bytes
    modification_time: Optional[int] = None
    mode_bits: Optional[int] = None

    @property
    def header(self) -> BatchFileHeader:
        return BatchFileHeader(self.filename, self.size, self.modification_time, self.mode_bits)


@dataclass
class BatchResult:
    """One outcome per file attempted, plus the outcome of the whole session."""
    outcome: TransferOutcome
    files: List[Tuple[BatchFileHeader, TransferOutcome]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome.ok


class YMODEM:
    """
    YMODEM batch sender and receiver.

    Args:
        stream: The byte channel to the peer.
        retry: Retry budget for every exchange.
        timeout: Seconds to wait for each response.
        probe_interval: Seconds between the receiver's 'C' requests.
        nak_first_eot: Receiver answers the first EOT of each file with NAK.
        callback: Progress callback handed to every data exchange.
    """

    def __init__(self, stream: Stream, retry: int = DEFAULT_RETRY, timeout: float = DEFAULT_TIMEOUT,
                 probe_interval: float = DEFAULT_PROBE_INTERVAL, pad: bytes = PAD,
                 nak_first_eot: bool = False, callback: Optional[Callable] = None):
        self.stream = stream
        self.retry = retry
        self.timeout = timeout
        self.probe_interval = probe_interval
        self.pad = pad
        self.nak_first_eot = nak_first_eot
        self.callback = callback
        self.log = logging.getLogger('ymodem')
        self._engine = None

    def cancel(self) -> None:
        """Cancel the exchange currently running, from another thread."""
        if self._engine is not None:
            self._engine.cancel()

    # --- Send side --- #

    def _sender(self, block_size: int, callback: Optional[Callable] = None) -> Sender:
        self._engine = Sender(self.stream, block_size=block_size, retry=self.retry,
                              timeout=self.timeout, pad=self.pad, callback=callback)
        return self._engine

    def _send_header(self, header: BatchFileHeader) -> TransferOutcome:
        payload = header.to_payload()
        return self._sender(len(payload)).send(payload, first_block=0, send_eot=False)

    def send(self, files: Iterable[Tuple]) -> BatchResult:
        """
        Send every file, then the empty header that ends the batch.

        ``files`` is consumed lazily; each item is a BatchFile or a
        ``(filename, size, data)`` tuple.
        """
        result = BatchResult(TransferOutcome.completed(0))
        total = 0

        for item in files:
            entry = BatchFile(*item)
            header = entry.header
            self.log.info(f'Sending {header.filename} ({header.size} bytes)')

            outcome = self._send_header(header)
            if outcome.ok:
                outcome = self._sender(DATA_BLOCK_SIZE, self.callback).send(entry.data)
            result.files.append((header, outcome))
            if not outcome.ok:
                self.log.error(f'Sending {header.filename} failed: {outcome}')
                result.outcome = outcome
                return result
            total += outcome.bytes_transferred

        self.log.debug('Sending end-of-batch header')
        outcome = self._send_header(BatchFileHeader.end_of_batch())
        if not outcome.ok:
            self.log.error(f'End of batch not acknowledged: {outcome}')
            result.outcome = outcome
            return result

        self.log.info(f'Batch complete, {len(result.files)} file(s), {total} bytes')
        result.outcome = TransferOutcome.completed(total)
        return result

    # --- Receive side --- #

    def _receiver(self, callback: Optional[Callable] = None,
                  nak_first_eot: bool = False) -> Receiver:
        # YMODEM always runs in CRC mode
        self._engine = Receiver(self.stream, mode=ChecksumMode.CRC16, retry=self.retry,
                                timeout=self.timeout, probe_interval=self.probe_interval,
                                crc_probes=None, nak_first_eot=nak_first_eot, callback=callback)
        return self._engine

    def recv(self, on_file: Optional[Callable[[BatchFileHeader, bytes], None]] = None) -> BatchResult:
        """
        Receive files until the sender ends the batch.

        Each complete file is truncated to its declared size and handed to
        ``on_file(header, data)``. A file whose transfer fails is dropped and
        ends the session.
        """
        result = BatchResult(TransferOutcome.completed(0))
        total = 0

        while True:
            outcome = self._receiver().recv(first_block=0, max_blocks=1)
            if not outcome.ok:
                result.outcome = outcome
                return result

            try:
                header = BatchFileHeader.from_payload(outcome.data)
            except HeaderError as e:
                self.log.error(str(e))
                self._engine.abort()
                result.outcome = TransferOutcome.protocol_error(str(e))
                return result

            if header.is_end_of_batch:
                self.log.info(f'Batch complete, {len(result.files)} file(s), {total} bytes')
                result.outcome = TransferOutcome.completed(total)
                return result

            self.log.info(f'Receiving {header.filename} ({header.size or "unknown"} bytes)')
            outcome = self._receiver(self.callback, self.nak_first_eot).recv()
            if not outcome.ok:
                self.log.error(f'Receiving {header.filename} failed: {outcome}')
                result.files.append((header, outcome))
                result.outcome = outcome
                return result

            data = outcome.data
            if header.size:
                data = data[:header.size]
            outcome = TransferOutcome.completed(len(data), data)
            result.files.append((header, outcome))
            total += len(data)
            if on_file is None:
                continue
            try:
                on_file(header, data)
            except (OSError, ValueError) as e:
                self.log.error(f'Could not store {header.filename}: {e}')
                self._engine.abort()
                result.outcome = TransferOutcome.protocol_error(f'could not store {header.filename}: {e}')
                return result
