"""
XMODEM Protocol Implementation

Sender and receiver state machines for XMODEM, XMODEM-CRC and XMODEM-1k.
Each instance runs exactly one transfer and owns all of its state (mode,
block counter, retry counters), so a YMODEM batch builds a fresh instance
for every header and every file.
"""

import enum
import logging
import threading
import time
from typing import Callable, List, Optional

from ..errors import (
    CancelSignal, ChannelClosed, DecodeError, RetryBudgetExhausted, TransferTimeout,
)
from ..streams.streams import Stream
from .outcome import TransferOutcome
from .packet import (
    BLOCK_SIZES, ChecksumMode, Packet, PacketKind, decode, encode, kind_for_size, packet_length,
)

SOH = PacketKind.SOH.byte
STX = PacketKind.STX.byte
EOT = PacketKind.EOT.byte
ACK = PacketKind.ACK.byte
NAK = PacketKind.NAK.byte
CAN = PacketKind.CAN.byte
CRC = PacketKind.CRC.byte

DEFAULT_RETRY = 10
DEFAULT_TIMEOUT = 10.0          # seconds to wait for a response
DEFAULT_PROBE_INTERVAL = 3.0    # seconds between receiver mode requests
DEFAULT_CRC_PROBES = 3          # 'C' requests before falling back to NAK
PURGE_TIMEOUT = 1.0             # line must be quiet this long to count as purged
PAD = b'\x1a'


class _Modem:
    """State and helpers shared by the sender and the receiver."""

    def __init__(self, stream: Stream, retry: int, initial_retry: Optional[int], timeout: float):
        self.stream = stream
        self.retry = retry
        self.initial_retry = retry if initial_retry is None else initial_retry
        self.timeout = timeout
        self.log = logging.getLogger('xmodem')
        self._canceled = threading.Event()

    def cancel(self) -> None:
        """
        Request cancellation from another thread. The engine sends CAN CAN at
        its next suspension point and reports a cancelled outcome.
        """
        self._canceled.set()

    def abort(self, count: int = 2) -> None:
        """Send an abort sequence of CAN bytes."""
        try:
            for _ in range(count):
                self.stream.putc(CAN, self.timeout)
        except ChannelClosed as e:
            self.log.debug(f'Could not send CAN, channel already closed: {e}')

    def _check_canceled(self) -> None:
        if self._canceled.is_set():
            self.log.info('Transmission canceled by user.')
            self.abort()
            raise CancelSignal('cancelled by user')

    def _give_up(self, what: str, timed_out: bool):
        """Abort the transfer once the retry budget is exhausted."""
        self.abort()
        if timed_out:
            raise TransferTimeout(f'{what}: no response after {self.retry} retries')
        raise RetryBudgetExhausted(f'{what}: failed after {self.retry} retries')

    def _outcome_for(self, error: Exception) -> TransferOutcome:
        if isinstance(error, CancelSignal):
            outcome = TransferOutcome.cancelled(str(error))
        elif isinstance(error, TransferTimeout):
            outcome = TransferOutcome.timed_out(str(error))
        elif isinstance(error, ChannelClosed):
            outcome = TransferOutcome.protocol_error(f'channel closed: {error}')
        else:
            outcome = TransferOutcome.protocol_error(str(error))
        self.log.error(f'Transfer aborted, {outcome}')
        return outcome


class SenderState(enum.Enum):
    AWAIT_MODE = 'await mode'
    SENDING = 'sending'
    AWAIT_FINAL_ACK = 'await final ack'
    DONE = 'done'
    ABORTED = 'aborted'


class Sender(_Modem):
    """
    Sends one byte buffer as a sequence of XMODEM blocks.

    The checksum mode is chosen by the receiver: ``'C'`` selects CRC-16,
    ``NAK`` selects the additive checksum.

    :param stream: the byte channel to the receiver
    :param block_size: 128 (XMODEM) or 1024 (XMODEM-1k)
    :param retry: how many times one block (or the EOT) is retransmitted
        before the transfer is aborted
    :param initial_retry: how many reads to spend waiting for the receiver's
        mode request, defaults to ``retry``
    :param timeout: seconds to wait for each response
    :param pad: byte used to fill the final block
    :param callback: called as ``callback(packet_size, total_packets,
        success_count, error_count)`` after every block
    """

    def __init__(self, stream: Stream, block_size: int = 128, retry: int = DEFAULT_RETRY,
                 initial_retry: Optional[int] = None, timeout: float = DEFAULT_TIMEOUT,
                 pad: bytes = PAD, callback: Optional[Callable] = None):
        super().__init__(stream, retry, initial_retry, timeout)
        self.kind = kind_for_size(block_size)
        self.block_size = block_size
        self.pad = pad
        self.callback = callback
        self.state = SenderState.AWAIT_MODE
        self.mode: Optional[ChecksumMode] = None
        self.error_count = 0

    def send(self, data: bytes, first_block: int = 1, send_eot: bool = True) -> TransferOutcome:
        """
        Run the whole transfer: wait for the mode request, send every block,
        then signal completion with EOT.

        ``first_block`` and ``send_eot`` let the YMODEM layer send its block 0
        header as a transfer of its own.
        """
        if self.state is not SenderState.AWAIT_MODE:
            raise RuntimeError('A Sender runs a single transfer; create a new one')

        self.log.debug(f'Starting XMODEM send, packet_size={self.block_size}, {len(data)} bytes')
        try:
            self.mode = self._await_mode()
            self.state = SenderState.SENDING
            self._send_blocks(data, first_block)
            if send_eot:
                self.state = SenderState.AWAIT_FINAL_ACK
                self._send_eot()
        except (CancelSignal, TransferTimeout, RetryBudgetExhausted, ChannelClosed) as e:
            self.state = SenderState.ABORTED
            return self._outcome_for(e)

        self.state = SenderState.DONE
        self.log.info(f'Transmission successful, {len(data)} bytes sent.')
        return TransferOutcome.completed(len(data))

    def _await_mode(self) -> ChecksumMode:
        for _ in range(self.initial_retry):
            self._check_canceled()
            char = self.stream.getc(1, self.timeout)
            if char == CRC:
                self.log.debug('16-bit CRC requested')
                return ChecksumMode.CRC16
            if char == NAK:
                self.log.debug('Standard checksum requested')
                return ChecksumMode.STANDARD
            if char == CAN:
                raise CancelSignal('receiver sent CAN at start of transfer')
            if char is None:
                self.log.warning('Timed out waiting for start of transfer.')
            elif char == ACK:
                self.log.debug('Ignoring stray ACK while waiting for mode request')
            else:
                self.log.warning(f'Unknown byte received at start of transfer: {char!r}')
        raise TransferTimeout(f'no mode request after {self.initial_retry} attempts')

    def _send_blocks(self, data: bytes, first_block: int) -> None:
        total_packets = (len(data) + self.block_size - 1) // self.block_size
        sequence = first_block & 0xff
        success_count = 0

        for index in range(total_packets):
            chunk = data[index * self.block_size:(index + 1) * self.block_size]
            payload = chunk.ljust(self.block_size, self.pad)
            self._send_packet(encode(self.kind, sequence, payload, self.mode), sequence)
            success_count += 1
            if callable(self.callback):
                self.callback(self.block_size, total_packets, success_count, self.error_count)
            sequence = (sequence + 1) % 256

    def _drain(self) -> None:
        """
        Discard responses that arrived before the next block goes out, so a
        late duplicate ACK is never taken as the answer to a new block.
        """
        while True:
            pending = self.stream.getc(1024, 0)
            if not pending:
                return
            self.log.debug(f'Discarding stale response {pending!r}')
            if CAN in pending:
                raise CancelSignal('receiver sent CAN')

    def _write(self, data: bytes) -> bool:
        if self.stream.putc(data, self.timeout) is None:
            self.log.warning(f'Write of {len(data)} bytes timed out')
            return False
        return True

    def _send_packet(self, packet: bytes, sequence: int) -> None:
        retries = 0
        resend = True
        self._drain()
        while True:
            self._check_canceled()
            written = True
            if resend:
                self.log.debug('Sending block %d', sequence)
                written = self._write(packet)

            # An unwritten block counts as an unanswered one
            char = self.stream.getc(1, self.timeout) if written else None
            if char == ACK:
                self.log.debug('Block %d ACKed', sequence)
                return
            if char == CAN:
                raise CancelSignal(f'receiver sent CAN during block {sequence}')

            if char == NAK:
                self.log.warning('NAK received for block %d, will retry packet.', sequence)
            elif char is None:
                self.log.warning('Timeout waiting for ACK/NAK for block %d.', sequence)
            else:
                # Leftover probes or line noise: keep listening, don't resend
                self.log.warning('Expected ACK, NAK or CAN; got %r for block %d', char, sequence)
            resend = char is None or char == NAK

            retries += 1
            self.error_count += 1
            if retries > self.retry:
                self._give_up(f'block {sequence}', timed_out=char is None)

    def _send_eot(self) -> None:
        retries = 0
        self._drain()
        while True:
            self._check_canceled()
            self.log.debug('Sending EOT')
            char = self.stream.getc(1, self.timeout) if self._write(EOT) else None

            if char == ACK:
                self.log.debug('EOT ACKed')
                return
            if char == CAN:
                raise CancelSignal('receiver sent CAN after EOT')
            if char is None:
                self.log.warning('Timeout waiting for ACK for EOT')
            else:
                self.log.debug('EOT answered with %r, sending it again', char)

            retries += 1
            self.error_count += 1
            if retries > self.retry:
                self._give_up('EOT', timed_out=char is None)


class ReceiverState(enum.Enum):
    NEGOTIATING = 'negotiating'
    RECEIVING = 'receiving'
    DONE = 'done'
    ABORTED = 'aborted'


class Receiver(_Modem):
    """
    Receives one XMODEM transfer into memory.

    Args:
        stream: The byte channel to the sender.
        mode: Preferred checksum mode. CRC16 requests are sent first and fall
            back to the additive checksum after ``crc_probes`` unanswered
            requests; pass ``crc_probes=None`` to never fall back.
        retry: Consecutive errors tolerated on one block before aborting.
        initial_retry: Mode requests sent before giving up, defaults to retry.
        timeout: Seconds to wait for each packet.
        probe_interval: Seconds to wait for an answer to each mode request.
        nak_first_eot: Answer the first EOT with NAK and only ACK the
            repeated one, as many YMODEM receivers do.
        callback: Called as callback(packet_size, success_count, error_count)
            after every accepted block.
    """

    def __init__(self, stream: Stream, mode: ChecksumMode = ChecksumMode.CRC16,
                 retry: int = DEFAULT_RETRY, initial_retry: Optional[int] = None,
                 timeout: float = DEFAULT_TIMEOUT, probe_interval: float = DEFAULT_PROBE_INTERVAL,
                 crc_probes: Optional[int] = DEFAULT_CRC_PROBES, purge_timeout: float = PURGE_TIMEOUT,
                 nak_first_eot: bool = False, callback: Optional[Callable] = None):
        super().__init__(stream, retry, initial_retry, timeout)
        self.preferred_mode = mode
        self.mode = mode
        self.probe_interval = probe_interval
        self.crc_probes = crc_probes
        self.purge_timeout = purge_timeout
        self.nak_first_eot = nak_first_eot
        self.callback = callback
        self.state = ReceiverState.NEGOTIATING

    def recv(self, first_block: int = 1, max_blocks: Optional[int] = None) -> TransferOutcome:
        """
        Run the whole transfer and return the reassembled data in the
        outcome. Nothing is returned for a failed transfer.

        With ``max_blocks`` the transfer ends as soon as that many blocks are
        accepted, without waiting for EOT (used for YMODEM block 0).
        """
        if self.state is not ReceiverState.NEGOTIATING:
            raise RuntimeError('A Receiver runs a single transfer; create a new one')

        blocks: List[bytes] = []
        self.log.debug('Starting XMODEM receive')
        try:
            char = self._negotiate()
            self.state = ReceiverState.RECEIVING
            self._receive_blocks(char, first_block & 0xff, max_blocks, blocks)
        except (CancelSignal, TransferTimeout, RetryBudgetExhausted, ChannelClosed) as e:
            self.state = ReceiverState.ABORTED
            return self._outcome_for(e)

        data = b''.join(blocks)
        self.state = ReceiverState.DONE
        self.log.info(f'Transmission complete, {len(data)} bytes')
        return TransferOutcome.completed(len(data), data)

    def _probe(self) -> None:
        self.stream.putc(self.mode.probe.byte, self.timeout)

    def _negotiate(self) -> bytes:
        """Send mode requests until the first packet starts; returns its first byte."""
        for attempt in range(self.initial_retry):
            self._check_canceled()
            if (self.preferred_mode is ChecksumMode.CRC16 and self.crc_probes is not None
                    and attempt == self.crc_probes):
                self.log.info('No answer to CRC requests, falling back to checksum mode')
                self.mode = ChecksumMode.STANDARD
            self._probe()

            char = self.stream.getc(1, self.probe_interval)
            if char in (SOH, STX, EOT):
                self.log.debug(f'Sender answered, using {self.mode.name} mode')
                return char
            if char == CAN:
                raise CancelSignal('sender sent CAN at start of transfer')
            if char is None:
                self.log.debug('No answer to mode request')
            else:
                self.log.warning(f'recv error: expected SOH, STX or EOT; got {char!r}')
        raise TransferTimeout(f'sender did not answer {self.initial_retry} mode requests')

    def _read_exact(self, size: int) -> Optional[bytes]:
        deadline = time.monotonic() + self.timeout
        data = b''
        while len(data) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            chunk = self.stream.getc(size - len(data), remaining)
            if chunk is None:
                return None
            data += chunk
        return data

    def _purge(self) -> None:
        while self.stream.getc(1024, self.purge_timeout):
            pass

    def _read_packet(self, char: bytes) -> Packet:
        kind = PacketKind(char[0])
        rest = self._read_exact(packet_length(kind, self.mode) - 1)
        if rest is None:
            raise TimeoutError(f'timeout while reading {kind.name} packet')
        return decode(char + rest, self.mode)

    def _receive_blocks(self, char: Optional[bytes], expected: int, max_blocks: Optional[int],
                        blocks: List[bytes]) -> None:
        errors = 0
        error_count = 0
        eot_seen = False

        while True:
            self._check_canceled()
            if char is None:
                char = self.stream.getc(1, self.timeout)

            timed_out = False
            if char is None:
                self.log.warning('Timeout waiting for block %d', expected)
                timed_out = True

            elif char == EOT:
                if max_blocks is not None and not blocks:
                    # EOT of the previous exchange, repeated because our ACK was lost
                    self.log.debug('Acknowledging stray EOT before first block')
                    self.stream.putc(ACK, self.timeout)
                    self._probe()
                    char = None
                    continue
                if self.nak_first_eot and not eot_seen:
                    eot_seen = True
                    self.stream.putc(NAK, self.timeout)
                    char = None
                    continue
                self.stream.putc(ACK, self.timeout)
                return

            elif char == CAN:
                raise CancelSignal(f'sender sent CAN at block {expected}')

            elif char in (SOH, STX):
                try:
                    packet = self._read_packet(char)
                except TimeoutError as e:
                    self.log.warning(f'recv error: {e}')
                    self._purge()
                    timed_out = True
                except DecodeError as e:
                    self.log.warning(f'recv error: {e}')
                else:
                    if packet.block_number == expected:
                        blocks.append(packet.payload)
                        errors = 0
                        self.log.debug('recv: data block %d', expected)
                        self.stream.putc(ACK, self.timeout)
                        if callable(self.callback):
                            self.callback(BLOCK_SIZES[packet.kind], len(blocks), error_count)
                        expected = (expected + 1) % 256
                        if max_blocks is not None and len(blocks) >= max_blocks:
                            return
                        char = None
                        continue

                    if packet.block_number == (expected - 1) % 256:
                        # Sender missed our ACK: acknowledge again, keep the data once
                        self.log.warning('Duplicate block %d, acknowledging again', packet.block_number)
                        self.stream.putc(ACK, self.timeout)
                        if not blocks:
                            self._probe()
                        char = None
                        continue

                    self.log.error(f'expected block {expected}, got {packet.block_number}, will NAK.')

            else:
                self.log.warning(f'recv error: expected SOH, STX, EOT; got {char!r}')
                self._purge()

            errors += 1
            error_count += 1
            if errors > self.retry:
                self._give_up(f'block {expected}', timed_out)
            if timed_out and not blocks:
                self._probe()
            else:
                self.stream.putc(NAK, self.timeout)
            char = None
