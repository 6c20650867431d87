import logging
import os
import threading
import unittest

# Configure logging for tests (optional, helps debugging)
logging.basicConfig(level=logging.WARNING, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

from ..errors import ChannelClosed
from ..streams.dummy import DummyStream
from ..streams.loopback import LoopbackStream
from .outcome import TransferStatus
from .packet import ChecksumMode, PacketKind, encode
from .xmodem import ACK, CAN, CRC, EOT, NAK, Receiver, Sender, SenderState, ReceiverState


def packet(block_number, payload=None, mode=ChecksumMode.CRC16, kind=PacketKind.SOH):
    size = 128 if kind == PacketKind.SOH else 1024
    if payload is None:
        payload = bytes([block_number]) * size
    return encode(kind, block_number, payload.ljust(size, b'\x1a'), mode)


class StalledWriteStream(DummyStream):
    """DummyStream whose first ``stalls`` writes time out."""

    def __init__(self, script=(), stalls=0):
        super().__init__(script)
        self.stalls = stalls

    def putc(self, data, timeout=1.0):
        written = super().putc(data, timeout)
        if self.stalls > 0 and data != CAN:
            self.stalls -= 1
            return None
        return written


class TestSender(unittest.TestCase):

    def test_send_crc_mode(self):
        data = os.urandom(200)
        stream = DummyStream([CRC, ACK, ACK, ACK])
        sender = Sender(stream)

        outcome = sender.send(data)

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.bytes_transferred, 200)
        self.assertEqual(sender.mode, ChecksumMode.CRC16)
        self.assertEqual(sender.state, SenderState.DONE)
        self.assertEqual(stream.get_sent_data(), [
            packet(1, data[:128]),
            packet(2, data[128:]),
            EOT,
        ])
        # Final block padded with Ctrl-Z
        self.assertEqual(stream.get_sent_data()[1][3 + 72:131], b'\x1a' * 56)

    def test_send_checksum_mode(self):
        stream = DummyStream([NAK, ACK, ACK])
        sender = Sender(stream)

        outcome = sender.send(b'hello')

        self.assertTrue(outcome.ok)
        self.assertEqual(sender.mode, ChecksumMode.STANDARD)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'hello', ChecksumMode.STANDARD), EOT])

    def test_nak_retransmits_same_block(self):
        stream = DummyStream([NAK, NAK, ACK, ACK])

        outcome = Sender(stream).send(b'x' * 100)

        self.assertTrue(outcome.ok)
        expected = packet(1, b'x' * 100, ChecksumMode.STANDARD)
        self.assertEqual(stream.get_sent_data(), [expected, expected, EOT])

    def test_unexpected_response_is_not_a_resend_request(self):
        stream = DummyStream([CRC, b'C', ACK, ACK])

        outcome = Sender(stream).send(b'abc')

        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc'), EOT])

    def test_stray_ack_before_mode_request_is_ignored(self):
        stream = DummyStream([ACK, CRC, ACK, ACK])

        outcome = Sender(stream).send(b'abc')

        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc'), EOT])

    def test_silent_receiver_exhausts_retry_budget(self):
        stream = DummyStream([CRC])

        outcome = Sender(stream, retry=3, timeout=0.01).send(b'abc')

        self.assertEqual(outcome.status, TransferStatus.TIMED_OUT)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc')] * 4 + [CAN, CAN])

    def test_naks_exhaust_retry_budget(self):
        stream = DummyStream([CRC] + [NAK] * 10)
        sender = Sender(stream, retry=3)

        outcome = sender.send(b'abc')

        self.assertEqual(outcome.status, TransferStatus.PROTOCOL_ERROR)
        self.assertEqual(sender.state, SenderState.ABORTED)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc')] * 4 + [CAN, CAN])

    def test_no_mode_request(self):
        stream = DummyStream()

        outcome = Sender(stream, initial_retry=5, timeout=0.01).send(b'abc')

        self.assertEqual(outcome.status, TransferStatus.TIMED_OUT)
        self.assertEqual(stream.reads, 5)
        self.assertEqual(stream.get_sent_data(), [])

    def test_cancel_at_start(self):
        stream = DummyStream([CAN])
        outcome = Sender(stream).send(b'abc')
        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        self.assertEqual(stream.get_sent_data(), [])

    def test_cancel_while_sending(self):
        data = os.urandom(512)
        stream = DummyStream([CRC, CAN])

        outcome = Sender(stream).send(data)

        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        # Nothing written after the CAN was seen
        self.assertEqual(stream.get_sent_data(), [packet(1, data[:128])])

    def test_cancel_after_eot(self):
        stream = DummyStream([CRC, ACK, CAN])
        outcome = Sender(stream).send(b'abc')
        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc'), EOT])

    def test_local_cancel(self):
        stream = DummyStream([CRC, ACK, ACK])
        sender = Sender(stream)
        sender.cancel()

        outcome = sender.send(b'abc')

        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        self.assertEqual(stream.get_sent_data(), [CAN, CAN])

    def test_eot_is_repeated_until_acked(self):
        stream = DummyStream([CRC, ACK, NAK, ACK])
        outcome = Sender(stream).send(b'abc')
        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc'), EOT, EOT])

    def test_empty_data_sends_only_eot(self):
        stream = DummyStream([CRC, ACK])
        outcome = Sender(stream).send(b'')
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.bytes_transferred, 0)
        self.assertEqual(stream.get_sent_data(), [EOT])

    def test_1k_blocks(self):
        data = os.urandom(1500)
        stream = DummyStream([CRC, ACK, ACK, ACK])

        outcome = Sender(stream, block_size=1024).send(data)

        self.assertTrue(outcome.ok)
        sent = stream.get_sent_data()
        self.assertEqual(sent[0], packet(1, data[:1024], kind=PacketKind.STX))
        self.assertEqual(sent[1], packet(2, data[1024:], kind=PacketKind.STX))

    def test_block_counter_wraps(self):
        data = bytes(257 * 128)
        stream = DummyStream([CRC] + [ACK] * 258)

        outcome = Sender(stream).send(data)

        self.assertTrue(outcome.ok)
        sent = stream.get_sent_data()
        self.assertEqual(sent[254][1], 255)
        self.assertEqual(sent[255][1], 0)
        self.assertEqual(sent[256][1], 1)
        self.assertEqual(sent[257], EOT)

    def test_progress_callback(self):
        calls = []
        stream = DummyStream([CRC, ACK, NAK, ACK, ACK])

        Sender(stream, callback=lambda *args: calls.append(args)).send(b'x' * 200)

        self.assertEqual(calls, [(128, 2, 1, 0), (128, 2, 2, 1)])

    def test_channel_closed(self):
        stream = DummyStream([CRC, ChannelClosed('line dropped')])
        outcome = Sender(stream).send(b'abc')
        self.assertEqual(outcome.status, TransferStatus.PROTOCOL_ERROR)
        self.assertIn('channel closed', outcome.detail)

    def test_stale_ack_does_not_confirm_next_block(self):
        data = os.urandom(256)
        # Block 1 is ACKed twice; the second ACK is already waiting when block 2 goes out
        stream = DummyStream([CRC, ACK + ACK, NAK, ACK, ACK])

        outcome = Sender(stream).send(data)

        self.assertTrue(outcome.ok)
        block2 = packet(2, data[128:])
        self.assertEqual(stream.get_sent_data(), [packet(1, data[:128]), block2, block2, EOT])

    def test_stale_ack_before_eot(self):
        stream = DummyStream([CRC, ACK + ACK, NAK, ACK])

        outcome = Sender(stream).send(b'abc')

        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc'), EOT, EOT])

    def test_buffered_can_cancels_before_next_block(self):
        stream = DummyStream([CRC, ACK + CAN])

        outcome = Sender(stream).send(b'y' * 256)

        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'y' * 128)])

    def test_unwritten_block_counts_as_timeout(self):
        stream = StalledWriteStream([CRC, ACK, ACK], stalls=1)

        outcome = Sender(stream).send(b'abc')

        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [packet(1, b'abc'), packet(1, b'abc'), EOT])
        # No response is awaited for the write that timed out
        self.assertEqual(stream.reads, 3)

    def test_writes_timing_out_exhaust_retry_budget(self):
        stream = StalledWriteStream([CRC], stalls=100)

        outcome = Sender(stream, retry=2).send(b'abc')

        self.assertEqual(outcome.status, TransferStatus.TIMED_OUT)
        self.assertEqual(stream.reads, 1)

    def test_single_use(self):
        sender = Sender(DummyStream([CRC, ACK, ACK]))
        sender.send(b'abc')
        with self.assertRaises(RuntimeError):
            sender.send(b'abc')


class TestReceiver(unittest.TestCase):

    def test_receive_blocks(self):
        stream = DummyStream([packet(1), packet(2), EOT])
        receiver = Receiver(stream)

        outcome = receiver.recv()

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.data, bytes([1]) * 128 + bytes([2]) * 128)
        self.assertEqual(outcome.bytes_transferred, 256)
        self.assertEqual(receiver.state, ReceiverState.DONE)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, ACK, ACK])

    def test_duplicate_block_is_acked_but_kept_once(self):
        stream = DummyStream([packet(1), packet(1), packet(2), EOT])

        outcome = Receiver(stream).recv()

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.data, bytes([1]) * 128 + bytes([2]) * 128)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, ACK, ACK, ACK])

    def test_checksum_mode(self):
        stream = DummyStream([packet(1, mode=ChecksumMode.STANDARD), EOT])
        outcome = Receiver(stream, mode=ChecksumMode.STANDARD).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [NAK, ACK, ACK])

    def test_falls_back_to_checksum_mode(self):
        stream = DummyStream([None, None, packet(1, mode=ChecksumMode.STANDARD), EOT])
        receiver = Receiver(stream, crc_probes=2)

        outcome = receiver.recv()

        self.assertTrue(outcome.ok)
        self.assertEqual(receiver.mode, ChecksumMode.STANDARD)
        self.assertEqual(stream.get_sent_data(), [CRC, CRC, NAK, ACK, ACK])

    def test_corrupted_block_is_nakked(self):
        bad = bytearray(packet(1))
        bad[20] ^= 0xff
        stream = DummyStream([bytes(bad), packet(1), EOT])

        outcome = Receiver(stream).recv()

        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.data, bytes([1]) * 128)
        self.assertEqual(stream.get_sent_data(), [CRC, NAK, ACK, ACK])

    def test_out_of_sequence_block_is_nakked(self):
        stream = DummyStream([packet(3), packet(1), EOT])
        outcome = Receiver(stream).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.data, bytes([1]) * 128)
        self.assertEqual(stream.get_sent_data(), [CRC, NAK, ACK, ACK])

    def test_garbage_is_purged_then_nakked(self):
        stream = DummyStream([packet(1), b'\x07garbage', None, packet(2), EOT])
        outcome = Receiver(stream).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, NAK, ACK, ACK])

    def test_truncated_first_block_reprobes(self):
        stream = DummyStream([packet(1)[:50], None, None, packet(1), EOT])
        outcome = Receiver(stream).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [CRC, CRC, ACK, ACK])

    def test_mixed_block_sizes(self):
        stream = DummyStream([packet(1), packet(2, kind=PacketKind.STX), EOT])
        outcome = Receiver(stream).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(len(outcome.data), 128 + 1024)

    def test_cancel_discards_data(self):
        stream = DummyStream([packet(1), CAN])
        receiver = Receiver(stream)

        outcome = receiver.recv()

        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        self.assertEqual(outcome.data, b'')
        self.assertEqual(receiver.state, ReceiverState.ABORTED)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK])

    def test_local_cancel(self):
        stream = DummyStream([packet(1), packet(2), EOT])
        receiver = Receiver(stream, callback=lambda *args: receiver.cancel())

        outcome = receiver.recv()

        self.assertEqual(outcome.status, TransferStatus.CANCELLED)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, CAN, CAN])

    def test_negotiation_timeout(self):
        stream = DummyStream()

        outcome = Receiver(stream, initial_retry=4, crc_probes=None, probe_interval=0.01).recv()

        self.assertEqual(outcome.status, TransferStatus.TIMED_OUT)
        self.assertEqual(stream.get_sent_data(), [CRC] * 4)

    def test_read_timeouts_exhaust_retry_budget(self):
        stream = DummyStream([packet(1)])

        outcome = Receiver(stream, retry=3, timeout=0.01).recv()

        self.assertEqual(outcome.status, TransferStatus.TIMED_OUT)
        self.assertEqual(outcome.data, b'')
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, NAK, NAK, NAK, CAN, CAN])

    def test_bad_blocks_exhaust_retry_budget(self):
        stream = DummyStream([packet(1)] + [packet(5)] * 3)
        outcome = Receiver(stream, retry=2).recv()
        self.assertEqual(outcome.status, TransferStatus.PROTOCOL_ERROR)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, NAK, NAK, CAN, CAN])

    def test_nak_first_eot(self):
        stream = DummyStream([packet(1), EOT, EOT])
        outcome = Receiver(stream, nak_first_eot=True).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, NAK, ACK])

    def test_single_block_exchange(self):
        stream = DummyStream([packet(0)])
        outcome = Receiver(stream).recv(first_block=0, max_blocks=1)
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.data, bytes(128))
        self.assertEqual(stream.get_sent_data(), [CRC, ACK])

    def test_stray_eot_before_single_block(self):
        stream = DummyStream([EOT, packet(0)])
        outcome = Receiver(stream).recv(first_block=0, max_blocks=1)
        self.assertTrue(outcome.ok)
        self.assertEqual(stream.get_sent_data(), [CRC, ACK, CRC, ACK])

    def test_empty_transfer(self):
        stream = DummyStream([EOT])
        outcome = Receiver(stream).recv()
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.data, b'')
        self.assertEqual(stream.get_sent_data(), [CRC, ACK])


def run_in_thread(func, *args):
    """Runs func in a thread; returns (thread, results list)."""
    results = []
    thread = threading.Thread(target=lambda: results.append(func(*args)), daemon=True)
    thread.start()
    return thread, results


class TestLoopbackTransfer(unittest.TestCase):

    def setUp(self):
        self.sender_end, self.receiver_end = LoopbackStream.pair()

    def tearDown(self):
        self.sender_end.close()

    def test_xmodem_checksum_mode(self):
        data = os.urandom(300)
        sender = Sender(self.sender_end, timeout=2)
        thread, results = run_in_thread(sender.send, data)

        outcome = Receiver(self.receiver_end, mode=ChecksumMode.STANDARD, timeout=2,
                           probe_interval=1).recv()
        thread.join(10)

        self.assertTrue(results[0].ok)
        self.assertTrue(outcome.ok)
        # Three 128-byte blocks; padding is delivered as received
        self.assertEqual(len(outcome.data), 384)
        self.assertEqual(outcome.data[:300], data)
        self.assertEqual(outcome.data[300:], b'\x1a' * 84)

    def read_all(self, stream, size=None):
        data = b''
        while size is None or len(data) < size:
            chunk = stream.getc(4096 if size is None else size - len(data), 0.2)
            if chunk is None:
                break
            data += chunk
        return data

    def test_duplicate_ack_for_previous_block(self):
        data = b'x' * 256
        sender = Sender(self.sender_end, retry=1, initial_retry=20, timeout=1)
        thread, results = run_in_thread(sender.send, data)

        self.receiver_end.putc(CRC)
        self.assertEqual(self.read_all(self.receiver_end, 133), packet(1, data[:128]))
        # ACK block 1 twice, then never acknowledge block 2
        self.receiver_end.putc(ACK + ACK)
        thread.join(10)
        rest = self.read_all(self.receiver_end)

        self.assertEqual(results[0].status, TransferStatus.TIMED_OUT)
        self.assertEqual(rest, packet(2, data[128:]) * 2 + CAN + CAN)

    def test_xmodem_1k_crc(self):
        data = os.urandom(5000)
        sender = Sender(self.sender_end, block_size=1024, timeout=2)
        thread, results = run_in_thread(sender.send, data)

        outcome = Receiver(self.receiver_end, timeout=2, probe_interval=1).recv()
        thread.join(10)

        self.assertTrue(results[0].ok)
        self.assertEqual(sender.mode, ChecksumMode.CRC16)
        self.assertEqual(outcome.data[:5000], data)
        self.assertEqual(len(outcome.data), 5120)


if __name__ == '__main__':
    unittest.main()
