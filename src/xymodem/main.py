"""
XMODEM/YMODEM CLI Tool

Send and receive files over a serial port or a TCP connection.
"""

import os
import sys
import argparse
import logging
from typing import Optional

from xymodem.errors import ChannelClosed
from xymodem.files import FileWriter, iter_batch_files, read_file, write_file
from xymodem.streams import SerialStream, TCPStream, Stream
from xymodem.streams.serialport import DEFAULT_BAUDRATE
from xymodem.transport import ChecksumMode, PacketKind, Receiver, Sender, YMODEM
from xymodem.transport.utils import transfer_timer
from xymodem.transport.xmodem import DEFAULT_RETRY, DEFAULT_TIMEOUT


def progress_callback(packet_size: int, total: int, success: int, errors: int) -> None:
    """
    Progress callback for sends

    Args:
        packet_size: Size of each packet in bytes
        total: Total number of packets to send
        success: Number of successfully sent packets
        errors: Number of errors (mostly for internal retry count)
    """
    if total > 0:
        percent = (success / total) * 100
        sys.stdout.write(f"\rProgress: {percent:.1f}% ({success}/{total} packets)")
        sys.stdout.flush()


def receive_progress_callback(packet_size: int, success: int, errors: int) -> None:
    """Progress callback for receives, where the total is not known."""
    sys.stdout.write(f"\rReceived: {success * packet_size} bytes ({success} packets)")
    sys.stdout.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='XMODEM/YMODEM file transfer tool',
        epilog="""Transfers files over a serial port or TCP connection."""
    )

    # Connection options (apply to all transfer subcommands)
    conn_group = parser.add_mutually_exclusive_group()
    conn_group.add_argument('--port', '-p', default=None,
                        help='Serial port (e.g. /dev/ttyUSB0 or COM3)')
    conn_group.add_argument('--tcp', default=None, metavar='HOST:PORT',
                        help='Connect over TCP instead of a serial port')
    parser.add_argument('--baudrate', '-b', type=int, default=DEFAULT_BAUDRATE,
                        help=f'Serial baud rate (default: {DEFAULT_BAUDRATE})')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help=f'Seconds to wait for each response (default: {DEFAULT_TIMEOUT:g})')
    parser.add_argument('--retry', type=int, default=DEFAULT_RETRY,
                        help=f'Retries per block before aborting (default: {DEFAULT_RETRY})')
    # Logging / Output options (Mutually Exclusive)
    log_level_group = parser.add_mutually_exclusive_group()
    log_level_group.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose DEBUG level logging')
    log_level_group.add_argument('--quiet', '-q', action='store_true',
                        help='Suppress INFO level logging, show only WARNINGs and ERRORs')

    subparsers = parser.add_subparsers(dest='action', title='Actions',
                                     description='Choose an action to perform', required=True)

    parser_send = subparsers.add_parser('send', help='Send one file with XMODEM')
    parser_send.add_argument('file', help='Path to the file to send')
    parser_send.add_argument('--1k', dest='one_k', action='store_true',
                        help='Use 1024-byte blocks (XMODEM-1k)')

    parser_recv = subparsers.add_parser('recv', help='Receive one file with XMODEM')
    parser_recv.add_argument('output', help='Where to save the received data')
    parser_recv.add_argument('--checksum', action='store_true',
                        help='Request the additive checksum instead of CRC-16')
    parser_recv.add_argument('--overwrite', action='store_true',
                        help='Allow overwriting an existing output file')

    parser_sendb = subparsers.add_parser('sendb', help='Send files with YMODEM batch')
    parser_sendb.add_argument('files', nargs='+', help='Paths of the files to send')

    parser_recvb = subparsers.add_parser('recvb', help='Receive files with YMODEM batch')
    parser_recvb.add_argument('--directory', '-d', default='.',
                        help='Directory to save received files in (default: current directory)')
    parser_recvb.add_argument('--overwrite', action='store_true',
                        help='Allow overwriting existing files')

    subparsers.add_parser('ports', help='List available serial ports and exit')
    return parser


def open_stream(args: argparse.Namespace) -> Optional[Stream]:
    log = logging.getLogger("main")
    if args.tcp:
        return TCPStream(args.tcp, verbose=args.verbose)
    if args.port:
        return SerialStream(args.port, baudrate=args.baudrate)
    log.error("No connection given, use --port or --tcp")
    return None


def run_action(args: argparse.Namespace, stream: Stream) -> int:
    """Run one transfer subcommand over an open stream; returns the exit code."""
    log = logging.getLogger("main")
    send_progress = progress_callback if not args.quiet else None
    recv_progress = receive_progress_callback if not args.quiet else None
    show_progress = not args.quiet

    if args.action == 'send':
        data = read_file(args.file)
        sender = Sender(stream, block_size=1024 if args.one_k else 128, retry=args.retry,
                        timeout=args.timeout, callback=send_progress)
        log.info(f"Sending {args.file} ({len(data)} bytes), waiting for receiver...")
        with transfer_timer(log, "Send", len(data), cleanup_progress=show_progress):
            outcome = sender.send(data)

    elif args.action == 'recv':
        if os.path.exists(args.output) and not args.overwrite:
            log.error(f"Output file exists: {args.output} (use --overwrite)")
            return 1
        mode = ChecksumMode.STANDARD if args.checksum else ChecksumMode.CRC16
        receiver = Receiver(stream, mode=mode, retry=args.retry, timeout=args.timeout,
                            callback=recv_progress)
        with transfer_timer(log, "Receive", cleanup_progress=show_progress) as stats:
            outcome = receiver.recv()
            stats["size"] = outcome.bytes_transferred
        if outcome.ok:
            write_file(args.output, outcome.data)

    elif args.action == 'sendb':
        modem = YMODEM(stream, retry=args.retry, timeout=args.timeout, callback=send_progress)
        with transfer_timer(log, "Batch send", cleanup_progress=show_progress) as stats:
            result = modem.send(iter_batch_files(args.files))
            stats["size"] = result.outcome.bytes_transferred
        outcome = result.outcome

    elif args.action == 'recvb':
        modem = YMODEM(stream, retry=args.retry, timeout=args.timeout, callback=recv_progress)
        writer = FileWriter(args.directory, overwrite=args.overwrite)
        with transfer_timer(log, "Batch receive", cleanup_progress=show_progress) as stats:
            result = modem.recv(writer)
            stats["size"] = result.outcome.bytes_transferred
        outcome = result.outcome
        for path in writer.written:
            print(path)

    else:
        log.error(f"Unknown action: {args.action}")
        return 1

    if outcome.ok:
        log.info(f"Transfer {outcome}")
        return 0
    log.error(f"Transfer failed: {outcome}")
    return 1


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    # Set up logging level based on flags
    log_level = logging.INFO # Default
    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    log = logging.getLogger("main")

    # Handle ports listing separately as it doesn't need a connection
    if args.action == 'ports':
        ports = SerialStream.list_ports()
        if not ports:
            log.info("No serial ports found")
        for port in ports:
            print(f"{port['port']}\t{port['description']}\t{port['hwid']}")
        return 0

    try:
        stream = open_stream(args)
    except OSError as e:
        log.error(f"Failed to connect: {e}")
        return 1
    if stream is None:
        return 1

    exit_code = 1 # Default to error
    try:
        exit_code = run_action(args, stream)
    except KeyboardInterrupt:
        log.warning("Operation cancelled by user")
        # Tell the peer before closing the line
        try:
            stream.putc(PacketKind.CAN.byte * 2)
        except ChannelClosed as e:
            log.debug(f"Could not send CAN: {e}")
        exit_code = 1
    except OSError as e:
        log.error(f"File error: {e}")
        exit_code = 1
    finally:
        stream.close()

    return exit_code

if __name__ == "__main__":
    sys.exit(main())
