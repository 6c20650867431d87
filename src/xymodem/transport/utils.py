import time
import contextlib
import logging
import sys
from typing import Optional

def format_rate(size: int, elapsed_time: float) -> str:
    """Human readable transfer rate."""
    bytes_per_second = size / elapsed_time
    if bytes_per_second >= 1024 * 1024:
        return f"{bytes_per_second / (1024 * 1024):.2f} MiB/s"
    return f"{bytes_per_second / 1024:.2f} KiB/s"


@contextlib.contextmanager
def transfer_timer(logger: logging.Logger, operation_name: str = "Transfer",
                   data_size: Optional[int] = None,
                   log_level: int = logging.INFO,
                   cleanup_progress: bool = False):
    """
    Context manager for timing a transfer and logging its data rate.

    Args:
        logger: Logger instance to use for output
        operation_name: Name of the operation being timed (e.g., "Send", "Receive")
        data_size: Size in bytes of the data being transferred. May also be
            set after the transfer through the yielded dict's "size" key,
            for receives where the size is only known at the end.
        log_level: Logging level to use for the timing message
        cleanup_progress: If True, prints a newline before logging to clean up progress display

    Example:
        with transfer_timer(log, "Receive") as stats:
            outcome = receiver.recv()
            stats["size"] = outcome.bytes_transferred
    """
    stats = {"size": data_size}
    start_time = time.monotonic()
    try:
        yield stats
    finally:
        elapsed_time = time.monotonic() - start_time

        if cleanup_progress:
            sys.stdout.write("\n")
            sys.stdout.flush()

        message = f"{operation_name} finished in {elapsed_time:.2f} seconds"
        if stats["size"] and elapsed_time > 0:
            message += f" ({format_rate(stats['size'], elapsed_time)})"
        logger.log(log_level, message)
