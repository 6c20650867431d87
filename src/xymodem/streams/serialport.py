import logging
import serial
import serial.tools.list_ports
from typing import Optional, List, Dict

from ..errors import ChannelClosed
from .streams import Stream

# Constants
SERIAL_TIMEOUT = 0.3  # seconds
DEFAULT_BAUDRATE = 115200

class SerialStream(Stream):
    """Serial port connection established on initialization."""

    def __init__(self, address: str, baudrate: int = DEFAULT_BAUDRATE):
        """
        Initialize and open serial connection. Raises serial.SerialException on failure.
        """
        self.address = address
        self.serial: Optional[serial.Serial] = None
        self.log = logging.getLogger("SerialStream")

        self.log.debug(f"Attempting to open {address} at {baudrate} baud...")
        try:
            self.serial = serial.Serial(
                port=address,
                baudrate=baudrate,
                timeout=SERIAL_TIMEOUT,
                write_timeout=SERIAL_TIMEOUT,
            )
            # Drop anything the line collected before the transfer starts
            self.serial.reset_input_buffer()
            self.log.info(f"Serial port opened successfully: {address}")
        except (serial.SerialException, OSError) as e:
            self.log.error(f"Serial connection error during init: {str(e)}")
            self.serial = None
            raise serial.SerialException(f"Failed to open serial device {address}: {e}") from e

    def close(self) -> bool:
        """Close serial connection"""
        if not self.serial:
            self.log.debug("Close called but serial port is already closed.")
            return True
        try:
            if self.serial.is_open:
                self.serial.close()
                self.log.debug("Serial port closed.")
            return True
        except (serial.SerialException, OSError) as e:
            self.log.error(f"Error closing serial connection: {str(e)}")
            return False
        finally:
            self.serial = None

    def getc(self, size: int, timeout: float = 1.0) -> Optional[bytes]:
        """Read up to size bytes, waiting at most timeout seconds for the first one."""
        if not self.serial:
            raise ChannelClosed(f"{self.address} is closed")
        try:
            self.serial.timeout = timeout
            data = self.serial.read(1)
            if not data:
                return None
            # Whatever else is already buffered, without blocking again
            waiting = min(self.serial.in_waiting, size - 1)
            if waiting > 0:
                data += self.serial.read(waiting)
            return data
        except (serial.SerialException, OSError) as e:
            self.log.error(f"Error during serial read: {e}")
            raise ChannelClosed(str(e)) from e

    def putc(self, data: bytes, timeout: float = 1.0) -> Optional[int]:
        """Write bytes and flush them to the line."""
        if not self.serial:
            raise ChannelClosed(f"{self.address} is closed")
        try:
            self.serial.write_timeout = timeout
            bytes_written = self.serial.write(data)
            self.serial.flush()
            return bytes_written or None
        except serial.SerialTimeoutException:
            self.log.warning(f"Serial write of {len(data)} bytes timed out")
            return None
        except (serial.SerialException, OSError) as e:
            self.log.error(f"Error during serial write: {e}")
            raise ChannelClosed(str(e)) from e

    @staticmethod
    def list_ports() -> List[Dict[str, str]]:
        """List available serial ports (Static method - no self.log)."""
        ports = []
        for port in serial.tools.list_ports.comports():
            ports.append({
                'port': port.device,
                'description': port.description,
                'hwid': port.hwid
            })
        return ports
