import enum
from dataclasses import dataclass

from ..errors import TransferFailed


class TransferStatus(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed out"
    PROTOCOL_ERROR = "protocol error"


@dataclass(frozen=True)
class TransferOutcome:
    """
    Terminal result of one transfer.

    ``data`` holds the reassembled bytes of a completed receive and is
    always empty for a failed one.
    """
    status: TransferStatus
    bytes_transferred: int = 0
    detail: str = ""
    data: bytes = b""

    @classmethod
    def completed(cls, bytes_transferred: int, data: bytes = b"") -> "TransferOutcome":
        return cls(TransferStatus.COMPLETED, bytes_transferred, data=data)

    @classmethod
    def cancelled(cls, detail: str = "") -> "TransferOutcome":
        return cls(TransferStatus.CANCELLED, detail=detail)

    @classmethod
    def timed_out(cls, detail: str = "") -> "TransferOutcome":
        return cls(TransferStatus.TIMED_OUT, detail=detail)

    @classmethod
    def protocol_error(cls, detail: str) -> "TransferOutcome":
        return cls(TransferStatus.PROTOCOL_ERROR, detail=detail)

    @property
    def ok(self) -> bool:
        return self.status is TransferStatus.COMPLETED

    def raise_for_status(self) -> None:
        if not self.ok:
            raise TransferFailed(self)

    def __str__(self) -> str:
        if self.ok:
            return f"completed ({self.bytes_transferred} bytes)"
        if self.detail:
            return f"{self.status.value}: {self.detail}"
        return self.status.value
