"""
Exceptions raised by the XMODEM/YMODEM engines and their streams.
"""


class XModemError(Exception):
    """Base class for all errors raised by this package."""


class ChannelClosed(XModemError):
    """The underlying stream was closed while reading or writing."""


# --- Packet decoding ---

class DecodeError(XModemError):
    """A raw byte sequence could not be decoded into a packet."""


class FramingError(DecodeError):
    """The packet is malformed (wrong start byte, length or block complement)."""


class BadComplement(FramingError):
    def __init__(self, block_number: int, complement: int):
        super().__init__(f"block complement mismatch: block={block_number}, complement={complement}")
        self.block_number = block_number
        self.complement = complement


class LengthMismatch(FramingError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class UnknownKind(FramingError):
    def __init__(self, kind):
        super().__init__(f"unknown packet kind: {kind!r}")
        self.kind = kind


class IntegrityError(DecodeError):
    """The packet trailer does not match its payload."""


class ChecksumMismatch(IntegrityError):
    def __init__(self, theirs: int, ours: int):
        super().__init__(f"checksum mismatch (theirs={theirs:04x}, ours={ours:04x})")
        self.theirs = theirs
        self.ours = ours


# --- Terminal transfer conditions ---
# Raised inside the engines and turned into a TransferOutcome before
# returning to the caller.

class CancelSignal(XModemError):
    """Transfer cancelled by the peer (CAN) or by the local user."""


class TransferTimeout(XModemError):
    """Retry budget used up waiting for a peer that never answered."""


class RetryBudgetExhausted(XModemError):
    """Retry budget used up on NAKs or corrupted packets."""


class HeaderError(XModemError):
    """A YMODEM block 0 payload could not be parsed."""


class TransferFailed(XModemError):
    """Raised by TransferOutcome.raise_for_status() for unsuccessful transfers."""

    def __init__(self, outcome):
        super().__init__(str(outcome))
        self.outcome = outcome
