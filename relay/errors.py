"""
Relay error taxonomy.

Decode errors are scoped to the single frame or instruction being processed.
Setup failures are fatal at startup. Stream errors are reported, not retried.
"""


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class ConnectionSetupFailure(RelayError):
    """Upstream unreachable or credentials rejected at startup."""


class UpstreamStreamError(RelayError):
    """The long-lived upstream stream failed after it was opened."""


class MalformedDownstreamMessage(RelayError):
    """A consumer sent non-JSON or a message missing required fields."""


class DecodeError(RelayError):
    """A wire value could not be decoded."""


class InvalidAddressLength(DecodeError):
    def __init__(self, length: int):
        super().__init__(f"address must be 32 bytes, got {length}")
        self.length = length


class InvalidSignatureLength(DecodeError):
    def __init__(self, length: int):
        super().__init__(f"signature must be 64 bytes, got {length}")
        self.length = length
