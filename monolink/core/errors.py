"""Exception types shared by the codec and the UDP transport."""


class InvalidArgumentError(ValueError):
    """Raised when a message cannot be built from the given values."""


class ProtocolError(Exception):
    """Raised when an inbound datagram is not a decodable OSC message."""


class TruncatedMessageError(ProtocolError):
    """Datagram ended before the address, type tags or an argument did."""


class MalformedMessageError(ProtocolError):
    """Datagram is complete but not a well-formed OSC message."""


class TransportError(Exception):
    """Raised when a datagram could not be sent to host:port."""

    def __init__(self, message: str, host: str, port: int):
        super().__init__(f"{message} ({host}:{port})")
        self.host = host
        self.port = port


class TransportPermissionError(TransportError):
    """Socket creation or send was not permitted by the OS."""


class TransportConnectionRefusedError(TransportError):
    """Nothing is listening at the target (ICMP port unreachable)."""
