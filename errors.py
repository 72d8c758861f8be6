class P2PChatError(Exception):
    """Base class for errors raised by the peer messaging layer."""


class TransportError(P2PChatError):
    """
    Socket or data channel failure.

    :param kind: short failure class, e.g. "server-error", "timeout",
                 "peer-unavailable", "not-initialized", "channel-error".
    """
    def __init__(self, message: str, kind: str = "channel-error"):
        super().__init__(message)
        self.kind = kind

    @property
    def fatal(self) -> bool:
        return self.kind == "server-error"


class ProtocolError(P2PChatError):
    """Malformed or undecodable frame."""


class ValidationError(P2PChatError):
    """Handshake payload rejected."""


class ResourceExhaustion(P2PChatError):
    """A file transfer session was abandoned before completion."""
