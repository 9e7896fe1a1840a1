"""
Error taxonomy for connlog.

OS-level failures are wrapped into these types at the endpoint / manager
boundary so nothing above the service loop has to interpret errno values.
"""

from typing import Optional


class ConnlogError(Exception):
    """Root of every error raised by connlog."""
    pass


# Endpoint lifecycle
class EndpointError(ConnlogError):
    """Failure tied to a single endpoint; carries its protocol/address/port."""

    def __init__(self, message: str, *, protocol: Optional[str] = None,
                 host: Optional[str] = None, port: Optional[int] = None) -> None:
        super().__init__(message)
        self.protocol = protocol
        self.host = host
        self.port = port

    def context(self) -> dict:
        return {"protocol": self.protocol, "host": self.host, "port": self.port}


class InvalidAddress(EndpointError):
    """Packed address is neither 4 (IPv4) nor 16 (IPv6) bytes long, or the port is out of range."""
    pass


class AlreadyListening(EndpointError):
    pass


class SocketCreationFailed(EndpointError):
    pass


class BindFailed(EndpointError):
    pass


class ListenFailed(EndpointError):
    pass


class NameResolutionFailed(EndpointError):
    """getsockname() failed after a successful bind."""
    pass


class NotAServer(EndpointError):
    """Operation needs a bound endpoint of the other protocol."""
    pass


# Endpoint manager
class ManagerError(ConnlogError):
    pass


class MessageBufferTooLarge(ManagerError):
    pass


class EndpointNotFound(ManagerError):
    """A ready handle did not resolve to any owned endpoint."""
    pass


class PollFailed(ManagerError):
    pass


class ReceiveFailed(ManagerError):
    pass


# Configuration document
class ConfigParseError(ConnlogError):
    pass


class MaxFileSizeExceeded(ConfigParseError):
    pass


class OpenFailure(ConfigParseError):
    pass


class ReadFailure(ConfigParseError):
    pass


class ParseFailure(ConfigParseError):
    """The document is not valid JSON or fails validation. Usually a user error."""
    pass
