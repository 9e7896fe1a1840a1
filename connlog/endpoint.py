"""
A single bindable network endpoint.

An ``Endpoint`` owns at most one OS socket. Its bound state is one of two
variants: a datagram binding (UDP, received from directly) or a stream
binding (TCP, a passively listening server socket). Each variant has exactly
one close path, so a listening socket can never be released twice.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from ipaddress import ip_address
from typing import Optional, Tuple, Union

from connlog.enums import AddressFamily, SocketProtocol
from connlog.errors import (
    AlreadyListening,
    BindFailed,
    InvalidAddress,
    ListenFailed,
    NameResolutionFailed,
    NotAServer,
    SocketCreationFailed,
)
from connlog.logging_utils import get_logger

logger = get_logger("connlog")

LISTEN_BACKLOG = 128
MAX_PORT = 65535


@dataclass
class _DatagramBinding:
    sock: socket.socket

    def close(self) -> None:
        self.sock.close()


@dataclass
class _StreamBinding:
    server: socket.socket

    @property
    def sock(self) -> socket.socket:
        return self.server

    def close(self) -> None:
        self.server.close()


_Binding = Union[_DatagramBinding, _StreamBinding]


@dataclass
class Connection:
    """An accepted TCP connection. The caller owns it and must close it."""

    sock: socket.socket
    peer_address: tuple

    def recv_into(self, buffer, nbytes: int = 0) -> int:
        return self.sock.recv_into(buffer, nbytes)

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass(eq=False)
class Endpoint:
    """One protocol/address/port listener.

    Constructed unbound; ``listen()`` moves it to bound, ``close()`` back.
    """

    address: bytes
    port: int
    protocol: SocketProtocol = SocketProtocol.UDP
    backlog: int = LISTEN_BACKLOG
    address_family: AddressFamily = field(init=False)
    listen_address: tuple = field(init=False)
    bound_address: Optional[tuple] = field(default=None, init=False)
    _binding: Optional[_Binding] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.address = bytes(self.address)
        self.protocol = SocketProtocol(self.protocol)
        try:
            self.address_family = AddressFamily.for_packed_length(len(self.address))
        except ValueError:
            raise InvalidAddress(
                f"address must be 4 or 16 bytes, got {len(self.address)}",
                protocol=self.protocol.value,
                port=self.port,
            ) from None
        if not 0 <= self.port <= MAX_PORT:
            raise InvalidAddress(
                f"port must be within 0..{MAX_PORT}, got {self.port}",
                protocol=self.protocol.value,
                port=self.port,
            )
        host = str(ip_address(self.address))
        if self.address_family is AddressFamily.IPv6:
            self.listen_address = (host, self.port, 0, 0)
        else:
            self.listen_address = (host, self.port)

    @classmethod
    def ipv4(cls, address: bytes, port: int, protocol: SocketProtocol = SocketProtocol.UDP) -> "Endpoint":
        if len(address) != 4:
            raise InvalidAddress(f"IPv4 address must be 4 bytes, got {len(address)}",
                                 protocol=SocketProtocol(protocol).value, port=port)
        return cls(address, port, protocol)

    @classmethod
    def ipv6(cls, address: bytes, port: int, protocol: SocketProtocol = SocketProtocol.UDP) -> "Endpoint":
        if len(address) != 16:
            raise InvalidAddress(f"IPv6 address must be 16 bytes, got {len(address)}",
                                 protocol=SocketProtocol(protocol).value, port=port)
        return cls(address, port, protocol)

    @property
    def host(self) -> str:
        return self.listen_address[0]

    @property
    def is_bound(self) -> bool:
        return self._binding is not None

    def describe(self) -> dict:
        """Log context for this endpoint."""
        return {"protocol": self.protocol.value, "host": self.host, "port": self.port}

    def fileno(self) -> Optional[int]:
        """Raw OS handle while bound, ``None`` otherwise."""
        if self._binding is None:
            return None
        return self._binding.sock.fileno()

    def listen(self) -> None:
        """Create, bind and (for TCP) listen.

        Every failure closes what was already acquired and leaves the endpoint
        unbound. Failures are raised, not logged; the caller reports them.
        ``close`` must be called once processing is done.
        """
        if self._binding is not None:
            raise AlreadyListening("endpoint is already listening", **self.describe())

        try:
            sock = socket.socket(self.address_family.socket_family, self.protocol.socket_type)
        except OSError as exc:
            raise SocketCreationFailed(f"socket() failed: {exc}", **self.describe()) from exc

        try:
            try:
                sock.bind(self.listen_address)
            except OSError as exc:
                raise BindFailed(f"bind() failed: {exc}", **self.describe()) from exc

            if self.protocol is SocketProtocol.TCP:
                try:
                    sock.listen(self.backlog)
                except OSError as exc:
                    raise ListenFailed(f"listen() failed: {exc}", **self.describe()) from exc

            try:
                bound_address = sock.getsockname()
            except OSError as exc:
                raise NameResolutionFailed(f"getsockname() failed: {exc}", **self.describe()) from exc
        except BaseException:
            sock.close()
            raise

        if self.protocol is SocketProtocol.TCP:
            self._binding = _StreamBinding(server=sock)
        else:
            self._binding = _DatagramBinding(sock=sock)
        self.bound_address = bound_address
        logger.info("Listening on %s", _format_address(bound_address), extra=self.describe())

    def accept(self) -> Connection:
        """Accept one pending connection on a bound TCP endpoint (blocking)."""
        binding = self._binding
        if not isinstance(binding, _StreamBinding):
            raise NotAServer("accept() requires a bound TCP endpoint", **self.describe())
        conn, peer = binding.server.accept()
        return Connection(sock=conn, peer_address=peer)

    def recvfrom_into(self, buffer) -> Tuple[int, tuple]:
        """Receive one datagram on a bound UDP endpoint into ``buffer``."""
        binding = self._binding
        if not isinstance(binding, _DatagramBinding):
            raise NotAServer("recvfrom_into() requires a bound UDP endpoint", **self.describe())
        return binding.sock.recvfrom_into(buffer)

    def close(self) -> None:
        """Release the binding. Safe to call repeatedly."""
        binding, self._binding = self._binding, None
        self.bound_address = None
        if binding is None:
            return
        binding.close()
        logger.debug("Closed endpoint", extra=self.describe())

    def __repr__(self) -> str:
        state = "bound" if self.is_bound else "unbound"
        return f"<Endpoint {self.protocol.value} {_format_address(self.listen_address)} {state}>"


def _format_address(address: tuple) -> str:
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
