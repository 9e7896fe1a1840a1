"""Protocol and address family identifiers shared across connlog."""

import socket
from enum import Enum


class SocketProtocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"

    @property
    def socket_type(self) -> int:
        return socket.SOCK_STREAM if self is SocketProtocol.TCP else socket.SOCK_DGRAM


class AddressFamily(str, Enum):
    IPv4 = "IPv4"
    IPv6 = "IPv6"

    @property
    def socket_family(self) -> int:
        return socket.AF_INET if self is AddressFamily.IPv4 else socket.AF_INET6

    @classmethod
    def for_packed_length(cls, length: int) -> "AddressFamily":
        """Map a packed address length (4 or 16) to its family."""
        if length == 4:
            return cls.IPv4
        if length == 16:
            return cls.IPv6
        raise ValueError(f"unsupported packed address length: {length}")
