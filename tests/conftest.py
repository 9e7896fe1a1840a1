"""Shared fixtures for the connlog test suite."""

import socket

import pytest

from connlog.cancellation import CancellationToken

LOOPBACK_V4 = bytes([127, 0, 0, 1])
LOOPBACK_V6 = bytes(15) + b"\x01"


def alloc_port(sock_type=socket.SOCK_DGRAM, family=socket.AF_INET) -> int:
    """Reserve an available loopback port for tests."""
    host = "::1" if family == socket.AF_INET6 else "127.0.0.1"
    with socket.socket(family, sock_type) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def ipv6_available() -> bool:
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as sock:
            sock.bind(("::1", 0))
        return True
    except OSError:
        return False


@pytest.fixture
def udp_port():
    return alloc_port(socket.SOCK_DGRAM)


@pytest.fixture
def tcp_port():
    return alloc_port(socket.SOCK_STREAM)


@pytest.fixture
def token():
    return CancellationToken()
