"""
Endpoint manager: owns a set of endpoints and multiplexes their readiness.

Uses the low-level ``selectors`` stdlib facility with a bounded timeout so
the cancellation token is re-checked at least once per timeout window.
Exactly one message is surfaced per ``wait_for_message`` call; when several
endpoints are ready the first one in collection order wins and the others
are picked up by later calls.
"""

from __future__ import annotations

import selectors
import socket
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from connlog.cancellation import CancellationToken
from connlog.endpoint import Endpoint
from connlog.enums import SocketProtocol
from connlog.errors import (
    EndpointError,
    EndpointNotFound,
    MessageBufferTooLarge,
    PollFailed,
    ReceiveFailed,
)
from connlog.logging_utils import get_logger

logger = get_logger("connlog")

DEFAULT_POLL_TIMEOUT_MS = 5000

# Upper bound for the message buffer; anything larger is a misconfiguration
MAX_MESSAGE_BUFFER_LENGTH = 2**32 - 1


@dataclass
class SourceAddress:
    """Mutable sender address, overwritten on every receive."""

    family: int = 0
    host: str = ""
    port: int = 0

    def clear(self) -> None:
        self.family = 0
        self.host = ""
        self.port = 0

    def update(self, family: int, raw_address: tuple) -> None:
        self.family = family
        self.host = raw_address[0]
        self.port = raw_address[1]

    def __str__(self) -> str:
        if self.family == socket.AF_INET6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class IncomingMessage:
    """Shared receive record. Consume it before the next wait call."""

    buffer: bytearray
    source_address: SourceAddress = field(default_factory=SourceAddress)

    @classmethod
    def with_capacity(cls, size: int) -> "IncomingMessage":
        return cls(buffer=bytearray(size))

    def clear(self) -> None:
        self.buffer[:] = bytes(len(self.buffer))
        self.source_address.clear()

    def payload(self, nbytes: int) -> bytes:
        return bytes(self.buffer[:nbytes])


class EndpointManager:
    """Owns endpoints, self-heals unbound ones and returns one message per call."""

    def __init__(
        self,
        poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS,
        max_message_length: int = MAX_MESSAGE_BUFFER_LENGTH,
        backlog: Optional[int] = None,
    ) -> None:
        self.poll_timeout_ms = poll_timeout_ms
        self.max_message_length = max_message_length
        self.backlog = backlog
        self._endpoints: List[Endpoint] = []

    @property
    def endpoints(self) -> Tuple[Endpoint, ...]:
        return tuple(self._endpoints)

    def add_listener(self, address: bytes, port: int, protocol: SocketProtocol = SocketProtocol.UDP) -> Endpoint:
        """Bind a new endpoint on ``address``/``port``.

        The endpoint is kept (and later self-healed) only if this first
        ``listen()`` succeeds; otherwise the error propagates and nothing is kept.
        """
        endpoint = Endpoint(address, port, protocol)
        if self.backlog is not None:
            endpoint.backlog = self.backlog
        endpoint.listen()
        self._endpoints.append(endpoint)
        return endpoint

    def wait_for_message(self, out_message: IncomingMessage, cancellation_token: CancellationToken) -> Optional[int]:
        """Wait for the next message and load it into ``out_message``.

        Returns the byte count, or ``None`` when cancelled or when there is no
        bound endpoint left to wait on.
        """
        while not cancellation_token.cancelled:
            self._restart_unbound_endpoints()

            selector = selectors.DefaultSelector()
            try:
                for endpoint in self._endpoints:
                    handle = endpoint.fileno()
                    if handle is None:
                        continue
                    try:
                        selector.register(handle, selectors.EVENT_READ, data=handle)
                    except (ValueError, KeyError, OSError) as exc:
                        raise PollFailed(f"could not register handle {handle}: {exc}") from exc
                if not selector.get_map():
                    return None

                try:
                    events = selector.select(timeout=self.poll_timeout_ms / 1000.0)
                except OSError as exc:
                    raise PollFailed(f"select() failed: {exc}") from exc
            finally:
                selector.close()

            if not events:
                logger.debug("No messages within poll timeout", extra={"timeout_ms": self.poll_timeout_ms})
                continue

            ready = {key.data for key, mask in events if mask & selectors.EVENT_READ}
            handle = self._first_ready_handle(ready)
            if handle is None:
                continue
            endpoint = self._endpoint_for_handle(handle)
            return self._receive_next_message(endpoint, out_message)

        return None

    def close(self) -> None:
        """Close every endpoint and forget them."""
        endpoints, self._endpoints = self._endpoints, []
        for endpoint in endpoints:
            endpoint.close()

    def __enter__(self) -> "EndpointManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _restart_unbound_endpoints(self) -> None:
        for endpoint in self._endpoints:
            if endpoint.is_bound:
                continue
            try:
                endpoint.listen()
                logger.info("Restarted endpoint", extra=endpoint.describe())
            except EndpointError as exc:
                logger.warning("Failed to restart endpoint", extra={**exc.context(), "error": str(exc)})

    def _first_ready_handle(self, ready: set) -> Optional[int]:
        # Scan in collection order; the selector's own event order is arbitrary
        for endpoint in self._endpoints:
            handle = endpoint.fileno()
            if handle is not None and handle in ready:
                return handle
        # A ready handle that no endpoint claims is a logic error
        if ready:
            return next(iter(ready))
        return None

    def _endpoint_for_handle(self, handle: int) -> Endpoint:
        for endpoint in self._endpoints:
            if endpoint.fileno() == handle:
                return endpoint
        raise EndpointNotFound(f"no endpoint owns handle {handle}")

    def _receive_next_message(self, endpoint: Endpoint, out_message: IncomingMessage) -> int:
        if len(out_message.buffer) > self.max_message_length:
            raise MessageBufferTooLarge(
                f"message buffer of {len(out_message.buffer)} bytes exceeds {self.max_message_length}"
            )

        out_message.clear()
        family = endpoint.address_family.socket_family

        if endpoint.protocol is SocketProtocol.TCP:
            return self._receive_stream_message(endpoint, family, out_message)

        try:
            nbytes, source = endpoint.recvfrom_into(out_message.buffer)
        except OSError as exc:
            raise ReceiveFailed(f"recvfrom() failed on {endpoint!r}: {exc}") from exc
        out_message.source_address.update(family, source)
        return nbytes

    @staticmethod
    def _receive_stream_message(endpoint: Endpoint, family: int, out_message: IncomingMessage) -> int:
        try:
            connection = endpoint.accept()
        except OSError as exc:
            raise ReceiveFailed(f"accept() failed on {endpoint!r}: {exc}") from exc

        with connection:
            out_message.source_address.update(family, connection.peer_address)
            view = memoryview(out_message.buffer)
            total = 0
            try:
                # Read until the buffer is full or the peer closes its side
                while total < len(view):
                    nbytes = connection.recv_into(view[total:])
                    if nbytes == 0:
                        break
                    total += nbytes
            except OSError as exc:
                raise ReceiveFailed(f"read failed on connection from {out_message.source_address}: {exc}") from exc
        return total
