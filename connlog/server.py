"""
Service loop: bind the configured endpoints and drive the receive loop.

``start_server`` blocks until the cancellation token is set. Per-endpoint
bind failures and per-message receive failures are logged and counted but
never stop the loop.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Sequence

from connlog.cancellation import CancellationToken
from connlog.config import CONFIG, SocketSpecification
from connlog.endpoint_manager import EndpointManager, IncomingMessage, SourceAddress
from connlog.errors import ConnlogError, EndpointError
from connlog.logging_utils import get_logger

logger = get_logger("connlog")

MessageHandler = Callable[[bytes, SourceAddress], None]


class ServerCounters:
    """Simple counters for listener statistics."""

    def __init__(self) -> None:
        self.listeners_started = 0
        self.listeners_failed = 0
        self.messages = 0
        self.bytes = 0
        self.receive_errors = 0
        self.handler_errors = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "listeners_started": self.listeners_started,
            "listeners_failed": self.listeners_failed,
            "messages": self.messages,
            "bytes": self.bytes,
            "receive_errors": self.receive_errors,
            "handler_errors": self.handler_errors,
        }


def start_server(
    specifications: Sequence[SocketSpecification],
    cancellation_token: CancellationToken,
    *,
    on_message: Optional[MessageHandler] = None,
    cfg: Optional[Dict[str, Any]] = None,
) -> Dict[str, int]:
    """Run the listener until ``cancellation_token`` is set.

    With no specifications the server idles, sleeping in ``IDLE_SLEEP_S`` ticks.
    Otherwise one endpoint is bound per specification and every received
    message is logged and passed to ``on_message(payload, source_address)``.
    Returns the final counters.
    """
    cfg = CONFIG if cfg is None else cfg
    counters = ServerCounters()

    if not specifications:
        logger.warning("No socket configurations configured, server idling")
        _idle(cancellation_token, float(cfg["IDLE_SLEEP_S"]))
        return counters.to_dict()

    with EndpointManager(poll_timeout_ms=cfg["POLL_TIMEOUT_MS"], backlog=cfg["LISTEN_BACKLOG"]) as manager:
        for spec in specifications:
            logger.debug("Found config", extra={"protocol": spec.protocol.value, "host": spec.host,
                                                "port": spec.bind_port})
            try:
                manager.add_listener(spec.bind_address, spec.bind_port, spec.protocol)
                counters.listeners_started += 1
            except EndpointError as exc:
                counters.listeners_failed += 1
                logger.warning("Failed to add listener",
                               extra={**exc.context(), "host": spec.host, "error": str(exc)})

        message = IncomingMessage.with_capacity(cfg["MESSAGE_BUFFER_SIZE"])
        while not cancellation_token.cancelled:
            try:
                nbytes = manager.wait_for_message(message, cancellation_token)
            except ConnlogError as exc:
                counters.receive_errors += 1
                logger.warning("Failed to process message", extra={"error": str(exc),
                                                                   "error_type": type(exc).__name__})
                continue

            if nbytes is None:
                if not any(endpoint.is_bound for endpoint in manager.endpoints):
                    # Nothing bound to wait on; avoid spinning until something heals
                    _idle_once(cancellation_token, float(cfg["IDLE_SLEEP_S"]))
                continue

            payload = message.payload(nbytes)
            counters.messages += 1
            counters.bytes += nbytes
            logger.info(
                "Received message",
                extra={"size": nbytes, "source": str(message.source_address),
                       "payload": payload.decode("utf-8", errors="replace")},
            )
            if on_message is not None:
                try:
                    on_message(payload, message.source_address)
                except Exception as exc:
                    counters.handler_errors += 1
                    logger.exception("Message handler failed", extra={"error": str(exc)})

    logger.info("Server shutdown", extra={"counters": counters.to_dict()})
    return counters.to_dict()


def _idle(cancellation_token: CancellationToken, tick_s: float) -> None:
    while not cancellation_token.cancelled:
        time.sleep(tick_s)


def _idle_once(cancellation_token: CancellationToken, tick_s: float) -> None:
    if not cancellation_token.cancelled:
        time.sleep(tick_s)
