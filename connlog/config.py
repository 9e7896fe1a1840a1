"""
Configuration for the connlog listener.

Two concerns live here:

1. ``CONFIG``: runtime settings with defaults, overridable through
   ``CONNLOG_<KEY>`` environment variables and validated on import.
2. The socket configuration document: a JSON file listing the endpoints to
   bind, loaded by ``load_config_file`` into ``SocketSpecification`` values.
"""

import json
import os
from dataclasses import dataclass
from ipaddress import ip_address
from typing import Any, Dict, Tuple, Union

from connlog.enums import SocketProtocol
from connlog.errors import (
    MaxFileSizeExceeded,
    OpenFailure,
    ParseFailure,
    ReadFailure,
)
from connlog.logging_utils import get_logger

logger = get_logger("connlog")


# Default runtime settings - all required keys with correct types
CONFIG = {
    # Multiplexing wait timeout; also bounds shutdown latency
    "POLL_TIMEOUT_MS": 5000,
    # Size of the shared message buffer handed to the endpoint manager
    "MESSAGE_BUFFER_SIZE": 1024,
    # Backlog passed to listen() for TCP endpoints
    "LISTEN_BACKLOG": 128,
    # Sleep tick while idling without any configured endpoint
    "IDLE_SLEEP_S": 1.0,
    "LOG_LEVEL": "INFO",
    "LOG_DIR": "logs",
}

_REQUIRED_KEYS = {
    "POLL_TIMEOUT_MS": int,
    "MESSAGE_BUFFER_SIZE": int,
    "LISTEN_BACKLOG": int,
    "IDLE_SLEEP_S": float,
    "LOG_LEVEL": str,
    "LOG_DIR": str,
}

ENV_PREFIX = "CONNLOG_"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# Maximum allowed size of the socket configuration document
DEFAULT_MAX_CONFIG_FILE_SIZE = 1024 * 1024
MAX_CONFIG_FILE_SIZE_ENV = "CONNLOG_MAX_CONFIG_FILE_SIZE"

# Must match connlog.endpoint_manager.MAX_MESSAGE_BUFFER_LENGTH
_MAX_MESSAGE_BUFFER_SIZE = 2**32 - 1


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise ValueError("<reason>") on any violation.
    """
    missing_keys = set(_REQUIRED_KEYS) - set(cfg)
    if missing_keys:
        raise ValueError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if expected_type is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"CONFIG[{key}] must be float seconds, got {type(value).__name__}")
            continue
        if expected_type is int and isinstance(value, bool):
            raise ValueError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise ValueError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    if not (1 <= cfg["POLL_TIMEOUT_MS"] <= 60_000):
        raise ValueError(f"CONFIG[POLL_TIMEOUT_MS] must be 1..60000, got {cfg['POLL_TIMEOUT_MS']}")
    if not (1 <= cfg["MESSAGE_BUFFER_SIZE"] <= _MAX_MESSAGE_BUFFER_SIZE):
        raise ValueError(f"CONFIG[MESSAGE_BUFFER_SIZE] must be 1..{_MAX_MESSAGE_BUFFER_SIZE}, "
                         f"got {cfg['MESSAGE_BUFFER_SIZE']}")
    if not (1 <= cfg["LISTEN_BACKLOG"] <= 65535):
        raise ValueError(f"CONFIG[LISTEN_BACKLOG] must be 1..65535, got {cfg['LISTEN_BACKLOG']}")
    if cfg["IDLE_SLEEP_S"] <= 0:
        raise ValueError(f"CONFIG[IDLE_SLEEP_S] must be > 0, got {cfg['IDLE_SLEEP_S']}")
    if cfg["LOG_LEVEL"].upper() not in _LOG_LEVELS:
        raise ValueError(f"CONFIG[LOG_LEVEL] must be one of {sorted(_LOG_LEVELS)}, got {cfg['LOG_LEVEL']!r}")
    if not cfg["LOG_DIR"]:
        raise ValueError("CONFIG[LOG_DIR] must be a non-empty string")


def apply_env_overrides(cfg: Dict[str, Any], environ=None) -> Dict[str, Any]:
    """Return a copy of ``cfg`` with ``CONNLOG_<KEY>`` environment values applied."""
    environ = os.environ if environ is None else environ
    result = cfg.copy()

    for key, expected_type in _REQUIRED_KEYS.items():
        env_var = ENV_PREFIX + key
        if env_var not in environ:
            continue
        env_value = environ[env_var]
        try:
            if expected_type is int:
                result[key] = int(env_value)
            elif expected_type is float:
                result[key] = float(env_value)
            else:
                result[key] = str(env_value)
        except ValueError:
            raise ValueError(f"Invalid {expected_type.__name__} value for {env_var}: {env_value}")

    return result


# Apply environment overrides and validate
CONFIG = apply_env_overrides(CONFIG)
validate_config(CONFIG)


# ---------------------------------------------------------------------------
# Socket configuration document
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SocketSpecification:
    """One endpoint to bind: protocol, packed address (4 or 16 bytes) and port."""

    protocol: SocketProtocol
    bind_address: bytes
    bind_port: int

    def __post_init__(self) -> None:
        if len(self.bind_address) not in (4, 16):
            raise ValueError(f"bind_address must be 4 or 16 bytes, got {len(self.bind_address)}")
        if isinstance(self.bind_port, bool) or not (1 <= self.bind_port <= 65535):
            raise ValueError(f"bind_port must be in 1..65535, got {self.bind_port!r}")

    @property
    def host(self) -> str:
        return str(ip_address(self.bind_address))


@dataclass(frozen=True)
class ApplicationConfiguration:
    socket_configurations: Tuple[SocketSpecification, ...] = ()


_SOCKET_FIELDS = {"protocol", "bind_address", "bind_port"}


def load_config_file(file_path: Union[str, os.PathLike]) -> ApplicationConfiguration:
    """Load the socket configuration document at ``file_path``.

    ::

        load_config_file("/etc/connlog/config.json")

    The path must be absolute.

    The file size may not exceed ``DEFAULT_MAX_CONFIG_FILE_SIZE``. The limit can be
    changed through the ``CONNLOG_MAX_CONFIG_FILE_SIZE`` environment variable, which
    is ignored (with a warning) when its value is not a non-negative integer.
    Exceeding the limit raises ``MaxFileSizeExceeded``.
    """
    path = os.fspath(file_path)
    if not os.path.isabs(path):
        logger.error("Config path must be absolute", extra={"path": path})
        raise OpenFailure(f"config path must be absolute: {path}")

    try:
        fh = open(path, "rb")
    except OSError as exc:
        logger.error("Could not open config file", extra={"path": path, "error": str(exc)})
        raise OpenFailure(f"could not open {path}: {exc}") from exc

    with fh:
        try:
            size = os.fstat(fh.fileno()).st_size
        except OSError as exc:
            logger.error("Could not stat config file", extra={"path": path, "error": str(exc)})
            raise ReadFailure(f"could not stat {path}: {exc}") from exc

        limit = max_config_file_size()
        if size > limit:
            logger.error("Config file too large", extra={"path": path, "size": size, "limit": limit})
            raise MaxFileSizeExceeded(f"{path} is {size} bytes, limit is {limit}")

        try:
            contents = fh.read(limit + 1)
        except OSError as exc:
            logger.error("Could not read config file", extra={"path": path, "error": str(exc)})
            raise ReadFailure(f"could not read {path}: {exc}") from exc

    # The file may have grown between fstat() and read()
    if len(contents) > limit:
        raise MaxFileSizeExceeded(f"{path} exceeds limit of {limit} bytes")

    return parse_config_document(contents)


def max_config_file_size(environ=None) -> int:
    """Effective size cap for the configuration document."""
    environ = os.environ if environ is None else environ
    raw = environ.get(MAX_CONFIG_FILE_SIZE_ENV)
    if raw is None:
        return DEFAULT_MAX_CONFIG_FILE_SIZE
    try:
        value = int(raw.strip(), 10)
    except ValueError:
        logger.warning("Invalid config size limit", extra={"value": raw})
        return DEFAULT_MAX_CONFIG_FILE_SIZE
    if value < 0:
        logger.warning("Invalid config size limit", extra={"value": raw})
        return DEFAULT_MAX_CONFIG_FILE_SIZE
    return value


def parse_config_document(data: Union[bytes, str]) -> ApplicationConfiguration:
    """Parse the JSON document into an ``ApplicationConfiguration``.

    Raises ``ReadFailure`` for undecodable bytes and ``ParseFailure`` for invalid
    JSON or any field that does not validate.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ReadFailure(f"config file is not valid UTF-8: {exc}") from exc

    try:
        document = json.loads(data)
    except (ValueError, RecursionError) as exc:
        # Huge integer literals raise ValueError; deep nesting raises RecursionError
        logger.error("Could not parse config file", extra={"error": str(exc)})
        raise ParseFailure(f"invalid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise ParseFailure("config document must be a JSON object")

    unknown = set(document) - {"socket_configurations"}
    if unknown:
        raise ParseFailure(f"unknown field(s): {', '.join(sorted(unknown))}")

    entries = document.get("socket_configurations")
    if not isinstance(entries, list):
        raise ParseFailure("socket_configurations must be a list")

    specs = []
    for index, entry in enumerate(entries):
        try:
            specs.append(_parse_socket_configuration(entry))
        except ParseFailure as exc:
            logger.error("Invalid socket configuration", extra={"index": index, "error": str(exc)})
            raise ParseFailure(f"socket_configurations[{index}]: {exc}") from exc

    return ApplicationConfiguration(socket_configurations=tuple(specs))


def _parse_socket_configuration(entry: Any) -> SocketSpecification:
    if not isinstance(entry, dict):
        raise ParseFailure("expected an object")

    unknown = set(entry) - _SOCKET_FIELDS
    if unknown:
        raise ParseFailure(f"unknown field(s): {', '.join(sorted(unknown))}")
    if "bind_address" not in entry:
        raise ParseFailure("missing bind_address")
    if "bind_port" not in entry:
        raise ParseFailure("missing bind_port")

    spec = SocketSpecification(
        protocol=parse_protocol(entry.get("protocol", SocketProtocol.UDP.value)),
        bind_address=parse_ip_address(entry["bind_address"]),
        bind_port=parse_port(entry["bind_port"]),
    )
    logger.debug("Parsed socket configuration",
                 extra={"protocol": spec.protocol.value, "host": spec.host, "port": spec.bind_port})
    return spec


def parse_protocol(value: Any) -> SocketProtocol:
    """Only UDP is accepted from configuration; TCP is reachable programmatically."""
    if value == SocketProtocol.UDP.value:
        return SocketProtocol.UDP
    raise ParseFailure(f"expected protocol 'UDP', got {value!r}")


def parse_ip_address(value: Any) -> bytes:
    """Convert an IPv4/IPv6 string (link-local scope ids allowed) to packed bytes."""
    if not isinstance(value, str):
        raise ParseFailure(f"bind_address must be a string, got {type(value).__name__}")
    try:
        return ip_address(value).packed
    except ValueError as exc:
        raise ParseFailure(f"invalid bind_address {value!r}") from exc


def parse_port(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseFailure(f"bind_port must be an integer, got {value!r}")
    if not (1 <= value <= 65535):
        raise ParseFailure(f"port {value} is outside valid range (1 to 65535)")
    return value
