"""
Tests for runtime settings validation and the socket configuration loader.
"""

import json

import pytest

from connlog.config import (
    CONFIG,
    DEFAULT_MAX_CONFIG_FILE_SIZE,
    MAX_CONFIG_FILE_SIZE_ENV,
    SocketSpecification,
    _REQUIRED_KEYS,
    apply_env_overrides,
    load_config_file,
    max_config_file_size,
    parse_config_document,
    parse_port,
    validate_config,
)
from connlog.enums import SocketProtocol
from connlog.errors import (
    ConfigParseError,
    MaxFileSizeExceeded,
    OpenFailure,
    ParseFailure,
    ReadFailure,
)


def _document(*entries) -> str:
    return json.dumps({"socket_configurations": list(entries)})


def _write(tmp_path, content, name="config.json"):
    path = tmp_path / name
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


class TestRuntimeConfig:
    """Test CONFIG defaults, types and env overrides."""

    def test_config_completeness_and_types(self):
        validate_config(CONFIG)
        for key in _REQUIRED_KEYS:
            assert key in CONFIG, f"Missing required key: {key}"

    def test_defaults(self):
        assert CONFIG["POLL_TIMEOUT_MS"] == 5000
        assert CONFIG["LISTEN_BACKLOG"] == 128
        assert CONFIG["IDLE_SLEEP_S"] == 1.0

    def test_missing_key_rejected(self):
        bad_config = CONFIG.copy()
        del bad_config["POLL_TIMEOUT_MS"]
        with pytest.raises(ValueError, match="missing required keys: POLL_TIMEOUT_MS"):
            validate_config(bad_config)

    @pytest.mark.parametrize("key,value", [
        ("POLL_TIMEOUT_MS", 0),
        ("POLL_TIMEOUT_MS", 60_001),
        ("MESSAGE_BUFFER_SIZE", 0),
        ("LISTEN_BACKLOG", 0),
        ("IDLE_SLEEP_S", 0),
        ("LOG_LEVEL", "CHATTY"),
        ("LOG_DIR", ""),
        ("POLL_TIMEOUT_MS", True),
        ("LISTEN_BACKLOG", "128"),
    ])
    def test_out_of_range_rejected(self, key, value):
        bad_config = CONFIG.copy()
        bad_config[key] = value
        with pytest.raises(ValueError, match=key):
            validate_config(bad_config)

    def test_env_overrides_applied(self):
        result = apply_env_overrides(CONFIG, environ={
            "CONNLOG_POLL_TIMEOUT_MS": "250",
            "CONNLOG_IDLE_SLEEP_S": "0.5",
            "CONNLOG_LOG_LEVEL": "DEBUG",
        })
        assert result["POLL_TIMEOUT_MS"] == 250
        assert result["IDLE_SLEEP_S"] == 0.5
        assert result["LOG_LEVEL"] == "DEBUG"
        # Original left untouched
        assert CONFIG["POLL_TIMEOUT_MS"] == 5000

    def test_invalid_env_override(self):
        with pytest.raises(ValueError, match="CONNLOG_LISTEN_BACKLOG"):
            apply_env_overrides(CONFIG, environ={"CONNLOG_LISTEN_BACKLOG": "lots"})


class TestSocketSpecification:

    def test_host_rendering(self):
        spec = SocketSpecification(SocketProtocol.UDP, bytes([10, 0, 0, 1]), 514)
        assert spec.host == "10.0.0.1"

    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_invalid_port(self, port):
        with pytest.raises(ValueError):
            SocketSpecification(SocketProtocol.UDP, bytes(4), port)

    def test_invalid_address_length(self):
        with pytest.raises(ValueError):
            SocketSpecification(SocketProtocol.UDP, bytes(5), 514)


class TestParseDocument:

    def test_ipv4_entry(self):
        config = parse_config_document(_document(
            {"protocol": "UDP", "bind_address": "127.0.0.1", "bind_port": 5514}
        ))
        assert config.socket_configurations == (
            SocketSpecification(SocketProtocol.UDP, bytes([127, 0, 0, 1]), 5514),
        )

    def test_ipv6_entry(self):
        config = parse_config_document(_document(
            {"protocol": "UDP", "bind_address": "::1", "bind_port": 5514}
        ))
        spec = config.socket_configurations[0]
        assert spec.bind_address == bytes(15) + b"\x01"
        assert spec.host == "::1"

    def test_link_local_with_scope(self):
        config = parse_config_document(_document(
            {"protocol": "UDP", "bind_address": "fe80::1%1", "bind_port": 5514}
        ))
        assert len(config.socket_configurations[0].bind_address) == 16

    def test_protocol_defaults_to_udp(self):
        config = parse_config_document(_document({"bind_address": "0.0.0.0", "bind_port": 9}))
        assert config.socket_configurations[0].protocol is SocketProtocol.UDP

    def test_empty_list(self):
        assert parse_config_document(_document()).socket_configurations == ()

    def test_bytes_input(self):
        data = _document({"bind_address": "0.0.0.0", "bind_port": 9}).encode()
        assert len(parse_config_document(data).socket_configurations) == 1

    @pytest.mark.parametrize("port", [1, 80, 514, 65535])
    def test_valid_ports_round_trip(self, port):
        config = parse_config_document(_document({"bind_address": "0.0.0.0", "bind_port": port}))
        assert config.socket_configurations[0].bind_port == port

    @pytest.mark.parametrize("port", [0, -1, 65536, 100000, "80", 80.0, True, None])
    def test_invalid_ports_rejected(self, port):
        with pytest.raises(ParseFailure):
            parse_config_document(_document({"bind_address": "0.0.0.0", "bind_port": port}))

    @pytest.mark.parametrize("address", ["", "localhost", "256.0.0.1", "1.2.3", "::g", 127])
    def test_invalid_addresses_rejected(self, address):
        with pytest.raises(ParseFailure):
            parse_config_document(_document({"bind_address": address, "bind_port": 514}))

    @pytest.mark.parametrize("protocol", ["TCP", "udp", "SCTP", 17])
    def test_only_udp_protocol_accepted(self, protocol):
        with pytest.raises(ParseFailure, match="protocol"):
            parse_config_document(_document(
                {"protocol": protocol, "bind_address": "0.0.0.0", "bind_port": 514}
            ))

    def test_missing_fields(self):
        with pytest.raises(ParseFailure, match="missing bind_address"):
            parse_config_document(_document({"bind_port": 514}))
        with pytest.raises(ParseFailure, match="missing bind_port"):
            parse_config_document(_document({"bind_address": "0.0.0.0"}))

    def test_unknown_field(self):
        with pytest.raises(ParseFailure, match="unknown field"):
            parse_config_document(_document(
                {"bind_address": "0.0.0.0", "bind_port": 514, "backlog": 5}
            ))

    def test_error_names_entry_index(self):
        with pytest.raises(ParseFailure, match=r"socket_configurations\[1\]"):
            parse_config_document(_document(
                {"bind_address": "0.0.0.0", "bind_port": 514},
                {"bind_address": "0.0.0.0", "bind_port": 0},
            ))

    @pytest.mark.parametrize("document", [
        "", "{", "[]", '{"socket_configurations": {}}', "{}", '{"sockets": []}',
        '{"socket_configurations": [1]}',
        '{"socket_configurations": ' + "[" * 200000 + "]" * 200000 + "}",
        '{"socket_configurations": [{"bind_address": "0.0.0.0", "bind_port": ' + "9" * 5000 + "}]}",
    ], ids=["empty", "truncated", "array", "mapping", "no-key", "wrong-key", "scalar-entry",
            "deep-nesting", "huge-int"])
    def test_malformed_documents(self, document):
        with pytest.raises(ParseFailure):
            parse_config_document(document)

    def test_invalid_utf8(self):
        with pytest.raises(ReadFailure):
            parse_config_document(b"\xff\xfe\x00")

    def test_parse_port_helper(self):
        assert parse_port(65535) == 65535
        with pytest.raises(ParseFailure, match="outside valid range"):
            parse_port(0)


class TestLoadConfigFile:

    def test_load_valid_file(self, tmp_path):
        path = _write(tmp_path, _document({"bind_address": "127.0.0.1", "bind_port": 5514}))
        config = load_config_file(str(path))
        assert config.socket_configurations[0].bind_port == 5514

    def test_accepts_path_objects(self, tmp_path):
        path = _write(tmp_path, _document())
        assert load_config_file(path).socket_configurations == ()

    def test_relative_path_rejected(self):
        with pytest.raises(OpenFailure, match="absolute"):
            load_config_file("config.json")

    def test_missing_file(self, tmp_path):
        with pytest.raises(OpenFailure):
            load_config_file(str(tmp_path / "absent.json"))

    def test_default_size_limit(self, tmp_path, monkeypatch):
        monkeypatch.delenv(MAX_CONFIG_FILE_SIZE_ENV, raising=False)
        padding = " " * DEFAULT_MAX_CONFIG_FILE_SIZE
        path = _write(tmp_path, _document() + padding)
        with pytest.raises(MaxFileSizeExceeded):
            load_config_file(str(path))

    def test_env_size_limit_lowers_cap(self, tmp_path, monkeypatch):
        path = _write(tmp_path, _document({"bind_address": "127.0.0.1", "bind_port": 5514}))
        monkeypatch.setenv(MAX_CONFIG_FILE_SIZE_ENV, "10")
        with pytest.raises(MaxFileSizeExceeded):
            load_config_file(str(path))

    def test_env_size_limit_raises_cap(self, tmp_path, monkeypatch):
        padding = " " * (DEFAULT_MAX_CONFIG_FILE_SIZE + 1)
        path = _write(tmp_path, _document() + padding)
        monkeypatch.setenv(MAX_CONFIG_FILE_SIZE_ENV, str(2 * DEFAULT_MAX_CONFIG_FILE_SIZE))
        assert load_config_file(str(path)).socket_configurations == ()

    @pytest.mark.parametrize("value", ["abc", "-5", "1.5", ""])
    def test_invalid_env_size_limit_ignored(self, value):
        assert max_config_file_size({MAX_CONFIG_FILE_SIZE_ENV: value}) == DEFAULT_MAX_CONFIG_FILE_SIZE

    def test_parse_errors_are_config_errors(self, tmp_path):
        path = _write(tmp_path, "not json")
        with pytest.raises(ConfigParseError):
            load_config_file(str(path))

    def test_deeply_nested_file_is_config_error(self, tmp_path):
        path = _write(tmp_path, "[" * 100000 + "]" * 100000)
        with pytest.raises(ParseFailure):
            load_config_file(str(path))
