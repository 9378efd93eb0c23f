"""Tests for domain errors and server models."""

import pytest

from toolhub.domain.errors import (
    AlreadyConnectedError,
    ConfigurationError,
    ConnectionInProgressError,
    ConnectionStateError,
    DomainError,
    MCPConnectionError,
    ServerConnectionRefusedError,
    ToolListingError,
    ToolNotFoundError,
    ValidationError,
)
from toolhub.domain.servers.models import (
    AggregatedTool,
    ConnectionPolicy,
    ConnectionSnapshot,
    ServerDefinition,
    StreamTransport,
    SubprocessTransport,
    UserServerConfig,
    transport_fields_changed,
    transport_from_dict,
)


class TestDomainErrors:
    """Error hierarchy and attributes."""

    def test_message_and_code(self):
        error = DomainError("Something went wrong", "ERR_001")

        assert str(error) == "Something went wrong"
        assert error.message == "Something went wrong"
        assert error.code == "ERR_001"

    def test_code_defaults_to_none(self):
        assert ValidationError("bad").code is None

    def test_hierarchy(self):
        assert issubclass(ServerConnectionRefusedError, MCPConnectionError)
        assert issubclass(ConnectionInProgressError, ConnectionStateError)
        assert issubclass(AlreadyConnectedError, ConnectionStateError)
        assert issubclass(ToolNotFoundError, DomainError)
        assert issubclass(ToolListingError, DomainError)

    def test_catchable_as_domain_error(self):
        with pytest.raises(DomainError):
            raise ConfigurationError("bad transport", code="INVALID_TRANSPORT")


class TestConnectionPolicy:
    @pytest.mark.parametrize(
        "values",
        [
            {"max_retries": 0, "retry_delay_ms": 100, "timeout_ms": 5000},
            {"max_retries": 10, "retry_delay_ms": 10000, "timeout_ms": 60000},
        ],
    )
    def test_bounds_inclusive(self, values):
        assert ConnectionPolicy.from_dict(values).to_dict() == values

    @pytest.mark.parametrize(
        "values",
        [
            {"max_retries": -1},
            {"max_retries": 11},
            {"retry_delay_ms": 99},
            {"timeout_ms": 60001},
            {"timeout_ms": "30000"},
            {"max_retries": True},
        ],
    )
    def test_out_of_range_rejected(self, values):
        with pytest.raises(ValidationError):
            ConnectionPolicy.from_dict(values)

    def test_defaults(self):
        assert ConnectionPolicy.from_dict(None).to_dict() == {
            "max_retries": 3,
            "retry_delay_ms": 1000,
            "timeout_ms": 30000,
        }


class TestTransports:
    def test_stream_round_trip(self):
        transport = transport_from_dict({"kind": "stream", "url": "https://a.test/mcp", "headers": {"X": "1"}})

        assert transport.to_dict() == {
            "kind": "stream",
            "url": "https://a.test/mcp",
            "headers": {"X": "1"},
            "protocol": None,
        }
        assert transport.resolved_protocol() == "http"

    def test_subprocess_requires_command(self):
        with pytest.raises(ConfigurationError):
            transport_from_dict({"kind": "subprocess", "command": "  "})

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError):
            transport_from_dict({"kind": "ws", "url": "ws://a.test"})
        with pytest.raises(ConfigurationError):
            transport_from_dict("https://a.test")

    def test_invalid_protocol(self):
        with pytest.raises(ConfigurationError):
            StreamTransport(url="https://a.test", protocol="grpc").validate()

    def test_change_detection(self):
        base = ServerDefinition(owner_id="u", name="n", transport=SubprocessTransport(command="run"))
        renamed = ServerDefinition(
            id=base.id, owner_id="u", name="other", transport=SubprocessTransport(command="run")
        )
        new_args = ServerDefinition(
            id=base.id, owner_id="u", name="n", transport=SubprocessTransport(command="run", args=["-v"])
        )
        new_policy = ServerDefinition(
            id=base.id,
            owner_id="u",
            name="n",
            transport=SubprocessTransport(command="run"),
            policy=ConnectionPolicy(max_retries=1),
        )

        assert not transport_fields_changed(base, renamed)
        assert transport_fields_changed(base, new_args)
        assert transport_fields_changed(base, new_policy)


class TestViews:
    def test_tool_overrides_default_enabled(self):
        config = UserServerConfig(user_id="u", server_id="s", tool_overrides={"off": False})

        assert config.is_tool_enabled("other") is True
        assert config.is_tool_enabled("off") is False
        assert config.to_dict()["has_credentials"] is False

    def test_snapshot_defaults(self):
        snapshot = ConnectionSnapshot(user_id="u", server_id="s")

        assert snapshot.key == "u:s"
        assert snapshot.to_dict() == {
            "server_id": "s",
            "status": "disconnected",
            "retry_count": 0,
            "last_error": None,
            "last_connected": None,
            "tools": [],
            "latency_ms": None,
        }

    def test_function_schema_fallbacks(self):
        schema = AggregatedTool(server_id="s", server_name="S", name="noop").to_function_schema()

        assert schema["function"]["description"] == "Tool: noop"
        assert schema["function"]["parameters"] == {"type": "object", "properties": {}}

    def test_server_to_dict(self):
        server = ServerDefinition(owner_id="u", name="n", transport=StreamTransport(url="https://a.test"))

        data = server.to_dict()

        assert data["connection_status"] == "disconnected"
        assert data["transport"]["kind"] == "stream"
        assert data["policy"]["timeout_ms"] == 30000
        assert data["last_connected"] is None
