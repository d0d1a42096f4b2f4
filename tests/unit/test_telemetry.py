"""Unit tests for telemetry service"""

from unittest.mock import MagicMock, patch

from src.services.telemetry import TelemetryService


class TestTelemetryService:
    """Test telemetry service initialization and logging"""

    @patch("src.services.telemetry.config")
    def test_telemetry_service_disabled(self, mock_config):
        """Test that telemetry can be disabled"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = False

        service = TelemetryService()

        assert service.logging_enabled is False
        assert service.tracing_enabled is False
        assert service.otel_logger is None

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_telemetry_service_enabled(self, mock_set_logger_provider, mock_config):
        """Test that telemetry initializes when enabled"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = False
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        service = TelemetryService()

        assert service.logging_enabled is True
        assert service.tracing_enabled is False
        assert service.logger_provider is not None

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.trace.set_tracer_provider")
    def test_telemetry_tracing_enabled(self, mock_set_tracer_provider, mock_config):
        """Test that tracing initializes when enabled"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = True
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        service = TelemetryService()

        assert service.logging_enabled is False
        assert service.tracing_enabled is True
        assert service.tracer_provider is not None

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    @patch("src.services.telemetry.trace.set_tracer_provider")
    def test_telemetry_both_enabled(
        self,
        mock_set_tracer_provider,
        mock_set_logger_provider,
        mock_config,
    ):
        """Test that both logging and tracing can be enabled simultaneously"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = True
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        service = TelemetryService()

        assert service.logging_enabled is True
        assert service.tracing_enabled is True
        assert service.logger_provider is not None

    @patch("src.services.telemetry.config")
    def test_log_tool_call_when_disabled(self, mock_config):
        """Logging is a no-op when disabled"""
        mock_config.otel_logging_enabled = False
        mock_config.otel_tracing_enabled = False

        service = TelemetryService()
        service.log_tool_call(
            tool_name="get_repository_status",
            repo_name="octocat/hello-world",
            parameters={"owner": "octocat", "name": "hello-world"},
            response={"exists": True},
        )

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_log_repository_status(self, mock_set_logger_provider, mock_config):
        """A status call records sync state as attributes and the repo in the body"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = False
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        mock_otel_logger = MagicMock()
        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_tool_call(
            tool_name="get_repository_status",
            repo_name="octocat/hello-world",
            parameters={"owner": "octocat", "name": "hello-world"},
            response={
                "exists": True,
                "sync_status": "up_to_date",
                "is_private": False,
                "tree": [{"path": "README", "type": "blob", "size": 13}],
            },
        )

        assert mock_otel_logger.emit.called
        call_kwargs = mock_otel_logger.emit.call_args.kwargs

        assert "octocat/hello-world" in call_kwargs["body"]
        assert "SUCCESS" in call_kwargs["body"]

        attrs = call_kwargs["attributes"]
        assert attrs["mcp.tool.name"] == "get_repository_status"
        assert attrs["response.success"] is True
        assert attrs["response.exists"] == "True"
        assert attrs["response.sync_status"] == "up_to_date"
        assert attrs["response.tree_entries"] == 1

        # Repository names are high cardinality and stay out of attributes
        assert "octocat/hello-world" not in attrs.values()

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_log_status_while_checking(self, mock_set_logger_provider, mock_config):
        """exists=None is reported as still checking"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = False
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        mock_otel_logger = MagicMock()
        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_tool_call(
            tool_name="get_repository_status",
            repo_name="octocat/hello-world",
            parameters={},
            response={"exists": None, "sync_status": None, "is_private": False},
        )

        attrs = mock_otel_logger.emit.call_args.kwargs["attributes"]
        assert attrs["response.exists"] == "checking"
        assert "response.sync_status" not in attrs

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_log_tool_call_with_error(self, mock_set_logger_provider, mock_config):
        """A failed call is logged with the error type"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = False
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        mock_otel_logger = MagicMock()
        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_tool_call(
            tool_name="get_indexed_snapshot",
            repo_name="octocat/hello-world",
            parameters={},
            response=None,
            error=ValueError("Test error"),
        )

        call_kwargs = mock_otel_logger.emit.call_args.kwargs
        assert "FAILED" in call_kwargs["body"]
        assert "ValueError" in call_kwargs["body"]

        attrs = call_kwargs["attributes"]
        assert attrs["response.success"] is False
        assert attrs["error.type"] == "ValueError"
        assert "Test error" in attrs["error.message"]

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_log_truncates_long_error(self, mock_set_logger_provider, mock_config):
        """Very long error messages are truncated"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = False
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        mock_otel_logger = MagicMock()
        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_tool_call(
            tool_name="get_repository_status",
            repo_name=None,
            parameters={"owner": "bad/owner", "name": "x"},
            error=RuntimeError("a" * 800),
        )

        call_kwargs = mock_otel_logger.emit.call_args.kwargs
        assert call_kwargs["attributes"]["error.message"].endswith("...")
        assert len(call_kwargs["attributes"]["error.message"]) == 503
        assert "owner=bad/owner" in call_kwargs["body"]

    @patch("src.services.telemetry.config")
    @patch("src.services.telemetry.set_logger_provider")
    def test_indexed_snapshot_logging(self, mock_set_logger_provider, mock_config):
        """Snapshot calls log the short ref"""
        mock_config.otel_logging_enabled = True
        mock_config.otel_tracing_enabled = False
        mock_config.otel_endpoint = "http://localhost:4318"
        mock_config.otel_service_name = "test-service"
        mock_config.otel_service_version = "1.0.0"

        mock_otel_logger = MagicMock()
        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_tool_call(
            tool_name="get_indexed_snapshot",
            repo_name="octocat/hello-world",
            parameters={},
            response={"collection_name": "c1", "ref": "abcdef0123456789", "tree": []},
        )

        call_kwargs = mock_otel_logger.emit.call_args.kwargs
        assert "ref=abcdef0" in call_kwargs["body"]
        attrs = call_kwargs["attributes"]
        assert attrs["response.snapshot_found"] is True
        assert attrs["response.tree_entries"] == 0
