"""Tests for structured logging module."""

from practicegate.core.logging import (
    REDACTED,
    LoggerMixin,
    add_correlation_id,
    bind_contextvars,
    clear_contextvars,
    clear_correlation_id,
    configure_logging,
    get_correlation_id,
    get_logger,
    redact_sensitive_fields,
    set_correlation_id,
)


class TestCorrelationId:
    """Tests for correlation ID management."""

    def setup_method(self) -> None:
        clear_correlation_id()

    def test_set_and_get_correlation_id(self) -> None:
        assert get_correlation_id() is None

        correlation_id = set_correlation_id("test-correlation-123")
        assert correlation_id == "test-correlation-123"
        assert get_correlation_id() == "test-correlation-123"

    def test_auto_generate_correlation_id(self) -> None:
        correlation_id = set_correlation_id()
        assert len(correlation_id) == 36  # UUID format

    def test_correlation_id_added_to_events(self) -> None:
        set_correlation_id("corr-1")
        event = add_correlation_id(None, "info", {"event": "usage_recorded"})  # type: ignore[arg-type]
        assert event["correlation_id"] == "corr-1"

    def test_no_correlation_id_when_unset(self) -> None:
        event = add_correlation_id(None, "info", {"event": "usage_recorded"})  # type: ignore[arg-type]
        assert "correlation_id" not in event


class TestRedaction:
    """Tests for sensitive field redaction."""

    def test_sensitive_keys_redacted(self) -> None:
        event = redact_sensitive_fields(
            None,  # type: ignore[arg-type]
            "info",
            {
                "event": "export_requested",
                "filters": {"client_name": "Jane Doe"},
                "email": "dr@example.com",
                "export_type": "client_data",
            },
        )
        assert event["filters"] == REDACTED
        assert event["email"] == REDACTED
        assert event["export_type"] == "client_data"


class TestStructuredLogging:
    """Tests for structured logging configuration."""

    def setup_method(self) -> None:
        clear_contextvars()

    def test_configure_logging_json_mode(self) -> None:
        configure_logging(json_logs=True, log_level="INFO")
        assert get_logger("test_json") is not None

    def test_configure_logging_console_mode(self) -> None:
        configure_logging(json_logs=False, log_level="DEBUG")
        assert get_logger("test_console") is not None

    def test_bind_and_clear_contextvars(self) -> None:
        bind_contextvars(user_id="123", request_id="abc")
        clear_contextvars()


class TestLoggerMixin:
    """Tests for LoggerMixin class."""

    def test_logger_mixin(self) -> None:
        class MeterService(LoggerMixin):
            def do_work(self) -> str:
                self.logger.info("usage_incremented", action_kind="conversation")
                return "done"

        assert MeterService().do_work() == "done"
