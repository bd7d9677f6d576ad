"""Unit tests for the structlog logging configuration."""

import logging

import structlog

from kromio.logging_config import setup_logging


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("token_deduct_succeeded", user_id="u1", amount=1)

    def test_setup_logging_runs_without_error_production(self):
        setup_logging(debug=False)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("token_deduct_succeeded", user_id="u1", amount=1)

    def test_production_output_is_json(self, capsys):
        setup_logging(debug=False)
        structlog.get_logger("test").warning("plan_unknown_name", plan="gold")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert '"event": "plan_unknown_name"' in line
        assert '"plan": "gold"' in line
        assert '"service": "kromio-token-api"' in line

    def test_secrets_are_redacted(self, capsys):
        setup_logging(debug=False)
        structlog.get_logger("test").info(
            "stripe_webhook_received", stripe_signature="t=1,v1=abc", event_id="evt_1"
        )

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert "v1=abc" not in line
        assert '"stripe_signature": "[redacted]"' in line
        assert '"event_id": "evt_1"' in line

    def test_http_client_loggers_are_quieted(self):
        setup_logging(debug=False)

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("stripe").level == logging.WARNING


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", user_id="u1")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["user_id"] == "u1"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}

    def test_context_cleared_between_requests(self):
        structlog.contextvars.bind_contextvars(request_id="req-1")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-2")

        assert structlog.contextvars.get_contextvars()["request_id"] == "req-2"
        structlog.contextvars.clear_contextvars()
