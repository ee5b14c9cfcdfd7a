"""Tests for structured logging."""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clinic_queue.logging_config import (
    RequestIDMiddleware,
    generate_request_id,
    get_logger,
    setup_structured_logging,
)


class TestStructuredLogging:
    """Test structured logging with request IDs."""

    def test_setup_configures_structlog(self):
        """Should configure structlog processors."""
        setup_structured_logging(log_level="INFO")
        logger = get_logger(__name__)

        assert hasattr(logger, 'info')
        assert hasattr(logger, 'error')
        assert hasattr(logger, 'warning')

    def test_logger_methods_work(self):
        """Should accept key-value event data."""
        setup_structured_logging(log_level="DEBUG")
        logger = get_logger(__name__)

        logger.info("appointment_booked", appointment_id="apt-1", doctor_id="doc-001")
        logger.warning("notification_skipped", subscriber="push")
        logger.error("unexpected_error", path="/api/v1/appointments")

    def test_generate_request_id_format(self):
        """Should generate request IDs with correct format."""
        request_id = generate_request_id()

        assert request_id.startswith("req-")
        assert len(request_id) == 16  # "req-" (4) + 12 hex chars
        assert request_id != generate_request_id()

    def test_request_id_middleware_adds_header(self):
        """Should add X-Request-ID header to responses."""
        app = FastAPI()
        app.add_middleware(RequestIDMiddleware)

        @app.get("/test")
        async def test_route():
            return {"ok": True}

        response = TestClient(app).get("/test")

        assert response.status_code == 200
        request_id = response.headers["X-Request-ID"]
        assert request_id.startswith("req-")
        assert len(request_id) == 16

    def test_each_request_gets_new_id(self):
        app = FastAPI()
        app.add_middleware(RequestIDMiddleware)

        @app.get("/test")
        async def test_route():
            return {"ok": True}

        client = TestClient(app)
        first = client.get("/test").headers["X-Request-ID"]
        second = client.get("/test").headers["X-Request-ID"]
        assert first != second
