import logging

import structlog

from erp_gateway.config.logging import QUIET_LOGGERS, job_context, setup_logging
from erp_gateway.config.settings import Settings


def test_job_context_binds_and_restores():
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id="req-1")

    with job_context("job-1", "specbooks", "GET_CUSTOMER"):
        assert structlog.contextvars.get_contextvars() == {
            "request_id": "req-1",
            "job_id": "job-1",
            "vendor_id": "specbooks",
            "type": "GET_CUSTOMER",
        }

    assert structlog.contextvars.get_contextvars() == {"request_id": "req-1"}
    structlog.contextvars.clear_contextvars()


def test_setup_logging_quiets_sdk_loggers():
    setup_logging(Settings(debug=False, log_level="INFO"))

    for name in QUIET_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING

    setup_logging(Settings(debug=True, log_level="ERROR"))
    assert logging.getLogger("azure").level == logging.ERROR
