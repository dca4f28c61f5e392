"""
Test that backend_feerouter.logging can be imported without circular import and logger works.
"""

from __future__ import annotations


def test_logging_import():
    """Import get_logger from backend_feerouter.logging and use the logger."""
    from backend_feerouter.logging import get_logger

    logger = get_logger("test")
    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "debug")
    assert hasattr(logger, "warning")
    assert hasattr(logger, "error")
    # Smoke test: Decimal values go through the JSON renderer as strings
    from decimal import Decimal

    logger.info("test_message", key="value", amount=Decimal("0.05"))


def test_bind_transaction():
    from backend_feerouter.logging import bind_transaction

    logger = bind_transaction("tx_abc")
    logger.info("fee_status_changed", to_status="mixing")


def test_json_record_shape():
    """Decimal amounts render as exact strings next to event_type and service."""
    import io
    import json
    from decimal import Decimal

    from backend_feerouter.logging import get_logger
    from backend_feerouter.logging.logger import configure_logging

    buf = io.StringIO()
    configure_logging(level="INFO", fmt="json", stream=buf)
    try:
        get_logger("test").info("fee_routed", transaction_id="tx_1", amount=Decimal("0.10"))
    finally:
        configure_logging()
    record = json.loads(buf.getvalue().strip().splitlines()[-1])
    assert record["event_type"] == "fee_routed"
    assert record["message"] == "fee_routed"
    assert record["amount"] == "0.10"
    assert record["transaction_id"] == "tx_1"
    assert record["service"] == "feerouter"
    assert record["level"] == "info"
    assert "timestamp" in record


def test_bind_transaction_keeps_module_name():
    import io
    import json

    from backend_feerouter.logging import bind_transaction
    from backend_feerouter.logging.logger import configure_logging

    buf = io.StringIO()
    configure_logging(level="INFO", fmt="json", stream=buf)
    try:
        bind_transaction("tx_9", "backend_feerouter.routing.mixer").info("fee_completed")
    finally:
        configure_logging()
    record = json.loads(buf.getvalue().strip().splitlines()[-1])
    assert record["logger"] == "backend_feerouter.routing.mixer"
    assert record["transaction_id"] == "tx_9"
    assert record["event_type"] == "fee_completed"
