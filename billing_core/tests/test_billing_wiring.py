from __future__ import annotations

import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billing_core.app.fees import FeeAuditEvent, FeeAuditEventType
from billing_core.app.fees.repository import PostgresFeeRepository
from billing_core.app.services.billing import LoggingFeeEventLogger, build_fee_service
from billing_core.app.sequencing import SequenceGenerator
from billing_core.config import load_billing_config


def test_fee_service_without_numbering():
    config = load_billing_config({"FEE_ROUNDING": "half_even"})

    service = build_fee_service(MagicMock(), config)

    assert isinstance(service.repository, PostgresFeeRepository)
    assert service.sequence_generator is None
    assert service.rounding == "half_even"


def test_fee_service_with_numbering_uses_configured_timeout():
    config = load_billing_config({"FEE_NUMBERING_ENABLED": "true", "SEQUENCE_LOCK_TIMEOUT_SECONDS": "3"})

    service = build_fee_service(MagicMock(), config)

    assert isinstance(service.sequence_generator, SequenceGenerator)
    assert service.sequence_generator.timeout_seconds == 3.0


def test_logging_event_logger_writes_billing_log(caplog):
    event = FeeAuditEvent(
        event_type=FeeAuditEventType.FEE_CREATED,
        invoice_id="inv_1",
        subscription_id="sub_1",
        metadata={"amount_cents": "1600"},
    )

    with caplog.at_level(logging.INFO, logger="billing"):
        LoggingFeeEventLogger().log(event)

    assert "fee_created" in caplog.text
    assert "inv_1" in caplog.text
