import logging

from app.core.logger import RequestIdFilter, get_logger, request_id_var
from app.services.relay_service import RelayRun, RelayState


def _record():
    return logging.LogRecord("wallet_chat.test", logging.INFO, __file__, 1, "hello", None, None)


def test_records_outside_a_request_get_placeholder_id():
    token = request_id_var.set("-")
    try:
        record = _record()
        assert RequestIdFilter().filter(record) is True
        assert record.request_id == "-"
    finally:
        request_id_var.reset(token)


def test_relay_run_stamps_its_id():
    token = request_id_var.set("-")
    try:
        run = RelayRun("chat")
        record = _record()
        RequestIdFilter().filter(record)

        assert record.request_id == run.request_id
        assert run.state == RelayState.RECEIVED
        run.move(RelayState.DISPATCHED)
        assert run.state == RelayState.DISPATCHED
    finally:
        request_id_var.reset(token)


def test_child_loggers_share_the_app_logger():
    assert get_logger("relay").name == "wallet_chat.relay"
