# file: tests/test_logger_setup.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import logging

import pytest

from profile_query.utils.logger_setup import (
    asyncio_logger, logger, reset_logging, setup_cli_logging, setup_daemon_logging,
)


@pytest.fixture(autouse=True)
def clean_logging():
    yield
    reset_logging()


def test_cli_logging_is_quiet_by_default(capsys):
    setup_cli_logging()
    logger.info("loading")
    logger.warning("socket is stale")
    assert capsys.readouterr().err == 'pq: WARNING: socket is stale\n'


def test_cli_debug_logging(capsys):
    setup_cli_logging(debug_mode=True)
    logger.debug("sending status")
    err = capsys.readouterr().err
    assert 'DEBUG - profile_query - sending status' in err


def test_setup_replaces_previous_handlers():
    setup_cli_logging()
    setup_cli_logging(debug_mode=True)
    assert len(logger.handlers) == 1
    assert logger.handlers[0].level == logging.DEBUG


def test_daemon_logging_writes_the_session_log(tmp_path):
    log_file = tmp_path / 'sessions' / 'abc.log'
    setup_daemon_logging(str(log_file), 'abc')
    logger.info("Profile ready")
    asyncio_logger.error("Unhandled exception in client_connected_cb")
    for handler in logger.handlers:
        handler.flush()

    lines = log_file.read_text().splitlines()
    assert any('[abc:' in line and 'INFO - Profile ready' in line for line in lines)
    assert any('ERROR - Unhandled exception in client_connected_cb' in line for line in lines)


def test_reset_detaches_daemon_handlers(tmp_path):
    setup_daemon_logging(str(tmp_path / 'abc.log'), 'abc')
    reset_logging()
    assert logger.handlers == []
    assert asyncio_logger.handlers == []
