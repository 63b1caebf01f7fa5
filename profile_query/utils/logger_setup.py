# file: utils/logger_setup.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Logging for the two kinds of `pq` processes.

The short-lived CLI only ever talks to the user, so its diagnostics go to stderr
(stdout carries command results) and stay quiet unless `--debug` is given. The
daemon is detached from any terminal: it writes everything, including asyncio's
own error reports, to the per-session log file next to its socket.
"""
import logging
import os
import sys
from pathlib import Path
from typing import List

# The package logger. Modules import this instance rather than calling getLogger.
logger = logging.getLogger('profile_query')

# The event loop reports exceptions escaping connection callbacks on this logger.
asyncio_logger = logging.getLogger('asyncio')

DAEMON_LOG_FORMAT = '%(asctime)s - [%(session)s:%(process)d] - %(threadName)s - %(levelname)s - %(message)s'
CLI_DEBUG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
CLI_FORMAT = 'pq: %(levelname)s: %(message)s'

_installed: List[logging.Handler] = []


class SessionFilter(logging.Filter):
    """Stamps every record with the session id the daemon serves."""

    def __init__(self, session_id: str):
        super().__init__()
        self.session_id = session_id[:30]

    def filter(self, record):
        record.session = self.session_id
        return True


def reset_logging():
    """Detaches and closes every handler installed by this module."""
    while _installed:
        handler = _installed.pop()
        for target in (logger, asyncio_logger):
            target.removeHandler(handler)
        handler.close()


def setup_cli_logging(debug_mode: bool = False):
    """
    Configures stderr logging for a CLI invocation.

    Args:
        debug_mode (bool): Log everything at DEBUG with timestamps. Otherwise only
                           warnings and errors are shown, in a compact form.
    """
    reset_logging()
    level = logging.DEBUG if debug_mode else logging.WARNING
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CLI_DEBUG_FORMAT if debug_mode else CLI_FORMAT))

    logger.setLevel(level)
    logger.addHandler(handler)
    _installed.append(handler)


def setup_daemon_logging(log_file_path: str, session_id: str):
    """
    Configures file logging for a daemon process.

    The file is opened in append mode and kept after the session ends, so a
    daemon that died can still be diagnosed. Records from the asyncio event loop
    go to the same file.

    Args:
        log_file_path (str): The session's log file.
        session_id (str): The session id stamped on every record.
    """
    reset_logging()
    log_path = Path(log_file_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(DAEMON_LOG_FORMAT))
    handler.addFilter(SessionFilter(session_id))

    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    asyncio_logger.addHandler(handler)
    _installed.append(handler)
    logger.debug(f"Daemon log opened by pid {os.getpid()}: {log_path}")
