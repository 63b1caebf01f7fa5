# file: client.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Client side of the daemon protocol: starting a daemon for a profile, sending
requests to the current (or a given) session, and stopping sessions.
"""
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Dict, Any, Optional, Protocol, Tuple

from profile_query.core.data_loader import is_url
from profile_query.errors import ArgumentError, DaemonError, ProfileQueryError, SessionError, TransportError
from profile_query.protocol import (
    SHUTDOWN_MESSAGE, STATUS_MESSAGE, Command, command_message, decode_message, encode_message,
)
from profile_query.utils.logger_setup import logger
from profile_query.utils.session import (
    SESSION_DIR_ENV_VAR, SessionMetadata, SessionStore, generate_session_id,
)
from profile_query.version import VERSION_FINGERPRINT

# ==============================================================================
# Configuration Constants
# ==============================================================================

# Connect/read timeout of a single request.
SOCKET_TIMEOUT_S = 30.0
READ_CHUNK_SIZE = 64 * 1024

# Phase 1 of daemon startup: wait for the session to be registered (socket bound).
VALIDATE_POLL_INTERVAL_S = 0.05
VALIDATE_POLL_ATTEMPTS = 10

# Phase 2 of daemon startup: wait for the profile to finish loading.
STATUS_POLL_INTERVAL_S = 0.1
STATUS_POLL_ATTEMPTS = 600

# Time given to a daemon to tear itself down after a shutdown request.
SHUTDOWN_GRACE_S = 0.5


# ==============================================================================
# Process supervision
# ==============================================================================

class ProcessSupervisor(Protocol):
    """Starts processes that outlive the invoking CLI process."""

    def spawn_detached(self, args: List[str], env: Dict[str, str]) -> int: ...


class SubprocessSupervisor:
    """Spawns the daemon in its own session with no inherited stdio."""

    def spawn_detached(self, args: List[str], env: Dict[str, str]) -> int:
        logger.debug(f"Spawning detached process: {' '.join(args)}")
        process = subprocess.Popen(
            args,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
        return process.pid


def daemon_command_args(profile_path: str, session_id: str) -> List[str]:
    return [sys.executable, '-m', 'profile_query.main', '--daemon', profile_path, '--session', session_id]


# ==============================================================================
# Client
# ==============================================================================

class DaemonClient:
    """Talks to daemons registered in one session directory."""

    def __init__(self, store: SessionStore, supervisor: Optional[ProcessSupervisor] = None,
                 fingerprint: str = VERSION_FINGERPRINT, sleep: Callable[[float], None] = time.sleep,
                 socket_timeout: float = SOCKET_TIMEOUT_S):
        self.store = store
        self.supervisor = supervisor or SubprocessSupervisor()
        self.fingerprint = fingerprint
        self.socket_timeout = socket_timeout
        self._sleep = sleep

    # --------------------------------------------------------------------------
    # Requests
    # --------------------------------------------------------------------------

    def _resolve_session(self, session_id: Optional[str]) -> SessionMetadata:
        session_id = session_id or self.store.get_current()
        if not session_id:
            raise SessionError('No active session. Run "pq load <PATH>" first.')

        if (metadata := self.store.validate(session_id)) is None:
            self.store.delete(session_id)
            raise SessionError(f"Session {session_id} is not running or is invalid.")

        if metadata.buildHash != self.fingerprint:
            logger.warning(f"Session {session_id} fingerprint {metadata.buildHash} != {self.fingerprint}")
            self._terminate(metadata.pid)
            self.store.delete(session_id)
            raise SessionError(
                f"Session {session_id} was built with a different version "
                f"(daemon: {metadata.buildHash or 'unknown'}, client: {self.fingerprint}). "
                f'The daemon has been stopped. Please run "pq load <PATH>" again.')
        return metadata

    @staticmethod
    def _terminate(pid: int):
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug(f"Process {pid} already exited")

    def send_raw_message(self, message: Dict[str, Any], session_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Sends one message to a session and returns the daemon's response object.

        Args:
            message (Dict[str, Any]): A protocol message.
            session_id (Optional[str]): Target session; the current session when None.

        Raises:
            SessionError: No current session, stale session, or version mismatch.
            TransportError: Missing socket, timeout, or malformed response.
        """
        metadata = self._resolve_session(session_id)
        socket_path = Path(metadata.socketPath)
        if not socket_path.exists():
            raise TransportError(f"Socket not found for session {metadata.id}")

        buffer = b''
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.socket_timeout)
                sock.connect(str(socket_path))
                sock.sendall(encode_message(message))
                while b'\n' not in buffer:
                    if not (chunk := sock.recv(READ_CHUNK_SIZE)):
                        raise TransportError("Connection closed before a response was received")
                    buffer += chunk
        except socket.timeout as e:
            raise TransportError("Connection timeout") from e
        except OSError as e:
            raise TransportError(f"Connection to session {metadata.id} failed: {e}") from e

        return decode_message(buffer.split(b'\n', 1)[0])

    def send_message(self, message: Dict[str, Any], session_id: Optional[str] = None) -> Any:
        """Sends a message and returns the `result` of a success response."""
        response = self.send_raw_message(message, session_id)
        match response.get('type'):
            case 'success':
                return response.get('result')
            case 'error':
                raise DaemonError(str(response.get('error')))
            case other:
                raise TransportError(f"Unexpected response type: {other}")

    def send_command(self, command: Command, session_id: Optional[str] = None) -> Any:
        return self.send_message(command_message(command), session_id)

    # --------------------------------------------------------------------------
    # Session lifecycle
    # --------------------------------------------------------------------------

    def start_new_daemon(self, profile_path: str, session_id: Optional[str] = None) -> str:
        """
        Spawns a daemon for `profile_path` and waits until its profile is loaded.

        Startup is awaited in two phases: first until the session validates
        (daemon running, socket bound), then until `status` reports `ready`.
        Transport failures during the second phase are retried; an explicit
        error from the daemon is not.

        Returns:
            str: The new session id.
        """
        if not is_url(profile_path):
            absolute_path = Path(profile_path).resolve()
            if not absolute_path.exists():
                raise ArgumentError(f"Profile file not found: {absolute_path}")
            profile_path = str(absolute_path)

        self.store.ensure_dir()
        session_id = session_id or generate_session_id()
        env = {**os.environ, SESSION_DIR_ENV_VAR: str(self.store.session_dir)}
        pid = self.supervisor.spawn_detached(daemon_command_args(profile_path, session_id), env)
        logger.info(f"Started daemon for session {session_id} (pid {pid})")

        for _ in range(VALIDATE_POLL_ATTEMPTS):
            self._sleep(VALIDATE_POLL_INTERVAL_S)
            if self.store.validate(session_id) is not None:
                break
        else:
            timeout_ms = round(VALIDATE_POLL_ATTEMPTS * VALIDATE_POLL_INTERVAL_S * 1000)
            raise SessionError(f"Failed to start daemon: session not validated after {timeout_ms}ms")

        for attempt in range(STATUS_POLL_ATTEMPTS):
            try:
                response = self.send_raw_message(STATUS_MESSAGE, session_id)
            except TransportError as e:
                logger.debug(f"Status poll {attempt} failed, retrying: {e}")
            else:
                match response.get('type'):
                    case 'ready':
                        logger.info(f"Session {session_id} is ready")
                        return session_id
                    case 'error':
                        raise DaemonError(str(response.get('error')))
                    case 'loading':
                        pass
                    case other:
                        logger.debug(f"Unexpected status response: {other}")
            self._sleep(STATUS_POLL_INTERVAL_S)

        timeout_ms = round(STATUS_POLL_ATTEMPTS * STATUS_POLL_INTERVAL_S * 1000)
        raise TransportError(f"Profile load timeout after {timeout_ms}ms")

    def stop_daemon(self, session_id: Optional[str] = None) -> str:
        session_id = session_id or self.store.get_current()
        if not session_id:
            raise SessionError('No active session to stop.')
        try:
            self.send_raw_message(SHUTDOWN_MESSAGE, session_id)
        except ProfileQueryError as e:
            # The session may already be gone; its files are removed below either way.
            logger.debug(f"Shutdown request to {session_id} failed: {e}")
        self._sleep(SHUTDOWN_GRACE_S)
        self.store.delete(session_id)
        return f"Session {session_id} stopped"

    def stop_all(self) -> List[str]:
        return [self.stop_daemon(session_id) for session_id in self.store.list_ids()]

    def list_sessions(self) -> Tuple[List[SessionMetadata], int]:
        """Returns the live sessions (oldest first) and how many stale ones were removed."""
        sessions, cleaned = [], 0
        for session_id in self.store.list_ids():
            if (metadata := self.store.validate(session_id)) is None:
                logger.info(f"Removing stale session {session_id}")
                self.store.delete(session_id)
                cleaned += 1
                continue
            sessions.append(metadata)
        return sorted(sessions, key=lambda m: m.createdAt), cleaned
