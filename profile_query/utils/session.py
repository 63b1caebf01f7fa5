# file: utils/session.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
File-backed registry of running daemon sessions.

A session directory holds, per session id, `<id>.sock` (the daemon socket),
`<id>.log` (its log, never deleted here) and `<id>.json` (metadata), plus
`current.txt` naming the most recently started session. Nothing is locked:
two invocations racing on the same id may observe each other's half-written
state, and callers treat such sessions as stale.
"""
import json
import os
import secrets
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import List, Optional

from profile_query.utils.logger_setup import logger

# Environment variable overriding the session directory.
SESSION_DIR_ENV_VAR = 'PQ_SESSION_DIR'
DEFAULT_SESSION_DIR = Path.home() / '.pq'

CURRENT_SESSION_FILE = 'current.txt'
SESSION_ID_BYTES = 6


def default_session_dir() -> Path:
    if env_dir := os.environ.get(SESSION_DIR_ENV_VAR):
        return Path(env_dir)
    return DEFAULT_SESSION_DIR


@dataclass
class SessionMetadata:
    """What a daemon records about itself once its socket is listening."""
    id: str
    socketPath: str
    logPath: str
    pid: int
    profilePath: str
    createdAt: str
    buildHash: str
    buildVersion: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'SessionMetadata':
        return cls(
            id=str(data['id']),
            socketPath=str(data['socketPath']),
            logPath=str(data['logPath']),
            pid=int(data['pid']),
            profilePath=str(data['profilePath']),
            createdAt=str(data['createdAt']),
            buildHash=str(data.get('buildHash', '')),
            buildVersion=str(data.get('buildVersion', '')),
        )


def generate_session_id() -> str:
    return secrets.token_hex(SESSION_ID_BYTES)


def is_process_running(pid: int) -> bool:
    """Probes `pid` with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # The process exists but belongs to someone else.
        return True
    return True


class SessionStore:
    """Key-value access to the sessions of one session directory."""

    def __init__(self, session_dir: Path):
        self.session_dir = Path(session_dir)

    def ensure_dir(self):
        self.session_dir.mkdir(parents=True, exist_ok=True)

    # --- Paths ---

    def socket_path(self, session_id: str) -> Path:
        return self.session_dir / f'{session_id}.sock'

    def log_path(self, session_id: str) -> Path:
        return self.session_dir / f'{session_id}.log'

    def metadata_path(self, session_id: str) -> Path:
        return self.session_dir / f'{session_id}.json'

    @property
    def current_session_file(self) -> Path:
        return self.session_dir / CURRENT_SESSION_FILE

    # --- Metadata ---

    def get(self, session_id: str) -> Optional[SessionMetadata]:
        """Loads the metadata of `session_id`; None if missing or unreadable."""
        metadata_path = self.metadata_path(session_id)
        if not metadata_path.exists():
            return None
        try:
            with open(metadata_path, 'r') as f:
                return SessionMetadata.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Could not decode session metadata {metadata_path}: {e}")
            return None
        except OSError as e:
            logger.warning(f"Error reading session metadata {metadata_path}: {e}")
            return None

    def put(self, metadata: SessionMetadata):
        self.ensure_dir()
        with open(self.metadata_path(metadata.id), 'w') as f:
            json.dump(asdict(metadata), f, indent=2)
        logger.debug(f"Saved session metadata for {metadata.id}")

    def delete(self, session_id: str):
        """
        Removes the socket and metadata of a session (the log is kept), and
        `current.txt` when it names this session.
        """
        for path in (self.socket_path(session_id), self.metadata_path(session_id)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")
        if self.get_current() == session_id:
            self.current_session_file.unlink(missing_ok=True)
        logger.debug(f"Cleaned up session {session_id}")

    def list_ids(self) -> List[str]:
        if not self.session_dir.exists():
            return []
        return sorted(p.stem for p in self.session_dir.glob('*.json'))

    # --- Current session ---

    def set_current(self, session_id: str):
        self.ensure_dir()
        self.current_session_file.write_text(session_id)

    def get_current(self) -> Optional[str]:
        try:
            session_id = self.current_session_file.read_text().strip()
        except FileNotFoundError:
            return None
        return session_id or None

    def current_socket_path(self) -> Optional[Path]:
        if (session_id := self.get_current()) is None:
            return None
        return self.socket_path(session_id)

    # --- Validation ---

    def validate(self, session_id: str) -> Optional[SessionMetadata]:
        """
        Returns the metadata of a live session: metadata readable, daemon
        process running and socket present. Returns None otherwise; removing
        a stale session is left to the caller (see `delete`).
        """
        if (metadata := self.get(session_id)) is None:
            return None
        if not is_process_running(metadata.pid):
            logger.debug(f"Session {session_id}: process {metadata.pid} is not running")
            return None
        if not Path(metadata.socketPath).exists():
            logger.debug(f"Session {session_id}: socket {metadata.socketPath} is missing")
            return None
        return metadata
