# file: tests/test_session.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import os

from profile_query.utils.session import (
    SESSION_DIR_ENV_VAR, SessionMetadata, default_session_dir, generate_session_id, is_process_running,
)

DEAD_PID = 999999


def _metadata(store, session_id='abc123', pid=None):
    return SessionMetadata(
        id=session_id,
        socketPath=str(store.socket_path(session_id)),
        logPath=str(store.log_path(session_id)),
        pid=os.getpid() if pid is None else pid,
        profilePath='/tmp/profile.json',
        createdAt='2026-01-01T00:00:00+00:00',
        buildHash='deadbeef',
    )


def test_session_dir_can_be_overridden(monkeypatch, tmp_path):
    monkeypatch.setenv(SESSION_DIR_ENV_VAR, str(tmp_path))
    assert default_session_dir() == tmp_path
    monkeypatch.delenv(SESSION_DIR_ENV_VAR)
    assert default_session_dir().name == '.pq'


def test_session_ids_are_unique():
    ids = {generate_session_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(len(i) == 12 for i in ids)


def test_metadata_round_trip(session_store):
    metadata = _metadata(session_store)
    session_store.put(metadata)
    assert session_store.get('abc123') == metadata
    assert session_store.list_ids() == ['abc123']
    assert session_store.get('missing') is None


def test_unreadable_metadata_is_ignored(session_store):
    session_store.ensure_dir()
    session_store.metadata_path('broken').write_text('{"id": ')
    assert session_store.get('broken') is None


def test_current_session(session_store):
    assert session_store.get_current() is None
    session_store.set_current('abc123')
    assert session_store.get_current() == 'abc123'
    assert session_store.current_socket_path() == session_store.socket_path('abc123')


def test_validate_requires_a_running_process_and_a_socket(session_store):
    session_store.put(_metadata(session_store))
    assert session_store.validate('abc123') is None

    session_store.socket_path('abc123').touch()
    assert session_store.validate('abc123').pid == os.getpid()

    session_store.put(_metadata(session_store, pid=DEAD_PID))
    assert session_store.validate('abc123') is None


def test_delete_keeps_the_log(session_store):
    session_store.put(_metadata(session_store))
    session_store.socket_path('abc123').touch()
    session_store.log_path('abc123').write_text('log line\n')
    session_store.set_current('abc123')

    session_store.delete('abc123')
    assert not session_store.socket_path('abc123').exists()
    assert not session_store.metadata_path('abc123').exists()
    assert session_store.get_current() is None
    assert session_store.log_path('abc123').exists()


def test_delete_leaves_other_current_session(session_store):
    session_store.put(_metadata(session_store, 'one'))
    session_store.set_current('two')
    session_store.delete('one')
    assert session_store.get_current() == 'two'


def test_is_process_running():
    assert is_process_running(os.getpid())
    assert not is_process_running(0)
    assert not is_process_running(DEAD_PID)
