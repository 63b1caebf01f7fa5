# file: tests/test_daemon.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import asyncio
import json
import threading
import time

import pytest

from profile_query.daemon import DaemonState, ProfileDaemon, execute_command
from profile_query.errors import ProfileLoadError, QueryError
from profile_query.protocol import (
    MarkerCommand, ProfileCommand, StatusCommand, ThreadCommand, ZoomCommand, command_message, encode_message,
)
from profile_query.querier import ProfileQuerier

SESSION_ID = 'daemon-test'


def _line(message) -> bytes:
    return encode_message(message).rstrip(b'\n')


async def _request(socket_path, message):
    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    writer.write(encode_message(message))
    await writer.drain()
    response = json.loads(await reader.readline())
    writer.close()
    await writer.wait_closed()
    return response


# ==============================================================================
# Command dispatch
# ==============================================================================

def test_execute_command(sample_profile):
    querier = ProfileQuerier(sample_profile)
    assert execute_command(querier, ProfileCommand('info'))['type'] == 'profile-info'
    assert execute_command(querier, ThreadCommand('select', thread='t-1')) == 'Selected thread: t-1 (Renderer)'
    assert execute_command(querier, StatusCommand())['selectedThreadHandle'] == 't-1'
    assert execute_command(querier, ThreadCommand('samples-top-down'))['type'] == 'thread-samples-top-down'


def test_execute_command_requires_handles(sample_profile):
    querier = ProfileQuerier(sample_profile)
    with pytest.raises(QueryError, match='marker handle required for marker info'):
        execute_command(querier, MarkerCommand('info'))
    with pytest.raises(QueryError, match='thread handle required for thread select'):
        execute_command(querier, ThreadCommand('select'))
    with pytest.raises(QueryError, match='range parameter is required for zoom push'):
        execute_command(querier, ZoomCommand('push'))


# ==============================================================================
# Request handling
# ==============================================================================

def test_handle_line_before_and_after_loading(sample_profile, session_store):
    daemon = ProfileDaemon('profile.json', SESSION_ID, session_store)
    assert daemon.handle_line(_line({'type': 'status'})) == ({'type': 'loading'}, False)
    response, _ = daemon.handle_line(_line(command_message(StatusCommand())))
    assert response == {'type': 'error', 'error': 'Profile still loading, try again shortly'}

    daemon.querier = ProfileQuerier(sample_profile)
    daemon.state = DaemonState.READY
    assert daemon.handle_line(_line({'type': 'status'})) == ({'type': 'ready'}, False)
    response, _ = daemon.handle_line(_line(command_message(ThreadCommand('info', thread='t-2'))))
    assert response['type'] == 'success'
    assert response['result']['friendlyName'] == 'content'

    response, _ = daemon.handle_line(_line(command_message(ThreadCommand('info', thread='t-7'))))
    assert response['type'] == 'error'
    assert response['error'].startswith('Unknown thread t-7')


def test_handle_line_protocol_errors(session_store):
    daemon = ProfileDaemon('profile.json', SESSION_ID, session_store)
    response, shutdown = daemon.handle_line(b'{not json')
    assert response['type'] == 'error'
    assert response['error'].startswith('Failed to parse message')
    assert shutdown is False

    response, _ = daemon.handle_line(_line({'type': 'dance'}))
    assert response == {'type': 'error', 'error': 'Unknown message type: dance'}

    response, shutdown = daemon.handle_line(_line({'type': 'shutdown'}))
    assert response == {'type': 'success', 'result': 'Shutting down'}
    assert shutdown is True


# ==============================================================================
# Lifecycle over the socket
# ==============================================================================

def test_daemon_lifecycle(sample_profile, session_store):
    release_load = threading.Event()

    def loader(path):
        release_load.wait(timeout=10)
        return ProfileQuerier(sample_profile)

    async def scenario():
        daemon = ProfileDaemon('profile.json', SESSION_ID, session_store, loader=loader, fingerprint='abc')
        await daemon.start()
        try:
            metadata = session_store.validate(SESSION_ID)
            assert metadata is not None
            assert metadata.buildHash == 'abc'
            assert session_store.get_current() == SESSION_ID

            assert await _request(daemon.socket_path, {'type': 'status'}) == {'type': 'loading'}

            release_load.set()
            await daemon.wait_until_loaded()
            assert await _request(daemon.socket_path, {'type': 'status'}) == {'type': 'ready'}

            response = await _request(daemon.socket_path, command_message(ZoomCommand('push', '10%,50%')))
            assert response['result']['zoomDepth'] == 1

            response = await _request(daemon.socket_path, {'type': 'shutdown'})
            assert response['result'] == 'Shutting down'
            await asyncio.wait_for(daemon.serve_until_shutdown(), timeout=5)
        finally:
            release_load.set()
            await daemon.stop()

        assert daemon.state == DaemonState.STOPPED
        assert not daemon.socket_path.exists()
        assert session_store.get(SESSION_ID) is None

    asyncio.run(scenario())


def test_load_failure_is_reported(session_store):
    def loader(path):
        raise ProfileLoadError(f"File not found: {path}")

    async def scenario():
        daemon = ProfileDaemon('missing.json', SESSION_ID, session_store, loader=loader)
        await daemon.start()
        try:
            await daemon.wait_until_loaded()
            assert daemon.state == DaemonState.LOAD_ERROR
            expected = {'type': 'error', 'error': 'Profile load failed: File not found: missing.json'}
            assert await _request(daemon.socket_path, {'type': 'status'}) == expected
            response = await _request(daemon.socket_path, command_message(StatusCommand()))
            assert response == expected
        finally:
            await daemon.stop()

    asyncio.run(scenario())


def test_requests_framed_across_reads(sample_profile, session_store):
    async def scenario():
        daemon = ProfileDaemon('profile.json', SESSION_ID, session_store,
                               loader=lambda path: ProfileQuerier(sample_profile))
        await daemon.start()
        try:
            await daemon.wait_until_loaded()
            reader, writer = await asyncio.open_unix_connection(str(daemon.socket_path))

            # One request split over two writes.
            status = encode_message({'type': 'status'})
            writer.write(status[:5])
            await writer.drain()
            await asyncio.sleep(0.05)
            writer.write(status[5:])
            await writer.drain()
            assert json.loads(await reader.readline()) == {'type': 'ready'}

            # Several requests in one write, including an undecodable line.
            writer.write(b'\xff\xfe{"type":"status"}\n'
                         + encode_message(command_message(ThreadCommand('select', thread='t-1')))
                         + encode_message(command_message(StatusCommand())))
            await writer.drain()
            responses = [json.loads(await reader.readline()) for _ in range(3)]

            writer.close()
            await writer.wait_closed()
        finally:
            await daemon.stop()

        assert responses[0]['type'] == 'error'
        assert responses[0]['error'].startswith('Failed to parse message: Malformed message')
        assert responses[1] == {'type': 'success', 'result': 'Selected thread: t-1 (Renderer)'}
        assert responses[2]['result']['selectedThreadHandle'] == 't-1'

    asyncio.run(scenario())


def test_handle_line_rejects_invalid_utf8(session_store):
    daemon = ProfileDaemon('profile.json', SESSION_ID, session_store)
    response, shutdown = daemon.handle_line(b'\xff\xfe{"type":"status"}')
    assert response['type'] == 'error'
    assert response['error'].startswith('Failed to parse message')
    assert shutdown is False


def test_shutdown_during_load_does_not_wait_for_the_loader(session_store):
    release_load = threading.Event()
    loader_threads = []

    def loader(path):
        loader_threads.append(threading.current_thread())
        release_load.wait(timeout=30)
        raise ProfileLoadError("released")

    async def scenario():
        daemon = ProfileDaemon('huge.json', SESSION_ID, session_store, loader=loader)
        await daemon.start()
        assert await _request(daemon.socket_path, {'type': 'status'}) == {'type': 'loading'}
        await daemon.stop()
        assert daemon.state == DaemonState.STOPPED
        assert session_store.get(SESSION_ID) is None

    started = time.monotonic()
    try:
        asyncio.run(scenario())
        assert time.monotonic() - started < 5
        assert loader_threads[0].daemon
        assert loader_threads[0].is_alive()
    finally:
        release_load.set()
