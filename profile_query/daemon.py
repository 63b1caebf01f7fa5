# file: daemon.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
The background process that owns one loaded profile.

Lifecycle: starting -> listening -> loading -> ready | load-error, then stopped.
The socket is bound and the session metadata written before the (possibly
slow) profile load begins, so a client can tell "failed to start" apart from
"still loading". All socket I/O and command execution run on a single asyncio
loop; the profile itself is decoded on a daemon worker thread that never holds
up process exit.
"""
import asyncio
import contextlib
import os
import signal
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Any, Optional, Tuple, assert_never

from profile_query.errors import ProfileQueryError, QueryError, TransportError
from profile_query.protocol import (
    LOADING_RESPONSE, READY_RESPONSE, Command, FunctionCommand, MarkerCommand, ProfileCommand, StatusCommand,
    ThreadCommand, ZoomCommand, command_from_dict, decode_message, encode_message, error_response, success_response,
)
from profile_query.querier import ProfileQuerier
from profile_query.utils.logger_setup import logger, setup_daemon_logging
from profile_query.utils.session import SessionMetadata, SessionStore
from profile_query.version import VERSION_FINGERPRINT, __version__

READ_CHUNK_SIZE = 64 * 1024

# How long shutdown waits for open connections to finish.
SERVER_CLOSE_TIMEOUT_S = 1.0


class DaemonState(Enum):
    STARTING = 'starting'
    LISTENING = 'listening'
    LOADING = 'loading'
    READY = 'ready'
    LOAD_ERROR = 'load-error'
    STOPPED = 'stopped'


# ==============================================================================
# Command dispatch
# ==============================================================================

def _require(value: Optional[str], message: str) -> str:
    if not value:
        raise QueryError(message)
    return value


def execute_command(querier: ProfileQuerier, command: Command) -> Any:
    """Runs one command against the facade and returns its result (a dict or a message string)."""
    match command:
        case ProfileCommand():
            match command.subcommand:
                case 'info':
                    return querier.profile_info()
                case 'threads':
                    return querier.profile_threads()
                case _:
                    assert_never(command.subcommand)
        case ThreadCommand():
            return _execute_thread_command(querier, command)
        case MarkerCommand():
            marker = _require(command.marker, f"marker handle required for marker {command.subcommand}")
            match command.subcommand:
                case 'info':
                    return querier.marker_info(marker)
                case 'stack':
                    return querier.marker_stack(marker)
                case _:
                    assert_never(command.subcommand)
        case FunctionCommand():
            function = _require(command.function, f"function handle required for function {command.subcommand}")
            match command.subcommand:
                case 'info':
                    return querier.function_info(function)
                case 'expand':
                    return querier.function_expand(function)
                case _:
                    assert_never(command.subcommand)
        case ZoomCommand():
            match command.subcommand:
                case 'push':
                    return querier.push_view_range(_require(command.range, "range parameter is required for zoom push"))
                case 'pop':
                    return querier.pop_view_range()
                case 'clear':
                    return querier.clear_view_range()
                case _:
                    assert_never(command.subcommand)
        case StatusCommand():
            return querier.get_status()
        case _:
            assert_never(command)


def _execute_thread_command(querier: ProfileQuerier, command: ThreadCommand) -> Any:
    tree_options = command.call_tree_options
    match command.subcommand:
        case 'info':
            return querier.thread_info(command.thread)
        case 'select':
            return querier.thread_select(_require(command.thread, "thread handle required for thread select"))
        case 'samples':
            return querier.thread_samples(command.thread)
        case 'samples-top-down':
            return querier.thread_samples_top_down(
                command.thread, tree_options.max_nodes, tree_options.scoring_strategy,
                tree_options.max_depth, tree_options.max_children_per_node)
        case 'samples-bottom-up':
            return querier.thread_samples_bottom_up(
                command.thread, tree_options.max_nodes, tree_options.scoring_strategy,
                tree_options.max_depth, tree_options.max_children_per_node)
        case 'markers':
            return querier.thread_markers(command.thread, command.marker_filters)
        case 'functions':
            filters = command.function_filters
            return querier.thread_functions(command.thread, filters.search_string, filters.min_self, filters.limit)
        case _:
            assert_never(command.subcommand)


# ==============================================================================
# Daemon
# ==============================================================================

class ProfileDaemon:
    """Serves newline-delimited JSON requests for one profile on a Unix socket."""

    def __init__(self, profile_path: str, session_id: str, store: SessionStore,
                 loader: Callable[[str], ProfileQuerier] = ProfileQuerier.load,
                 fingerprint: str = VERSION_FINGERPRINT):
        self.profile_path = profile_path
        self.session_id = session_id
        self.store = store
        self.fingerprint = fingerprint
        self._loader = loader
        self.state = DaemonState.STARTING
        self.querier: Optional[ProfileQuerier] = None
        self.load_error: Optional[str] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._load_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    @property
    def socket_path(self) -> Path:
        return self.store.socket_path(self.session_id)

    async def start(self):
        """Binds the socket, records the session, then starts loading in the background."""
        self.store.ensure_dir()
        socket_path = self.socket_path
        if socket_path.exists():
            logger.warning(f"Removing stale socket {socket_path}")
            socket_path.unlink()

        self._server = await asyncio.start_unix_server(self._handle_connection, path=str(socket_path))
        self.state = DaemonState.LISTENING
        logger.info(f"Daemon listening on {socket_path} (pid {os.getpid()})")

        self.store.put(SessionMetadata(
            id=self.session_id,
            socketPath=str(socket_path),
            logPath=str(self.store.log_path(self.session_id)),
            pid=os.getpid(),
            profilePath=self.profile_path,
            createdAt=datetime.now(timezone.utc).isoformat(),
            buildHash=self.fingerprint,
            buildVersion=__version__,
        ))
        self.store.set_current(self.session_id)

        self.state = DaemonState.LOADING
        self._load_task = asyncio.create_task(self._load_profile())

    def _start_loader_thread(self) -> asyncio.Future:
        """
        Runs the loader on a daemon thread and returns a future for its result.

        A daemon thread cannot be interrupted, but it does not keep the process
        alive either: a shutdown requested mid-load exits without waiting for the
        parse to finish.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def settle(result, error):
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        def load():
            result, error = None, None
            try:
                result = self._loader(self.profile_path)
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(settle, result, error)
            except RuntimeError:
                logger.debug("Event loop closed before the profile load finished")

        threading.Thread(target=load, name=f"pq-load-{self.session_id}", daemon=True).start()
        return future

    async def _load_profile(self):
        try:
            querier = await self._start_loader_thread()
        except Exception as e:
            # Any loader failure is reported through `status`.
            logger.error(f"Profile load failed: {e}", exc_info=not isinstance(e, ProfileQueryError))
            self.load_error = str(e)
            self.state = DaemonState.LOAD_ERROR
            return
        self.querier = querier
        self.state = DaemonState.READY
        logger.info(f"Profile ready: {self.profile_path}")

    async def wait_until_loaded(self):
        if self._load_task is not None:
            await self._load_task

    # --------------------------------------------------------------------------
    # Connections
    # --------------------------------------------------------------------------

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        buffer = b''
        try:
            while chunk := await reader.read(READ_CHUNK_SIZE):
                buffer += chunk
                while b'\n' in buffer:
                    line, buffer = buffer.split(b'\n', 1)
                    if not line.strip():
                        continue
                    response, shutdown_requested = self.handle_line(line)
                    writer.write(encode_message(response))
                    await writer.drain()
                    if shutdown_requested:
                        self.request_shutdown()
                        return
        except ConnectionError as e:
            logger.debug(f"Client connection dropped: {e}")
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    def handle_line(self, line: bytes) -> Tuple[Dict[str, Any], bool]:
        """Answers one request line; the flag is True when the daemon must shut down after replying."""
        try:
            message = decode_message(line)
        except TransportError as e:
            logger.warning(f"Failed to parse message: {e}")
            return error_response(f"Failed to parse message: {e}"), False

        match message['type']:
            case 'status':
                return self._status_response(), False
            case 'shutdown':
                logger.info("Shutdown requested by client")
                return success_response('Shutting down'), True
            case 'command':
                return self._command_response(message.get('command')), False
            case other:
                return error_response(f"Unknown message type: {other}"), False

    def _status_response(self) -> Dict[str, Any]:
        match self.state:
            case DaemonState.LOAD_ERROR:
                return error_response(f"Profile load failed: {self.load_error}")
            case DaemonState.READY:
                return READY_RESPONSE
            case _:
                return LOADING_RESPONSE

    def _command_response(self, command_data: Any) -> Dict[str, Any]:
        if self.state == DaemonState.LOAD_ERROR:
            return error_response(f"Profile load failed: {self.load_error}")
        if self.state != DaemonState.READY or self.querier is None:
            return error_response('Profile still loading, try again shortly')

        logger.debug(f"Received command: {command_data}")
        try:
            result = execute_command(self.querier, command_from_dict(command_data))
        except ProfileQueryError as e:
            logger.info(f"Command failed: {e}")
            return error_response(str(e))
        except Exception as e:
            logger.exception(f"Unexpected error while executing {command_data}")
            return error_response(f"Internal error: {e}")
        return success_response(result)

    # --------------------------------------------------------------------------
    # Shutdown
    # --------------------------------------------------------------------------

    def request_shutdown(self):
        self._shutdown_event.set()

    async def serve_until_shutdown(self):
        await self._shutdown_event.wait()
        await self.stop()

    async def stop(self):
        """Closes the socket and removes the session files (the log is kept)."""
        if self.state == DaemonState.STOPPED:
            return
        self.state = DaemonState.STOPPED
        logger.info("Daemon shutting down")
        if self._server is not None:
            self._server.close()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._server.wait_closed(), SERVER_CLOSE_TIMEOUT_S)
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self.store.delete(self.session_id)


async def _run(daemon: ProfileDaemon):
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, daemon.request_shutdown)
    await daemon.start()
    await daemon.serve_until_shutdown()


def run_daemon(profile_path: str, session_id: str, store: SessionStore) -> int:
    """Entry point of the detached daemon process (`pq --daemon <path> --session <id>`)."""
    setup_daemon_logging(str(store.log_path(session_id)), session_id)
    logger.info(f"Starting daemon for {profile_path}")
    try:
        asyncio.run(_run(ProfileDaemon(profile_path, session_id, store)))
    except OSError as e:
        logger.critical(f"Daemon failed: {e}")
        store.delete(session_id)
        return 1
    logger.info("Daemon exited")
    return 0
