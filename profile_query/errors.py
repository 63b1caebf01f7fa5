# file: errors.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""Exception taxonomy shared by the query engine, the daemon and the CLI."""


class ProfileQueryError(Exception):
    """Base class for every error that is reported to the user as a plain message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ArgumentError(ProfileQueryError):
    """Malformed CLI argument, range literal, handle or filter value."""


class SessionError(ProfileQueryError):
    """No active session, stale session, or daemon version mismatch."""


class TransportError(ProfileQueryError):
    """Socket missing, connect/read timeout, or malformed response framing."""


class DaemonError(ProfileQueryError):
    """An explicit `error` response returned by the daemon."""


class QueryError(ProfileQueryError):
    """Raised by the query facade: unknown handle, invalid zoom target, missing argument."""


class ProfileLoadError(ProfileQueryError):
    """The profile could not be read or decoded."""
