# file: protocol.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
"""
Messages exchanged between the CLI client and the daemon.

Framing is newline-delimited JSON: one object per line in both directions.

Client -> daemon:
    {"type": "command", "command": {...}}
    {"type": "status"}
    {"type": "shutdown"}

Daemon -> client:
    {"type": "success", "result": <string or result object>}
    {"type": "error", "error": <message>}
    {"type": "loading"}
    {"type": "ready"}

A command object names a command group and a subcommand, e.g.
{"command": "thread", "subcommand": "markers", "thread": "t-0", "markerFilters": {...}}.
"""
import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Union, Literal, get_args

import numpy as np

from profile_query.core.call_tree_collector import (
    DEFAULT_MAX_NODES, DEFAULT_SCORING_STRATEGY, DEFAULT_MAX_DEPTH, DEFAULT_MAX_CHILDREN_PER_NODE,
)
from profile_query.core.marker_analysis import MarkerFilterOptions
from profile_query.errors import ArgumentError, TransportError

MESSAGE_ENCODING = 'utf-8'

ProfileSubcommand = Literal['info', 'threads']
ThreadSubcommand = Literal['info', 'select', 'samples', 'samples-top-down', 'samples-bottom-up', 'markers', 'functions']
MarkerSubcommand = Literal['info', 'stack']
FunctionSubcommand = Literal['info', 'expand']
ZoomSubcommand = Literal['push', 'pop', 'clear']


# ==============================================================================
# Command options
# ==============================================================================

@dataclass
class CallTreeOptions:
    """Budget of a collected call tree (`thread samples-top-down|samples-bottom-up`)."""
    max_nodes: int = DEFAULT_MAX_NODES
    scoring_strategy: str = DEFAULT_SCORING_STRATEGY
    max_depth: int = DEFAULT_MAX_DEPTH
    max_children_per_node: int = DEFAULT_MAX_CHILDREN_PER_NODE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'maxNodes': self.max_nodes,
            'scoringStrategy': self.scoring_strategy,
            'maxDepth': self.max_depth,
            'maxChildrenPerNode': self.max_children_per_node,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CallTreeOptions':
        data = data or {}
        return cls(
            max_nodes=int(data.get('maxNodes', DEFAULT_MAX_NODES)),
            scoring_strategy=str(data.get('scoringStrategy', DEFAULT_SCORING_STRATEGY)),
            max_depth=int(data.get('maxDepth', DEFAULT_MAX_DEPTH)),
            max_children_per_node=int(data.get('maxChildrenPerNode', DEFAULT_MAX_CHILDREN_PER_NODE)),
        )


@dataclass
class FunctionFilterOptions:
    """Filters of `thread functions`."""
    search_string: Optional[str] = None
    min_self: Optional[float] = None
    limit: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'searchString': self.search_string, 'minSelf': self.min_self, 'limit': self.limit}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'FunctionFilterOptions':
        data = data or {}
        return cls(data.get('searchString'), data.get('minSelf'), data.get('limit'))


def marker_filters_to_dict(options: MarkerFilterOptions) -> Dict[str, Any]:
    return {
        'searchString': options.search_string,
        'minDuration': options.min_duration,
        'maxDuration': options.max_duration,
        'category': options.category,
        'hasStack': options.has_stack,
        'limit': options.limit,
        'groupBy': options.group_by,
        'autoGroup': options.auto_group,
    }


def marker_filters_from_dict(data: Optional[Dict[str, Any]]) -> MarkerFilterOptions:
    data = data or {}
    return MarkerFilterOptions(
        search_string=data.get('searchString'),
        min_duration=data.get('minDuration'),
        max_duration=data.get('maxDuration'),
        category=data.get('category'),
        has_stack=bool(data.get('hasStack', False)),
        limit=data.get('limit'),
        group_by=data.get('groupBy'),
        auto_group=bool(data.get('autoGroup', False)),
    )


# ==============================================================================
# Commands (closed union)
# ==============================================================================

@dataclass
class ProfileCommand:
    subcommand: ProfileSubcommand


@dataclass
class ThreadCommand:
    subcommand: ThreadSubcommand
    thread: Optional[str] = None
    marker_filters: MarkerFilterOptions = field(default_factory=MarkerFilterOptions)
    function_filters: FunctionFilterOptions = field(default_factory=FunctionFilterOptions)
    call_tree_options: CallTreeOptions = field(default_factory=CallTreeOptions)


@dataclass
class MarkerCommand:
    subcommand: MarkerSubcommand
    marker: Optional[str] = None


@dataclass
class FunctionCommand:
    subcommand: FunctionSubcommand
    function: Optional[str] = None


@dataclass
class ZoomCommand:
    subcommand: ZoomSubcommand
    range: Optional[str] = None


@dataclass
class StatusCommand:
    pass


Command = Union[ProfileCommand, ThreadCommand, MarkerCommand, FunctionCommand, ZoomCommand, StatusCommand]


def _check_subcommand(group: str, subcommand: Any, allowed) -> str:
    if subcommand not in get_args(allowed):
        raise ArgumentError(f"Unknown {group} subcommand: {subcommand}. "
                            f"Valid subcommands: {', '.join(get_args(allowed))}")
    return subcommand


def command_to_dict(command: Command) -> Dict[str, Any]:
    match command:
        case ProfileCommand(subcommand=subcommand):
            return {'command': 'profile', 'subcommand': subcommand}
        case ThreadCommand():
            return {
                'command': 'thread',
                'subcommand': command.subcommand,
                'thread': command.thread,
                'markerFilters': marker_filters_to_dict(command.marker_filters),
                'functionFilters': command.function_filters.to_dict(),
                'callTreeOptions': command.call_tree_options.to_dict(),
            }
        case MarkerCommand(subcommand=subcommand, marker=marker):
            return {'command': 'marker', 'subcommand': subcommand, 'marker': marker}
        case FunctionCommand(subcommand=subcommand, function=function):
            return {'command': 'function', 'subcommand': subcommand, 'function': function}
        case ZoomCommand(subcommand=subcommand, range=range_name):
            return {'command': 'zoom', 'subcommand': subcommand, 'range': range_name}
        case StatusCommand():
            return {'command': 'status'}
        case _:
            raise ArgumentError(f"Unsupported command object: {command!r}")


def command_from_dict(data: Dict[str, Any]) -> Command:
    """
    Decodes a wire command object.

    Raises:
        ArgumentError: If the command group or subcommand is unknown.
    """
    if not isinstance(data, dict):
        raise ArgumentError(f"Invalid command: {data!r}")
    subcommand = data.get('subcommand')
    match data.get('command'):
        case 'profile':
            return ProfileCommand(_check_subcommand('profile', subcommand, ProfileSubcommand))
        case 'thread':
            return ThreadCommand(
                _check_subcommand('thread', subcommand, ThreadSubcommand),
                thread=data.get('thread'),
                marker_filters=marker_filters_from_dict(data.get('markerFilters')),
                function_filters=FunctionFilterOptions.from_dict(data.get('functionFilters')),
                call_tree_options=CallTreeOptions.from_dict(data.get('callTreeOptions')),
            )
        case 'marker':
            return MarkerCommand(_check_subcommand('marker', subcommand, MarkerSubcommand), data.get('marker'))
        case 'function':
            return FunctionCommand(_check_subcommand('function', subcommand, FunctionSubcommand), data.get('function'))
        case 'zoom':
            return ZoomCommand(_check_subcommand('zoom', subcommand, ZoomSubcommand), data.get('range'))
        case 'status':
            return StatusCommand()
        case other:
            raise ArgumentError(f"Unknown command: {other}")


# ==============================================================================
# Messages
# ==============================================================================

STATUS_MESSAGE = {'type': 'status'}
SHUTDOWN_MESSAGE = {'type': 'shutdown'}
LOADING_RESPONSE = {'type': 'loading'}
READY_RESPONSE = {'type': 'ready'}


def command_message(command: Command) -> Dict[str, Any]:
    return {'type': 'command', 'command': command_to_dict(command)}


def success_response(result: Any) -> Dict[str, Any]:
    return {'type': 'success', 'result': result}


def error_response(error: str) -> Dict[str, Any]:
    return {'type': 'error', 'error': error}


def json_default(value: Any):
    # Results are built from numpy-backed tables; scalars may leak through.
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_message(message: Dict[str, Any]) -> bytes:
    """Serializes one message as a single newline-terminated JSON line."""
    return (json.dumps(message, default=json_default) + '\n').encode(MESSAGE_ENCODING)


def decode_message(line: Union[bytes, str]) -> Dict[str, Any]:
    """
    Parses one line into a message object.

    Raises:
        TransportError: If the line is not a JSON object with a `type` field.
    """
    try:
        if isinstance(line, bytes):
            line = line.decode(MESSAGE_ENCODING)
        message = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TransportError(f"Malformed message: {e}") from e
    if not isinstance(message, dict) or 'type' not in message:
        raise TransportError(f"Malformed message: {line.strip()[:200]}")
    return message
