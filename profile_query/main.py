# file: main.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import sys
import argparse
from typing import List, Dict, Any, Optional

from profile_query.client import DaemonClient
from profile_query.core.call_tree_collector import DEFAULT_MAX_NODES, DEFAULT_SCORING_STRATEGY, SCORING_STRATEGIES
from profile_query.core.marker_analysis import MarkerFilterOptions, parse_grouping_keys
from profile_query.daemon import run_daemon
from profile_query.errors import ArgumentError, ProfileQueryError
from profile_query.formatters import format_output, to_json
from profile_query.protocol import (
    CallTreeOptions, Command, FunctionCommand, FunctionFilterOptions, MarkerCommand, ProfileCommand, StatusCommand,
    ThreadCommand, ZoomCommand,
)
from profile_query.utils.logger_setup import logger, setup_cli_logging
from profile_query.utils.session import SessionStore, default_session_dir

EXAMPLES = """
Examples:
  pq load profile.json.gz
  pq profile info
  pq thread info --thread t-0
  pq thread select t-1
  pq thread samples-top-down --max-lines 50 --scoring harmonic-0.5
  pq thread functions --search Present --min-self 1
  pq thread markers --category Layout --min-duration 5
  pq thread markers --search DOMEvent --group-by field:eventType
  pq thread markers --auto-group
  pq marker info m-12
  pq function expand f-3
  pq zoom push 2.7,3.1      (also: 10%,50% | 150ms,300ms | ts-g,ts-G | m-158)
  pq zoom pop
  pq stop --all
"""


class CliArgumentParser(argparse.ArgumentParser):
    """Reports usage errors as ArgumentError so they share the CLI's error path."""

    def error(self, message):
        raise ArgumentError(message)


def _add_common_arguments(parser: argparse.ArgumentParser):
    # Defaults are suppressed so the same flag may appear before or after the command.
    group = parser.add_argument_group('Session & Output')
    group.add_argument("--session", type=str, default=argparse.SUPPRESS,
                       help="Use a specific session. (default: the current session)")
    group.add_argument("--json", action="store_true", default=argparse.SUPPRESS,
                       help="Output results as JSON (for use with jq, etc.).")
    group.add_argument("--debug", action="store_true", default=argparse.SUPPRESS,
                       help="Enable DEBUG log mode for verbose output on stderr.")


def _add_marker_filter_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('Marker Filters (thread markers)')
    group.add_argument("--category", type=str, default=None,
                       help="Filter markers by category name (case-insensitive substring match).")
    group.add_argument("--min-duration", type=float, default=None,
                       help="Filter markers by minimum duration in milliseconds.")
    group.add_argument("--max-duration", type=float, default=None,
                       help="Filter markers by maximum duration in milliseconds.")
    group.add_argument("--has-stack", action="store_true",
                       help="Only show markers that carry a stack trace.")
    group.add_argument("--group-by", type=str, default=None,
                       help='Group markers by custom keys, e.g. "type,name" or "type,field:eventType".')
    group.add_argument("--auto-group", action="store_true",
                       help="Automatically sub-group each marker name by its most useful payload field.")


def _add_function_filter_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('Function Filters (thread functions)')
    group.add_argument("--min-self", type=float, default=None,
                       help="Filter functions by minimum self time percentage (0-100).")


def _add_call_tree_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('Call Trees (thread samples-top-down | samples-bottom-up)')
    group.add_argument("--max-lines", type=int, default=DEFAULT_MAX_NODES,
                       help=f"Maximum nodes in the call tree. (default: {DEFAULT_MAX_NODES})")
    group.add_argument("--scoring", type=str, default=DEFAULT_SCORING_STRATEGY,
                       help=f"Call tree scoring strategy: {', '.join(SCORING_STRATEGIES)}.\n"
                            f"(default: {DEFAULT_SCORING_STRATEGY})")


def build_parser() -> argparse.ArgumentParser:
    parser = CliArgumentParser(
        prog='pq',
        description="Query a performance profile through a background daemon session.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawTextHelpFormatter)
    _add_common_arguments(parser)
    # Entry point of the detached daemon process; not part of the user-facing surface.
    parser.add_argument("--daemon", type=str, default=None, metavar='PATH', help=argparse.SUPPRESS)

    common = CliArgumentParser(add_help=False)
    _add_common_arguments(common)
    subparsers = parser.add_subparsers(dest='command', metavar='<command>')

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        return subparsers.add_parser(name, help=help_text, parents=[common],
                                     formatter_class=argparse.RawTextHelpFormatter)

    load_parser = add_command('load', "Load a profile and start a daemon session.")
    load_parser.add_argument("path", type=str, help="Path or URL of the profile (optionally gzip-compressed).")

    profile_parser = add_command('profile', "Profile summary: processes, threads, CPU activity.")
    profile_parser.add_argument("subcommand", nargs='?', default='info', choices=['info', 'threads'])

    thread_parser = add_command('thread', "Thread information, samples, markers and functions.")
    thread_parser.add_argument("subcommand", nargs='?', default='info',
                               choices=['info', 'select', 'samples', 'samples-top-down', 'samples-bottom-up',
                                        'markers', 'functions'])
    thread_parser.add_argument("handle", nargs='?', default=None, help="Thread handle, e.g. t-0 or t-0,t-2.")
    thread_parser.add_argument("--thread", type=str, default=None, dest='thread_option',
                               help="Thread handle (same as the positional handle).")
    thread_parser.add_argument("--search", type=str, default=None,
                               help="Search/filter by substring (markers and functions).")
    thread_parser.add_argument("--limit", type=int, default=None, help="Limit the number of results shown.")
    _add_marker_filter_arguments(thread_parser)
    _add_function_filter_arguments(thread_parser)
    _add_call_tree_arguments(thread_parser)

    marker_parser = add_command('marker', "Details and stack of a single marker.")
    marker_parser.add_argument("subcommand", choices=['info', 'stack'])
    marker_parser.add_argument("handle", nargs='?', default=None, help="Marker handle, e.g. m-12.")
    marker_parser.add_argument("--marker", type=str, default=None, dest='marker_option',
                               help="Marker handle (same as the positional handle).")

    function_parser = add_command('function', "Details of a single function.")
    function_parser.add_argument("subcommand", choices=['info', 'expand'])
    function_parser.add_argument("handle", nargs='?', default=None, help="Function handle, e.g. f-3.")
    function_parser.add_argument("--function", type=str, default=None, dest='function_option',
                                 help="Function handle (same as the positional handle).")

    zoom_parser = add_command('zoom', "Push, pop or clear the committed view range stack.")
    zoom_parser.add_argument("subcommand", choices=['push', 'pop', 'clear'])
    zoom_parser.add_argument("range", nargs='?', default=None,
                             help="start,end in seconds, ms, %% or timestamp names; or a marker handle.")

    add_command('status', "Show session status (selected thread, zoom ranges).")

    stop_parser = add_command('stop', "Stop the daemon session.")
    stop_parser.add_argument("--all", action="store_true", help="Stop every running session.")

    add_command('list-sessions', "List all running daemon sessions.")
    return parser


# ==============================================================================
# Argument validation
# ==============================================================================

def _pick_handle(positional: Optional[str], option: Optional[str], kind: str) -> Optional[str]:
    if positional and option and positional != option:
        raise ArgumentError(f"Conflicting {kind} handles: {positional} and {option}")
    return positional or option


def _positive(value: Optional[int], flag: str) -> Optional[int]:
    if value is not None and value <= 0:
        raise ArgumentError(f"{flag} must be a positive integer, got {value}")
    return value


def _marker_filters(args: argparse.Namespace) -> MarkerFilterOptions:
    for flag, value in (('--min-duration', args.min_duration), ('--max-duration', args.max_duration)):
        if value is not None and value < 0:
            raise ArgumentError(f"{flag} must be non-negative, got {value}")
    if args.min_duration is not None and args.max_duration is not None and args.min_duration > args.max_duration:
        raise ArgumentError(f"--min-duration ({args.min_duration}) is greater than --max-duration ({args.max_duration})")
    if args.group_by is not None:
        parse_grouping_keys(args.group_by)
    return MarkerFilterOptions(
        search_string=args.search,
        min_duration=args.min_duration,
        max_duration=args.max_duration,
        category=args.category,
        has_stack=args.has_stack,
        limit=_positive(args.limit, '--limit'),
        group_by=args.group_by,
        auto_group=args.auto_group,
    )


def _function_filters(args: argparse.Namespace) -> FunctionFilterOptions:
    if args.min_self is not None and not 0 <= args.min_self <= 100:
        raise ArgumentError(f"--min-self must be a percentage between 0 and 100, got {args.min_self}")
    return FunctionFilterOptions(args.search, args.min_self, _positive(args.limit, '--limit'))


def _call_tree_options(args: argparse.Namespace) -> CallTreeOptions:
    if args.scoring not in SCORING_STRATEGIES:
        raise ArgumentError(f"Invalid scoring strategy: {args.scoring}. "
                            f"Valid strategies: {', '.join(SCORING_STRATEGIES)}")
    return CallTreeOptions(max_nodes=_positive(args.max_lines, '--max-lines'), scoring_strategy=args.scoring)


def build_command(args: argparse.Namespace) -> Command:
    """Turns parsed arguments of a daemon-backed command into a protocol command."""
    match args.command:
        case 'profile':
            return ProfileCommand(args.subcommand)
        case 'thread':
            thread = _pick_handle(args.handle, args.thread_option, 'thread')
            command = ThreadCommand(args.subcommand, thread=thread)
            match args.subcommand:
                case 'select':
                    if not thread:
                        raise ArgumentError("Thread handle required for \"thread select\", e.g. pq thread select t-1")
                case 'markers':
                    command.marker_filters = _marker_filters(args)
                case 'functions':
                    command.function_filters = _function_filters(args)
                case 'samples-top-down' | 'samples-bottom-up':
                    command.call_tree_options = _call_tree_options(args)
            return command
        case 'marker':
            marker = _pick_handle(args.handle, args.marker_option, 'marker')
            if not marker:
                raise ArgumentError(f"Marker handle required for \"marker {args.subcommand}\", e.g. m-12")
            return MarkerCommand(args.subcommand, marker)
        case 'function':
            function = _pick_handle(args.handle, args.function_option, 'function')
            if not function:
                raise ArgumentError(f"Function handle required for \"function {args.subcommand}\", e.g. f-3")
            return FunctionCommand(args.subcommand, function)
        case 'zoom':
            if args.subcommand == 'push' and not args.range:
                raise ArgumentError("Range required for \"zoom push\", e.g. 2.7,3.1 or ts-g,ts-G or m-158")
            return ZoomCommand(args.subcommand, args.range)
        case 'status':
            return StatusCommand()
        case other:
            raise ArgumentError(f"Unknown command \"{other}\"")


# ==============================================================================
# Command execution
# ==============================================================================

def _print_result(result: Any, json_mode: bool):
    print(format_output(result, json_mode))


def run_command(args: argparse.Namespace, client: DaemonClient) -> int:
    session_id: Optional[str] = getattr(args, 'session', None)
    json_mode: bool = getattr(args, 'json', False)

    match args.command:
        case 'load':
            if not json_mode:
                print(f"Loading profile from {args.path}...")
            new_session_id = client.start_new_daemon(args.path, session_id)
            if json_mode:
                print(to_json({'type': 'session-started', 'sessionId': new_session_id}))
            else:
                print(f"Session started: {new_session_id}")

        case 'stop':
            messages: List[str] = client.stop_all() if args.all else [client.stop_daemon(session_id)]
            if json_mode:
                print(to_json({'type': 'stopped', 'messages': messages}))
            elif not messages:
                print("No running sessions.")
            else:
                print("\n".join(messages))

        case 'list-sessions':
            sessions, cleaned = client.list_sessions()
            if json_mode:
                print(to_json({
                    'type': 'sessions',
                    'cleanedUp': cleaned,
                    'sessions': [vars(metadata) for metadata in sessions],
                }))
                return 0
            if cleaned:
                print(f"Cleaned up {cleaned} stale sessions.\n")
            print(f"Found {len(sessions)} running sessions:")
            for metadata in sessions:
                print(f"- {metadata.id}, created at {metadata.createdAt} [daemon pid: {metadata.pid}]")

        case _:
            command = build_command(args)
            _print_result(client.send_command(command, session_id), json_mode)
    return 0


def _report_error(error: ProfileQueryError, json_mode: bool):
    if json_mode:
        print(to_json({'type': 'error', 'error': str(error), 'kind': type(error).__name__}))
    else:
        print(f"Error: {error}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    """
    The main command-line entry point (`pq`).

    Returns:
        int: The process exit code, 0 on success and 1 on any reported error.
    """
    parser = build_parser()
    json_mode = '--json' in (argv if argv is not None else sys.argv[1:])
    try:
        args = parser.parse_args(argv)
    except ArgumentError as e:
        _report_error(e, json_mode)
        return 1

    if args.daemon:
        session_id = getattr(args, 'session', None)
        if not session_id:
            _report_error(ArgumentError("--daemon requires --session <id>"), json_mode)
            return 1
        return run_daemon(args.daemon, session_id, SessionStore(default_session_dir()))

    setup_cli_logging(debug_mode=getattr(args, 'debug', False))
    if args.command is None:
        parser.print_help()
        return 1

    client = DaemonClient(SessionStore(default_session_dir()))
    try:
        return run_command(args, client)
    except ProfileQueryError as e:
        logger.debug(f"Command '{args.command}' failed: {type(e).__name__}: {e}")
        _report_error(e, getattr(args, 'json', False))
        return 1


if __name__ == "__main__":
    sys.exit(main())
