# file: tests/test_protocol.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import numpy as np
import pytest

from profile_query.core.marker_analysis import MarkerFilterOptions
from profile_query.errors import ArgumentError, TransportError
from profile_query.protocol import (
    CallTreeOptions, FunctionFilterOptions, StatusCommand, ThreadCommand, ZoomCommand, command_from_dict,
    command_message, command_to_dict, decode_message, encode_message,
)


def test_thread_command_survives_the_wire():
    command = ThreadCommand(
        'markers', thread='t-0,t-1',
        marker_filters=MarkerFilterOptions(search_string='DOM', min_duration=1.5, has_stack=True, group_by='type'),
        function_filters=FunctionFilterOptions(limit=10),
        call_tree_options=CallTreeOptions(max_nodes=50, scoring_strategy='harmonic-0.5'),
    )
    wire = decode_message(encode_message(command_message(command)))
    assert wire['type'] == 'command'
    assert wire['command']['markerFilters']['minDuration'] == 1.5
    assert command_from_dict(wire['command']) == command


def test_simple_commands():
    assert command_to_dict(StatusCommand()) == {'command': 'status'}
    assert command_from_dict({'command': 'zoom', 'subcommand': 'push', 'range': 'm-1'}) == ZoomCommand('push', 'm-1')


def test_unknown_commands_are_rejected():
    with pytest.raises(ArgumentError, match='Unknown command: nope'):
        command_from_dict({'command': 'nope'})
    with pytest.raises(ArgumentError, match='Unknown zoom subcommand: zap'):
        command_from_dict({'command': 'zoom', 'subcommand': 'zap'})


def test_messages_are_single_lines():
    encoded = encode_message({'type': 'success', 'result': 'two\nlines'})
    assert encoded.count(b'\n') == 1
    assert decode_message(encoded)['result'] == 'two\nlines'


def test_numpy_values_are_encoded_as_plain_json():
    message = {'type': 'success', 'result': {'count': np.int64(3), 'ratio': np.float64(0.5),
                                             'values': np.array([1, 2])}}
    assert decode_message(encode_message(message))['result'] == {'count': 3, 'ratio': 0.5, 'values': [1, 2]}


@pytest.mark.parametrize('line', [b'not json\n', b'[1, 2]\n', b'{"result": 1}\n', b'\xff\xfe{"type":"status"}\n'])
def test_malformed_messages(line):
    with pytest.raises(TransportError, match='Malformed message'):
        decode_message(line)
