# file: tests/test_function_list.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
import re

import pytest

from profile_query.core.function_list import (
    FunctionData, format_function_name_with_library, library_name_for_function, sort_by_self, sort_by_total,
    split_library_prefix, truncate_function_name,
)


@pytest.mark.parametrize('name', [
    'RtlUserThreadStart',
    'foo::bar::baz()',
    'std::vector<int>::push_back(int const&)',
    'malloc',
    'SomeClass::Method()',
])
def test_short_names_are_unchanged(name):
    assert truncate_function_name(name, 120) == name


def test_namespaced_function_keeps_context_and_name():
    name = 'some::very::long::namespace::hierarchy::with::many::levels::FunctionName()'
    result = truncate_function_name(name, 50)
    assert 'FunctionName()' in result
    assert result.startswith('some::')
    assert len(result) <= 50


def test_template_parameters_are_collapsed():
    name = ('std::_Hash<std::_Umap_traits<SGuid,CPrivateData,std::_Uhash_compare<SGuid,std::hash<SGuid>,'
            'std::equal_to<SGuid>>,std::allocator<std::pair<SGuid const,CPrivateData>>,0>>::~_Hash()')
    result = truncate_function_name(name, 120)
    assert 'std::_Hash<' in result
    assert '~_Hash()' in result
    assert len(result) <= 120


def test_parameters_are_truncated_but_function_name_kept():
    name = ('mozilla::wr::RenderThread::UpdateAndRender(mozilla::wr::WrWindowId, '
            'mozilla::layers::BaseTransactionId<mozilla::wr::RenderRootType>)')
    result = truncate_function_name(name, 120)
    assert 'UpdateAndRender(' in result
    assert 'mozilla::wr::RenderThread::' in result
    assert result.endswith(')')
    assert len(result) <= 120


def test_library_prefix_is_preserved():
    name = 'nvoglv64.dll!mozilla::wr::RenderThread::UpdateAndRender(mozilla::wr::WrWindowId)'
    result = truncate_function_name(name, 60)
    assert result.startswith('nvoglv64.dll!')
    assert 'UpdateAndRender(' in result
    assert len(result) <= 60


def test_very_long_library_prefix_falls_back_to_plain_truncation():
    result = truncate_function_name('a-very-long-library-name-that-is-too-long.dll!FunctionName()', 30)
    assert len(result) == 30
    assert result.endswith('...')


def test_prefix_is_cut_at_namespace_boundaries():
    name = 'namespace1::namespace2::namespace3::namespace4::namespace5::FunctionName()'
    result = truncate_function_name(name, 50)
    assert not re.search(r'[a-z]::[A-Z]', result)
    assert 'FunctionName()' in result
    assert len(result) <= 50


def test_split_library_prefix():
    assert split_library_prefix('libxul.so!Foo') == ('libxul.so', 'Foo')
    assert split_library_prefix('Foo') == (None, 'Foo')


def test_names_carry_their_library(profile_builder):
    profile_builder.add_thread(['libxul.so!main libc.so!malloc', 'plain'])
    profile = profile_builder.build()
    names = {format_function_name_with_library(i, profile): i for i in range(len(profile.funcs))}
    assert set(names) == {'libxul.so!main', 'libc.so!malloc', 'plain'}
    assert library_name_for_function(names['libc.so!malloc'], profile) == 'libc.so'
    assert library_name_for_function(names['plain'], profile) is None


def test_sorting_does_not_mutate_input():
    functions = [
        FunctionData('foo', 0, 50, 30, 0.25, 0.15),
        FunctionData('bar', 1, 100, 40, 0.5, 0.2),
        FunctionData('baz', 2, 75, 20, 0.375, 0.1),
    ]
    assert [f.func_name for f in sort_by_total(functions)] == ['bar', 'baz', 'foo']
    assert [f.func_name for f in sort_by_self(functions)] == ['bar', 'foo', 'baz']
    assert [f.func_name for f in functions] == ['foo', 'bar', 'baz']
