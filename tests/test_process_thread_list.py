# file: tests/test_process_thread_list.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from profile_query.core.process_thread_list import ThreadCpuInfo, build_process_thread_list


def test_empty_thread_list():
    assert build_process_thread_list([], {}) == {'processes': [], 'remainingProcesses': None}


def test_processes_outside_the_top_threads_are_summarized():
    threads = [ThreadCpuInfo(i, f'pid{i}', f'thread{i}', float(25 - i)) for i in range(25)]
    result = build_process_thread_list(threads, {f'pid{i}': i for i in range(25)})

    assert len(result['processes']) == 20
    assert result['processes'][0]['pid'] == 'pid0'
    assert result['processes'][0]['processIndex'] == 0
    assert result['processes'][0]['remainingThreads'] is None
    assert result['remainingProcesses'] == {'count': 5, 'combinedCpuMs': 15.0, 'maxCpuMs': 5.0}


def test_busy_process_lists_its_top_threads_and_summarizes_the_rest():
    threads = [ThreadCpuInfo(i, 'main', f'worker{i}', float(100 - i)) for i in range(30)]
    threads.append(ThreadCpuInfo(30, 'other', 'lonely', 1.0))
    result = build_process_thread_list(threads, {'main': 0, 'other': 1})

    main, other = result['processes']
    assert len(main['threads']) == 20
    assert main['threads'][0] == {'threadIndex': 0, 'name': 'worker0', 'cpuMs': 100.0}
    assert main['remainingThreads'] == {'count': 10, 'combinedCpuMs': 755.0, 'maxCpuMs': 80.0}
    assert other['threads'] == [{'threadIndex': 30, 'name': 'lonely', 'cpuMs': 1.0}]
    assert result['remainingProcesses'] is None


def test_listed_process_shows_at_least_five_threads():
    threads = [ThreadCpuInfo(i, 'hot', f'hot{i}', 1000.0) for i in range(20)]
    threads += [ThreadCpuInfo(20 + i, 'cold', f'cold{i}', float(10 - i)) for i in range(8)]
    result = build_process_thread_list(threads, {'hot': 0, 'cold': 1})

    cold = next(p for p in result['processes'] if p['pid'] == 'cold')
    assert [t['name'] for t in cold['threads']] == ['cold0', 'cold1', 'cold2', 'cold3', 'cold4']
    assert cold['remainingThreads']['count'] == 3
