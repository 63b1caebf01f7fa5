# file: core/process_thread_list.py
# Copyright (c) 2026, Alibaba Cloud. All rights reserved.
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

import pandas as pd

# The heaviest threads overall; every process owning one of them is listed.
TOP_THREAD_COUNT = 20
# The heaviest processes are always listed.
TOP_PROCESS_COUNT = 5
# A listed process shows at least this many threads (when it has them).
MIN_THREADS_PER_PROCESS = 5


@dataclass
class ThreadCpuInfo:
    """A thread's CPU time, as fed into the process/thread list."""
    thread_index: int
    pid: str
    name: str
    cpu_ms: float


def _summary(cpu_values: pd.Series) -> Optional[Dict[str, Any]]:
    if cpu_values.empty:
        return None
    return {
        'count': int(len(cpu_values)),
        'combinedCpuMs': float(cpu_values.sum()),
        'maxCpuMs': float(cpu_values.max()),
    }


def build_process_thread_list(threads: List[ThreadCpuInfo], process_index_map: Dict[str, int]) -> Dict[str, Any]:
    """
    Selects the processes and threads worth listing in a profile summary.

    The top 5 processes by CPU are listed, plus any process that owns one of
    the 20 busiest threads. Each listed process shows all of its top-20
    threads, topped up with its next busiest threads to at least 5; the rest
    of its threads, and the unlisted processes, are summarized as
    {count, combinedCpuMs, maxCpuMs}.

    Args:
        threads (List[ThreadCpuInfo]): Every thread with its CPU time.
        process_index_map (Dict[str, int]): pid -> process index (`p-N`).

    Returns:
        Dict[str, Any]: {'processes': [...], 'remainingProcesses': summary or None}.
    """
    if not threads:
        return {'processes': [], 'remainingProcesses': None}

    df = pd.DataFrame([
        {'threadIndex': t.thread_index, 'pid': t.pid, 'name': t.name, 'cpuMs': float(t.cpu_ms)}
        for t in threads
    ])
    df = df.sort_values('cpuMs', ascending=False, kind='stable')
    top_thread_indexes = set(df['threadIndex'].head(TOP_THREAD_COUNT))

    process_cpu = df.groupby('pid', sort=False)['cpuMs'].sum().sort_values(ascending=False, kind='stable')
    listed_pids = set(process_cpu.head(TOP_PROCESS_COUNT).index)
    listed_pids |= set(df.loc[df['threadIndex'].isin(top_thread_indexes), 'pid'])

    processes = []
    for pid, cpu_ms in process_cpu.items():
        if pid not in listed_pids:
            continue
        process_threads = df[df['pid'] == pid]
        in_top = process_threads['threadIndex'].isin(top_thread_indexes)
        shown = process_threads[in_top]
        if len(shown) < MIN_THREADS_PER_PROCESS:
            shown = pd.concat([shown, process_threads[~in_top].head(MIN_THREADS_PER_PROCESS - len(shown))])
        remaining = process_threads.drop(shown.index)
        processes.append({
            'processIndex': process_index_map.get(pid),
            'pid': pid,
            'cpuMs': float(cpu_ms),
            'threads': [
                {'threadIndex': int(row.threadIndex), 'name': row.name, 'cpuMs': float(row.cpuMs)}
                for row in shown.itertuples(index=False)
            ],
            'remainingThreads': _summary(remaining['cpuMs']),
        })

    unlisted = process_cpu[~process_cpu.index.isin(listed_pids)]
    return {'processes': processes, 'remainingProcesses': _summary(unlisted)}
