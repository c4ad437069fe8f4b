import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from spatialchat.utils import parallel
from spatialchat.utils.parallel import chunk_indices, parallelize, resolve_n_jobs


def _scale(x, factor=1):
    return x * factor


def _slow_for_small(x):
    # early items finish last
    time.sleep(0.05 * (5 - x))
    return x


def test_parallelize_serial_passes_kwargs():
    assert parallelize(_scale, [1, 2, 3], n_jobs=1, show_progress=False, factor=10) == [10, 20, 30]


def test_parallelize_keeps_item_order_with_threads():
    items = list(range(5))
    assert parallelize(_slow_for_small, items, n_jobs=5, backend="threads", show_progress=False) == items


def test_parallelize_processes():
    assert parallelize(pow, [1, 2, 3, 4], n_jobs=2, backend="processes", show_progress=False,
                       exp=2) == [1, 4, 9, 16]


def test_parallelize_processes_are_spawned(monkeypatch):
    contexts = []

    class RecordingPool(ThreadPoolExecutor):
        def __init__(self, max_workers=None, mp_context=None):
            contexts.append(mp_context)
            super().__init__(max_workers=max_workers)

    monkeypatch.setattr(parallel, "ProcessPoolExecutor", RecordingPool)
    assert parallelize(_scale, [1, 2, 3], n_jobs=2, show_progress=False, factor=2) == [2, 4, 6]
    assert contexts[0].get_start_method() == "spawn"


def test_parallelize_empty_and_bad_backend():
    assert parallelize(_scale, [], n_jobs=2) == []
    with pytest.raises(ValueError):
        parallelize(_scale, [1, 2], n_jobs=2, backend="cluster", show_progress=False)


def test_resolve_n_jobs():
    assert resolve_n_jobs(4, 2) == 2
    assert resolve_n_jobs(1, 100) == 1
    assert resolve_n_jobs(-1, 1) == 1
    assert resolve_n_jobs(None, 3) >= 1


def test_chunk_indices():
    assert chunk_indices(5, 2) == [[0, 1], [2, 3], [4]]
    assert chunk_indices(0, 3) == []
    with pytest.raises(ValueError):
        chunk_indices(3, 0)
