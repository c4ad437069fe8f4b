import logging
import multiprocessing as mp
from functools import partial
from typing import Callable, List, Any
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from tqdm import tqdm

logger = logging.getLogger('spatialchat.utils.parallel')

def resolve_n_jobs(n_jobs: int, n_items: int) -> int:
    """Translate -1/0 into the core count and cap by the number of items"""
    if n_jobs is None or n_jobs <= 0:
        n_jobs = mp.cpu_count()
    return max(1, min(n_jobs, n_items))

def parallelize(func: Callable, items: List[Any], n_jobs: int = -1,
               backend: str = 'processes', show_progress: bool = True,
               desc: str = "Processing", start_method: str = 'spawn', **kwargs) -> List[Any]:
    """
    Run a function in parallel over a list of items

    Results are returned in the order of ``items`` whatever the order in
    which workers finish.

    Parameters
    ----------
    func : callable
        Module-level function to apply to each item. It must be picklable
        for the 'processes' backend
    items : list
        List of items to process
    n_jobs : int, optional
        Number of parallel jobs. -1 means use all available cores
    backend : str, optional
        Backend to use. Options: 'processes', 'threads', 'serial'
    show_progress : bool, optional
        Whether to show a progress bar
    desc : str, optional
        Progress bar label
    start_method : str, optional
        Multiprocessing start method of the 'processes' backend
    **kwargs
        Additional arguments to pass to func

    Returns
    -------
    List[Any]
        Results of applying func to each item
    """
    if not items:
        return []
    n_jobs = resolve_n_jobs(n_jobs, len(items))

    logger.info(f"Running {len(items)} tasks with {n_jobs} parallel jobs using {backend} backend")

    bound = partial(func, **kwargs) if kwargs else func
    if backend == 'serial' or n_jobs == 1:
        iterator = tqdm(items, desc=desc) if show_progress else items
        return [bound(item) for item in iterator]

    if backend == 'processes':
        # forked workers deadlock at exit once numba has started its TBB pool
        executor = ProcessPoolExecutor(max_workers=n_jobs, mp_context=mp.get_context(start_method))
    elif backend == 'threads':
        executor = ThreadPoolExecutor(max_workers=n_jobs)
    else:
        raise ValueError(f"Unsupported backend: {backend}")

    with executor:
        mapped = executor.map(bound, items)
        if show_progress:
            results = list(tqdm(mapped, total=len(items), desc=desc))
        else:
            results = list(mapped)

    return results

def chunk_indices(n: int, chunk_size: int) -> List[List[int]]:
    """Split range(n) into consecutive chunks of at most chunk_size"""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [list(range(start, min(start + chunk_size, n))) for start in range(0, n, chunk_size)]
