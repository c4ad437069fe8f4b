import logging
import sys
import time
import warnings
import multiprocessing as mp
from contextlib import contextmanager
from pathlib import Path

# third-party loggers that flood DEBUG output during a run
NOISY_LOGGERS = ('numba', 'fsspec', 'h5py', 'PIL', 'matplotlib')

def setup_logging(level="INFO", log_file=None, log_format=None):
    """
    Configure the ``spatialchat`` logger for a run

    Handlers already attached are replaced, so calling this again
    reconfigures the run instead of duplicating messages. Loggers of
    compiled dependencies stay at WARNING whatever the level.

    Parameters
    ----------
    level : str, optional
        'DEBUG', 'INFO', 'WARNING' or 'ERROR'
    log_file : str or Path, optional
        Also write the run log to this file
    log_format : str, optional
        Format string for log records

    Returns
    -------
    logging.Logger
        The ``spatialchat`` logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")

    logger = logging.getLogger('spatialchat')
    logger.setLevel(numeric_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(log_format or '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    if log_file is not None:
        logger.info(f"Logging to file: {log_file}")
    logger.info(f"Logging level set to {level.upper()}")
    return logger

def format_duration(seconds):
    """Render a duration as '1h 2m 3.00s', dropping empty leading units"""
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours >= 1:
        return f"{int(hours)}h {int(minutes)}m {seconds:.2f}s"
    if minutes >= 1:
        return f"{int(minutes)}m {seconds:.2f}s"
    return f"{seconds:.2f}s"

def log_execution_time(logger, start_time=None):
    """
    Start a timer for a whole run

    Returns a function that logs ``"<message> in <duration>"`` when called.
    """
    start_time = time.perf_counter() if start_time is None else start_time

    def log_end(message="Execution completed"):
        logger.info(f"{message} in {format_duration(time.perf_counter() - start_time)}")

    return log_end

@contextmanager
def log_stage(logger, name):
    """
    Log the start and the duration of one pipeline stage

    Nothing is logged as finished if the stage raises; the error is left to
    the caller.

    Examples
    --------
    >>> with log_stage(logger, "Computing communication probabilities"):
    ...     adata = compute_commun_prob(adata, db)
    """
    logger.info(f"{name}...")
    start = time.perf_counter()
    yield
    logger.info(f"{name} finished in {format_duration(time.perf_counter() - start)}")

def log_run_info(logger, inference=None):
    """
    Log library versions and the worker pool settings of a run

    Parameters
    ----------
    logger : logging.Logger
        Logger to use
    inference : dict, optional
        ``inference`` section of the configuration
    """
    import platform
    import numpy as np
    import pandas as pd
    import scanpy as sc
    import squidpy as sq
    import anndata
    import networkx as nx

    logger.info("=" * 80)
    logger.info(f"Python {platform.python_version()} on {platform.system()} {platform.release()}, "
                f"{mp.cpu_count()} CPU cores")
    logger.info(f"numpy {np.__version__}, pandas {pd.__version__}, anndata {anndata.__version__}, "
                f"scanpy {sc.__version__}, squidpy {sq.__version__}, networkx {nx.__version__}")
    if inference is not None:
        n_workers = inference.get('n_workers', 1)
        pool = "serial" if n_workers == 1 else f"{n_workers} spawned worker processes"
        logger.info(f"Permutation test: {inference.get('nboot')} permutations, seed {inference.get('seed')}, {pool}")
    logger.info("=" * 80)

def capture_warnings(logger=None):
    """Send Python warnings raised during a run to the run log"""
    if logger is None:
        logger = logging.getLogger('spatialchat')

    def showwarning(message, category, filename, lineno, file=None, line=None):
        logger.warning(f"{category.__name__} ({Path(filename).name}:{lineno}): {message}")

    warnings.showwarning = showwarning
