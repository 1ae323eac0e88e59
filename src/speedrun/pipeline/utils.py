"""
Small helpers shared by the speedrun modules: log handlers, cache directories,
per-stage wall-clock timing and the CUDA device count used by the profile check.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

try:  # Torch is optional; the orchestrator itself never trains.
    import torch as _torch
except ImportError:  # pragma: no cover - optional dependency
    _torch = None


LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[str | Path] = None,
    logger_name: str = "speedrun",
) -> logging.Logger:
    """
    Route ``logger_name`` (the whole package by default) to stderr and, when
    ``log_file`` is given, to that file as well. Calling it again replaces the
    handlers instead of stacking duplicates.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.handlers = []
    logger.propagate = False

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_path = ensure_directory(Path(log_file).expanduser().parent) / Path(log_file).name
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    LOGGER.debug("Logging for '%s' at level %s (file=%s)", logger_name, level, log_file)
    return logger


def ensure_directory(path: str | Path) -> Path:
    """Create ``path`` (``~`` expanded, relative to cwd) if needed and return it absolute."""
    directory = Path(path).expanduser()
    if not directory.is_absolute():
        directory = (Path.cwd() / directory).resolve(strict=False)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def detect_gpu_count() -> Optional[int]:
    """Number of visible CUDA devices, or ``None`` when torch is unavailable."""
    if _torch is None:
        return None
    if not _torch.cuda.is_available():
        return 0
    return int(_torch.cuda.device_count())


@contextmanager
def timed_block(label: str, logger: Optional[logging.Logger] = None) -> Iterator[None]:
    """Log how long the wrapped stage took, whether it finished or raised."""
    log = logger or LOGGER
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        log.info("%s took %.1fs", label, elapsed)


__all__ = [
    "LOG_FORMAT",
    "detect_gpu_count",
    "ensure_directory",
    "setup_logging",
    "timed_block",
]
