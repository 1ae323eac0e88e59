"""
Presence checks that let expensive stages be skipped on re-invocation.

Guards only test that artifacts exist. They never inspect content or
version, so an artifact left half-written by an interrupted run still
counts as done.
"""
from __future__ import annotations

import importlib.util
import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable

from .workspace import Workspace

logger = logging.getLogger(__name__)

Guard = Callable[[], bool]

TOKENIZER_SENTINELS = ("tokenizer.json", "token_bytes.pt")


def artifacts_present(paths: Iterable[str | Path]) -> bool:
    missing = [str(p) for p in paths if not Path(p).exists()]
    if missing:
        logger.debug("Missing artifacts: %s", missing)
        return False
    return True


def tokenizer_trained(workspace: Workspace) -> bool:
    return artifacts_present(workspace.tokenizer_dir / name for name in TOKENIZER_SENTINELS)


def module_resolves(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


def command_available(name: str, path: str | None = None) -> bool:
    return shutil.which(name, path=path) is not None


def directory_exists(path: str | Path) -> bool:
    return Path(path).is_dir()


__all__ = [
    "Guard",
    "TOKENIZER_SENTINELS",
    "artifacts_present",
    "command_available",
    "directory_exists",
    "module_resolves",
    "tokenizer_trained",
]
