"""
On-disk workspace shared by every stage.

The workspace replaces process-wide ambient state: instead of exporting
variables into the orchestrator's own environment, it carries an explicit
environment overlay that every executor merges over its parent environment.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .utils import ensure_directory

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = Path("~") / ".cache" / "nanochat"
TOKENIZER_SUBDIR = "tokenizer"


@dataclass
class Workspace:
    base_dir: Path
    env: dict[str, str] = field(default_factory=dict)

    @property
    def tokenizer_dir(self) -> Path:
        return self.base_dir / TOKENIZER_SUBDIR

    @property
    def identity_conversations(self) -> Path:
        return self.base_dir / "identity_conversations.jsonl"

    @property
    def report_dir(self) -> Path:
        return self.base_dir / "report"

    def prepend_path(self, directory: Path, environ: Optional[Mapping[str, str]] = None) -> None:
        source = environ if environ is not None else os.environ
        current = self.env.get("PATH", source.get("PATH", ""))
        entries = [entry for entry in current.split(os.pathsep) if entry]
        if str(directory) in entries:
            return
        self.env["PATH"] = os.pathsep.join([str(directory), *entries])

    def activate_venv(self, venv_dir: Path, environ: Optional[Mapping[str, str]] = None) -> Path:
        """Point child processes at ``venv_dir``; returns the venv interpreter."""
        bin_dir = venv_dir / ("Scripts" if os.name == "nt" else "bin")
        self.env["VIRTUAL_ENV"] = str(venv_dir)
        self.prepend_path(bin_dir, environ)
        logger.info("Activated virtual environment %s", venv_dir)
        return bin_dir / "python"

    def child_env(self, base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        env = dict(base if base is not None else os.environ)
        env.update(self.env)
        return env


def prepare_workspace(
    base_dir: Optional[str | Path] = None,
    *,
    omp_num_threads: int = 1,
) -> Workspace:
    """
    Create the cache directory (if absent) and build the child environment overlay.

    Args:
        base_dir: Cache root. Defaults to ``~/.cache/nanochat``.
        omp_num_threads: Thread cap for nested numeric libraries in CPU-bound stages.

    Raises:
        OSError: The directory cannot be created (permissions, disk).
    """
    resolved = ensure_directory(base_dir if base_dir is not None else DEFAULT_BASE_DIR)
    workspace = Workspace(
        base_dir=resolved,
        env={
            "NANOCHAT_BASE_DIR": str(resolved),
            "OMP_NUM_THREADS": str(omp_num_threads),
        },
    )
    logger.info("Workspace ready at %s", resolved)
    return workspace


__all__ = ["DEFAULT_BASE_DIR", "Workspace", "prepare_workspace"]
