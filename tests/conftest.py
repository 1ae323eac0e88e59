from __future__ import annotations

import logging
import os
import stat

import pytest

from speedrun.pipeline.executors import CompletedHandle, RunContext
from speedrun.pipeline.workspace import prepare_workspace


class RecordingExecutor:
    """Fake executor that appends its name to a shared log and exits with ``returncode``."""

    def __init__(self, name: str, log: list, returncode: int = 0, action=None) -> None:
        self.name = name
        self.log = log
        self.returncode = returncode
        self.action = action

    def describe(self) -> str:
        return self.name

    def launch(self, context):
        self.log.append(self.name)
        if self.action is not None:
            self.action(context)
        return CompletedHandle(self.returncode)


@pytest.fixture(autouse=True)
def _restore_speedrun_logger():
    logger = logging.getLogger("speedrun")
    handlers, propagate, level = list(logger.handlers), logger.propagate, logger.level
    yield
    logger.handlers = handlers
    logger.propagate = propagate
    logger.setLevel(level)


@pytest.fixture
def workspace(tmp_path):
    return prepare_workspace(tmp_path / "cache")


@pytest.fixture
def context(workspace, tmp_path):
    return RunContext(workspace=workspace, cwd=tmp_path, environ=dict(os.environ))


STUB_SCRIPT = """#!/bin/sh
echo "${0##*/} $*" >> "$STUB_LOG"
if [ -n "$STUB_ENV_LOG" ]; then
    echo "${0##*/} OMP_NUM_THREADS=$OMP_NUM_THREADS NANOCHAT_BASE_DIR=$NANOCHAT_BASE_DIR" >> "$STUB_ENV_LOG"
fi
if [ -n "$STUB_FAIL_ON" ]; then
    case "$*" in
        *"$STUB_FAIL_ON"*) exit "${STUB_FAIL_CODE:-1}" ;;
    esac
fi
exit 0
"""


@pytest.fixture
def stub_bin(tmp_path):
    """Directory holding recording stand-ins for python, torchrun and uv."""
    if os.name == "nt":
        pytest.skip("shell stubs require a POSIX shell")
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name in ("python", "torchrun", "uv"):
        path = bin_dir / name
        path.write_text(STUB_SCRIPT, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return bin_dir
