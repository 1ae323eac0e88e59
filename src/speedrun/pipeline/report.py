"""
Glue for the external report sink.

The report itself is rendered by ``nanochat.report``; the orchestrator only
resets it at the start of a run, asks for the final render at the end, and
copies the rendered document into the invocation directory.
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from .executors import CommandExecutor, RunContext
from .workspace import Workspace

logger = logging.getLogger(__name__)

REPORT_MODULE = "nanochat.report"
REPORT_FILENAME = "report.md"


def report_command(python: str, action: str) -> CommandExecutor:
    if action not in {"reset", "generate"}:
        raise ValueError(f"Unknown report action: {action!r}")
    return CommandExecutor([python, "-m", REPORT_MODULE, action])


def rendered_report(workspace: Workspace) -> Path:
    return workspace.report_dir / REPORT_FILENAME


def publish_report(context: RunContext) -> Optional[int]:
    """Copy the rendered report into ``context.cwd``; a missing report is logged, not fatal."""
    source = rendered_report(context.workspace)
    if not source.exists():
        logger.warning("Rendered report not found at %s; nothing to copy.", source)
        return 0
    target = context.cwd / REPORT_FILENAME
    if target.resolve() != source.resolve():
        shutil.copyfile(source, target)
    logger.info("Report available at %s", target)
    return 0


__all__ = ["REPORT_FILENAME", "publish_report", "rendered_report", "report_command"]
