"""
High-level orchestration for the speedrun training pipeline.

This module resolves the hardware profile, prepares the workspace and walks the
stage list built by :mod:`speedrun.pipeline.stages`, aborting the whole run on
the first failing stage. The dataset prefetch is the only stage that runs in
the background; it overlaps tokenizer training and is joined right before
pretraining.

Example:
    PROFILE=4090_2x WANDB_RUN=speedrun speedrun --log-file speedrun.log
"""
from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .config import (
    ConfigError,
    RunConfig,
    apply_overrides,
    check_gpu_capacity,
    config_from_env,
    derive_parameters,
    load_config,
    resolve_profile,
)
from .executors import CompletedHandle, RunContext, StageFailure, TaskHandle, join, launch_async
from .stages import Stage, build_stages, validate_stages
from .utils import setup_logging, timed_block
from .workspace import prepare_workspace

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class RunState:
    status: RunStatus = RunStatus.NOT_STARTED
    index: Optional[int] = None
    stage: Optional[str] = None
    cause: Optional[BaseException] = None
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class PipelineSequencer:
    """
    Run stages in declared order with guard checks and fail-fast abort.

    The sequencer owns every background handle from launch until the stage
    that joins it. A sequencer instance runs once.
    """

    def __init__(self, stages: Sequence[Stage], context: RunContext) -> None:
        validate_stages(stages)
        self.stages = list(stages)
        self.context = context
        self.state = RunState()
        self._background: dict[str, TaskHandle] = {}

    def run(self) -> RunState:
        if self.state.status is not RunStatus.NOT_STARTED:
            raise RuntimeError("pipeline sequencer has already been run")

        for index, stage in enumerate(self.stages):
            self.state.status = RunStatus.RUNNING
            self.state.index = index
            self.state.stage = stage.name
            try:
                self._run_stage(index, stage)
            except BaseException as exc:
                self.state.status = RunStatus.FAILED
                self.state.cause = exc
                logger.error("Stage %d (%s) failed: %s", index, stage.name, exc)
                self._abort()
                raise

        self.state.status = RunStatus.COMPLETED
        logger.info(
            "Pipeline finished: %d stages executed, %d skipped.",
            len(self.state.executed),
            len(self.state.skipped),
        )
        return self.state

    def _run_stage(self, index: int, stage: Stage) -> None:
        if stage.is_join:
            handle = self._background.pop(stage.joins)
            logger.info("Waiting for %s to complete...", stage.joins)
            with timed_block(f"[{index}] {stage.name}", logger):
                join(handle, stage.joins)
            self.state.executed.append(stage.name)
            return

        if stage.should_skip():
            logger.info("[%d] %s: artifacts already present, skipping.", index, stage.name)
            self.state.skipped.append(stage.name)
            if not stage.blocking:
                self._background[stage.name] = CompletedHandle(0)
            return

        handle = launch_async(stage, self.context)
        self.state.executed.append(stage.name)
        if not stage.blocking:
            self._background[stage.name] = handle
            return
        with timed_block(f"[{index}] {stage.name}", logger):
            join(handle, stage.name)

    def _abort(self) -> None:
        for name, handle in self._background.items():
            if handle.cancel():
                logger.warning("Cancelled background stage %s.", name)
        self._background.clear()


def run_pipeline(
    config: RunConfig,
    *,
    cwd: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunState:
    """
    Resolve the profile, prepare the workspace and run every stage.

    Raises:
        ConfigError: Unknown profile; nothing has been created or executed.
        OSError: The workspace could not be created or an artifact fetch failed.
        StageFailure: A stage exited non-zero; later stages were not run.
    """
    profile = resolve_profile(config.profile)
    check_gpu_capacity(profile)
    params = derive_parameters(profile)
    workspace = prepare_workspace(config.base_dir)
    project_dir = (cwd or Path.cwd()).resolve()

    stages = build_stages(config, profile, params, workspace, project_dir=project_dir, environ=environ)
    logger.info(
        "run=%s profile=%s gpus=%d base_dir=%s stages=%d dry_run=%s",
        config.run,
        profile.name or "default",
        profile.gpu_count,
        workspace.base_dir,
        len(stages),
        config.dry_run,
    )

    context = RunContext(workspace=workspace, cwd=project_dir, dry_run=config.dry_run, environ=environ)
    return PipelineSequencer(stages, context).run()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the speedrun training pipeline end to end.")
    parser.add_argument("--config", type=Path, default=None, help="Optional run config (YAML or JSON).")
    parser.add_argument("--profile", type=str, default=None, help="Hardware profile, e.g. 4090_2x or H100_8x.")
    parser.add_argument("--run", type=str, default=None, help="Run-tracking identifier (default: disabled).")
    parser.add_argument("--base-dir", type=Path, default=None, help="Artifact cache directory.")
    parser.add_argument("--with-rl", action="store_true", help="Also run the reinforcement stage and its eval.")
    parser.add_argument("--provision", action="store_true", help="Install uv, the venv, dependencies and Rust first.")
    parser.add_argument("--dry-run", action="store_true", help="Log stage commands without executing them.")
    parser.add_argument("--no-copy-report", action="store_true", help="Leave the report in the cache directory only.")
    parser.add_argument("--overrides", nargs="*", default=[], help="Config overrides (key=value).")
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a log file.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, ...).")
    return parser


def _load_and_prepare_config(args: argparse.Namespace, environ: Mapping[str, str]) -> RunConfig:
    config = load_config(args.config) if args.config is not None else RunConfig()
    config = config_from_env(config, environ)

    updates = {}
    if args.profile is not None:
        updates["profile"] = args.profile
    if args.run:
        updates["run"] = args.run
    if args.base_dir is not None:
        updates["base_dir"] = args.base_dir.expanduser()
    for attr in ("with_rl", "provision", "dry_run"):
        if getattr(args, attr):
            updates[attr] = True
    if args.no_copy_report:
        updates["copy_report"] = False
    if updates:
        config = replace(config, **updates)

    return apply_overrides(config, args.overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    setup_logging(level=level, log_file=args.log_file, logger_name="speedrun")

    try:
        config = _load_and_prepare_config(args, os.environ)
        run_pipeline(config, environ=os.environ)
        return 0
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1
    except StageFailure as exc:
        logger.error("Aborting run: %s", exc)
        return exc.exit_code
    except OSError as exc:
        logger.error("Aborting run: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
