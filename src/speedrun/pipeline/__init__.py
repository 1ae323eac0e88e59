"""
Orchestration of the speedrun training pipeline: profiles, stages and the sequencer.
"""

from .config import (
    ConfigError,
    PROFILES,
    Profile,
    RunConfig,
    RunParameters,
    apply_overrides,
    derive_parameters,
    load_config,
    resolve_profile,
)
from .executors import (
    CallableExecutor,
    CommandExecutor,
    RunContext,
    SequenceExecutor,
    StageFailure,
    join,
    launch_async,
)
from .orchestrator import PipelineSequencer, RunState, RunStatus, run_pipeline
from .stages import Stage, build_stages
from .workspace import Workspace, prepare_workspace

__all__ = [
    "ConfigError",
    "PROFILES",
    "Profile",
    "RunConfig",
    "RunParameters",
    "apply_overrides",
    "derive_parameters",
    "load_config",
    "resolve_profile",
    "CallableExecutor",
    "CommandExecutor",
    "RunContext",
    "SequenceExecutor",
    "StageFailure",
    "join",
    "launch_async",
    "PipelineSequencer",
    "RunState",
    "RunStatus",
    "run_pipeline",
    "Stage",
    "build_stages",
    "Workspace",
    "prepare_workspace",
]
