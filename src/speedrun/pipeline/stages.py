"""
Stage descriptors and the speedrun stage list.

A stage either runs an executor (optionally guarded, optionally in the
background) or joins a background stage launched earlier. The list built by
:func:`build_stages` is the whole pipeline; the sequencer adds no stages of
its own.
"""
from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from . import guards
from .config import Profile, RunConfig, RunParameters
from .downloads import download_file
from .executors import CallableExecutor, CommandExecutor, Executor, RunContext, SequenceExecutor
from .guards import Guard
from .report import publish_report, report_command
from .workspace import Workspace

logger = logging.getLogger(__name__)

TOKENIZER_TOOL = "rustbpe"
UV_INSTALL = "curl -LsSf https://astral.sh/uv/install.sh | sh"
RUSTUP_INSTALL = "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y"


@dataclass(frozen=True)
class Stage:
    name: str
    executor: Optional[Executor] = None
    skip_if: Optional[Guard] = None
    blocking: bool = True
    joins: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.executor is None) == (self.joins is None):
            raise ValueError(f"stage '{self.name}' needs exactly one of executor or joins")
        if self.joins is not None and (not self.blocking or self.skip_if is not None):
            raise ValueError(f"join stage '{self.name}' must be blocking and unguarded")

    @property
    def is_join(self) -> bool:
        return self.joins is not None

    def should_skip(self) -> bool:
        return self.skip_if is not None and bool(self.skip_if())


def validate_stages(stages: Sequence[Stage]) -> None:
    """Check names are unique and every background stage is joined exactly once, later."""
    seen: set[str] = set()
    pending: set[str] = set()
    for stage in stages:
        if stage.name in seen:
            raise ValueError(f"duplicate stage name: {stage.name!r}")
        seen.add(stage.name)
        if stage.is_join:
            if stage.joins not in pending:
                raise ValueError(f"stage '{stage.name}' joins '{stage.joins}', which is not a pending background stage")
            pending.discard(stage.joins)
        elif not stage.blocking:
            pending.add(stage.name)
    if pending:
        raise ValueError(f"background stages never joined: {sorted(pending)}")


def _python_module(python: str, module: str, *args: str) -> CommandExecutor:
    return CommandExecutor([python, "-m", module, *args])


def _torchrun(
    config: RunConfig,
    profile: Profile,
    module: str,
    *args: str,
    separator: bool = True,
) -> CommandExecutor:
    command = [config.torchrun, "--standalone", f"--nproc_per_node={profile.gpu_count}", "-m", module]
    if args:
        command.extend(["--", *args] if separator else args)
    return CommandExecutor(command)


def _module_probe(python: str, name: str) -> Guard:
    if python == sys.executable:
        return lambda: guards.module_resolves(name)

    def probe() -> bool:
        # A different interpreter (e.g. the provisioned venv) has to answer for itself.
        code = f"import importlib.util, sys; sys.exit(0 if importlib.util.find_spec({name!r}) else 1)"
        try:
            return subprocess.run([python, "-c", code], check=False).returncode == 0
        except OSError:
            return False

    return probe


def _fetch(url: str, target_attr: str) -> CallableExecutor:
    def fetch(context: RunContext) -> int:
        download_file(url, getattr(context.workspace, target_attr))
        return 0

    return CallableExecutor(fetch, f"download {url}")


def _activate_venv(venv_dir: Path) -> CallableExecutor:
    def activate(context: RunContext) -> int:
        context.workspace.activate_venv(venv_dir, context.environ)
        return 0

    return CallableExecutor(activate, f"activate {venv_dir}")


def _prepend_path(directory: Path) -> CallableExecutor:
    def prepend(context: RunContext) -> int:
        context.workspace.prepend_path(directory, context.environ)
        return 0

    return CallableExecutor(prepend, f"PATH+={directory}")


def provisioning_stages(
    workspace: Workspace,
    project_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
    uv: str = "uv",
) -> list[Stage]:
    home = Path(os.path.expanduser("~"))
    venv_dir = project_dir / ".venv"

    def on_path(name: str) -> Guard:
        return lambda: guards.command_available(name, path=workspace.child_env(environ).get("PATH"))

    return [
        Stage(
            "install-uv",
            SequenceExecutor(CommandExecutor(UV_INSTALL, shell=True), _prepend_path(home / ".local" / "bin")),
            skip_if=on_path("uv"),
        ),
        Stage(
            "create-venv",
            CommandExecutor([uv, "venv"]),
            skip_if=lambda: guards.directory_exists(venv_dir),
        ),
        Stage(
            "sync-dependencies",
            SequenceExecutor(CommandExecutor([uv, "sync", "--extra", "gpu"]), _activate_venv(venv_dir)),
        ),
        Stage("install-rust", CommandExecutor(RUSTUP_INSTALL, shell=True), skip_if=on_path("cargo")),
        Stage("activate-rust", _prepend_path(home / ".cargo" / "bin")),
    ]


def build_stages(
    config: RunConfig,
    profile: Profile,
    params: RunParameters,
    workspace: Workspace,
    *,
    project_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
) -> list[Stage]:
    stages: list[Stage] = []
    python = config.python
    if config.provision:
        stages.extend(provisioning_stages(workspace, project_dir, environ, uv=config.uv))
        python = str(project_dir / ".venv" / "bin" / "python")

    run_flag = f"--run={config.run}"

    stages += [
        Stage("reset-report", report_command(python, "reset")),
        Stage(
            "build-tokenizer-tool",
            CommandExecutor(
                [config.uv, "run", "maturin", "develop", "--release", "--manifest-path", f"{TOKENIZER_TOOL}/Cargo.toml"]
            ),
            skip_if=_module_probe(python, TOKENIZER_TOOL),
        ),
        Stage(
            "download-initial-shards",
            _python_module(python, "nanochat.dataset", "-n", str(config.initial_shards)),
        ),
        Stage(
            "download-remaining-shards",
            _python_module(python, "nanochat.dataset", "-n", str(config.total_shards)),
            blocking=False,
        ),
        Stage(
            "train-tokenizer",
            SequenceExecutor(
                _python_module(python, "scripts.tok_train", f"--max_chars={config.tokenizer_max_chars}"),
                _python_module(python, "scripts.tok_eval"),
            ),
            skip_if=lambda: guards.tokenizer_trained(workspace),
        ),
        Stage("wait-for-shards", joins="download-remaining-shards"),
        Stage(
            "pretrain",
            _torchrun(
                config,
                profile,
                "scripts.base_train",
                f"--depth={config.depth}",
                run_flag,
                *params.fragments("device_batch", "total_batch"),
            ),
        ),
        Stage(
            "eval-base-loss",
            _torchrun(
                config,
                profile,
                "scripts.base_loss",
                *params.fragments("device_batch", "total_batch"),
                separator=False,
            ),
        ),
        Stage("eval-base-core", _torchrun(config, profile, "scripts.base_eval")),
        Stage("fetch-identity-data", _fetch(config.identity_url, "identity_conversations")),
        Stage(
            "midtrain",
            _torchrun(config, profile, "scripts.mid_train", run_flag, *params.fragments("device_batch", "total_batch")),
        ),
        Stage(
            "eval-mid",
            _torchrun(config, profile, "scripts.chat_eval", "-i", "mid", *params.fragments("eval_batch")),
        ),
        Stage(
            "sft",
            _torchrun(config, profile, "scripts.chat_sft", run_flag, *params.fragments("sft_device_batch")),
        ),
        Stage(
            "eval-sft",
            _torchrun(config, profile, "scripts.chat_eval", "-i", "sft", *params.fragments("eval_batch")),
        ),
    ]

    if config.with_rl:
        stages += [
            Stage("rl", _torchrun(config, profile, "scripts.chat_rl", run_flag)),
            Stage("eval-rl", _torchrun(config, profile, "scripts.chat_eval", "-i", "rl", "-a", "GSM8K")),
        ]

    generate: Executor = report_command(python, "generate")
    if config.copy_report:
        generate = SequenceExecutor(generate, CallableExecutor(publish_report, "copy report to working directory"))
    stages.append(Stage("generate-report", generate))

    validate_stages(stages)
    return stages


__all__ = ["Stage", "build_stages", "provisioning_stages", "validate_stages"]
