"""
Configuration for speedrun orchestration.

The module defines the hardware profile table, the pure derivation of optional
executor flags from a profile, and the structured run configuration. It also
provides helpers for loading config files, layering environment inputs and
applying CLI overrides.
"""
from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Iterable, Mapping, MutableMapping, Optional

import yaml

from .utils import detect_gpu_count

logger = logging.getLogger(__name__)

DEFAULT_GPU_COUNT = 8
DISABLED_RUN = "dummy"
IDENTITY_CONVERSATIONS_URL = "https://karpathy-public.s3.us-west-2.amazonaws.com/identity_conversations.jsonl"


class ConfigError(ValueError):
    """Raised for invalid run configuration; always fatal and raised before any stage runs."""


@dataclass(frozen=True)
class Profile:
    name: str = ""
    gpu_count: int = DEFAULT_GPU_COUNT
    device_batch_size: Optional[int] = None
    sft_device_batch_size: Optional[int] = None
    total_batch_size: Optional[int] = None


# 524288 = 16K * 32, 393216 = 16K * 24
PROFILES: dict[str, Profile] = {
    "4090_2x": Profile("4090_2x", 2, 4, 1, 524288),
    "4090_8x": Profile("4090_8x", 8, 4, 1, 524288),
    "5090_2x": Profile("5090_2x", 2, 6, 2, 393216),
    "5090_8x": Profile("5090_8x", 8, 6, 2, 393216),
    "H100_2x": Profile("H100_2x", 2, 32, 4, 524288),
    "H100_8x": Profile("H100_8x", 8, 32, 4, 524288),
}


def resolve_profile(name: Optional[str]) -> Profile:
    """
    Map a hardware profile name to its run parameters.

    An empty name keeps the defaults (8 GPUs, executor-chosen batch sizes).
    Any name outside :data:`PROFILES` raises :class:`ConfigError`.
    """
    key = (name or "").strip()
    if not key:
        return Profile()
    try:
        return PROFILES[key]
    except KeyError:
        raise ConfigError(f"Unknown PROFILE: {key}") from None


def check_gpu_capacity(profile: Profile) -> Optional[int]:
    """Warn when fewer CUDA devices are visible than the profile launches workers for."""
    available = detect_gpu_count()
    if available is None:
        logger.debug("torch not installed; skipping GPU capacity check.")
    elif available < profile.gpu_count:
        logger.warning(
            "Profile '%s' expects %d GPUs but only %d are visible.",
            profile.name or "default",
            profile.gpu_count,
            available,
        )
    return available


@dataclass(frozen=True)
class RunParameters:
    """Optional executor flags; an empty string means "defer to the executor default"."""

    device_batch: str = ""
    sft_device_batch: str = ""
    total_batch: str = ""
    eval_batch: str = ""

    def fragments(self, *names: str) -> list[str]:
        values = (getattr(self, name) for name in names)
        return [value for value in values if value]


def _flag(name: str, value: Optional[int]) -> str:
    return f"--{name}={value}" if value is not None else ""


def derive_parameters(profile: Profile) -> RunParameters:
    return RunParameters(
        device_batch=_flag("device_batch_size", profile.device_batch_size),
        sft_device_batch=_flag("sft_device_batch_size", profile.sft_device_batch_size),
        total_batch=_flag("total_batch_size", profile.total_batch_size),
        eval_batch=_flag("batch-size", profile.device_batch_size),
    )


@dataclass
class RunConfig:
    profile: str = ""
    run: str = DISABLED_RUN
    base_dir: Optional[Path] = None
    depth: int = 20
    initial_shards: int = 8
    total_shards: int = 240
    tokenizer_max_chars: int = 2_000_000_000
    identity_url: str = IDENTITY_CONVERSATIONS_URL
    python: str = field(default_factory=lambda: sys.executable)
    torchrun: str = "torchrun"
    uv: str = "uv"
    with_rl: bool = False
    provision: bool = False
    dry_run: bool = False
    copy_report: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["base_dir"] is not None:
            data["base_dir"] = str(data["base_dir"])
        return data

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RunConfig":
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(payload) - set(known))
        if unknown:
            raise ConfigError(f"Unknown config keys: {unknown}")

        data: dict[str, Any] = {}
        for key, value in payload.items():
            data[key] = _coerce(key, value)
        return cls(**data)


_INT_FIELDS = {"depth", "initial_shards", "total_shards", "tokenizer_max_chars"}
_BOOL_FIELDS = {"with_rl", "provision", "dry_run", "copy_report"}


def _coerce(key: str, value: Any) -> Any:
    if key == "base_dir":
        return Path(value).expanduser() if value not in (None, "") else None
    if key in _INT_FIELDS:
        if isinstance(value, bool):
            raise ConfigError(f"'{key}' must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'{key}' must be an integer, got {value!r}") from None
    if key in _BOOL_FIELDS:
        return _parse_bool(key, value)
    if key == "run" and (value is None or not str(value).strip()):
        return DISABLED_RUN
    if value is None:
        return ""
    return str(value)


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    raise ConfigError(f"'{key}' must be a boolean, got {value!r}")


def load_config(path: str | Path) -> RunConfig:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    text = config_path.read_text(encoding="utf-8")

    try:
        if suffix in {".yaml", ".yml"}:
            payload = yaml.safe_load(text) or {}
        elif suffix == ".json":
            payload = json.loads(text or "{}")
        else:
            raise ConfigError(f"Unsupported config extension: {suffix}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not parse {config_path}: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise ConfigError("Top-level config must be a mapping.")

    return RunConfig.from_dict(payload)


ENV_KEYS = {
    "PROFILE": "profile",
    "WANDB_RUN": "run",
    "NANOCHAT_BASE_DIR": "base_dir",
}


def config_from_env(config: RunConfig, environ: Mapping[str, str]) -> RunConfig:
    """Layer non-empty environment inputs over ``config``."""
    updates: dict[str, Any] = {}
    for env_key, attr in ENV_KEYS.items():
        value = environ.get(env_key, "").strip()
        if value:
            updates[attr] = _coerce(attr, value)
    if not updates:
        return config
    return replace(config, **updates)


def apply_overrides(config: RunConfig, overrides: Iterable[str]) -> RunConfig:
    overrides = list(overrides)
    if not overrides:
        return config

    merged: MutableMapping[str, Any] = config.to_dict()
    for override in overrides:
        if "=" not in override:
            raise ConfigError(f"Overrides must be in key=value form: {override}")
        key, value = override.split("=", 1)
        key = key.strip()
        if not key:
            raise ConfigError(f"Override key cannot be empty: {override}")
        merged[key] = _parse_override_value(value)

    return RunConfig.from_dict(merged)


def _parse_override_value(value: str) -> Any:
    stripped = value.strip()
    if not stripped:
        return ""

    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        lower = stripped.lower()
        if lower == "true":
            return True
        if lower == "false":
            return False
        if lower == "null" or lower == "none":
            return None
        return stripped


__all__ = [
    "ConfigError",
    "DISABLED_RUN",
    "IDENTITY_CONVERSATIONS_URL",
    "PROFILES",
    "Profile",
    "RunConfig",
    "RunParameters",
    "apply_overrides",
    "check_gpu_capacity",
    "config_from_env",
    "derive_parameters",
    "load_config",
    "resolve_profile",
]
