import json
from pathlib import Path

import pytest

from speedrun.pipeline import config as config_module
from speedrun.pipeline.config import (
    ConfigError,
    DISABLED_RUN,
    PROFILES,
    Profile,
    RunConfig,
    RunParameters,
    apply_overrides,
    check_gpu_capacity,
    config_from_env,
    derive_parameters,
    load_config,
    resolve_profile,
)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("4090_2x", (2, 4, 1, 524288)),
        ("4090_8x", (8, 4, 1, 524288)),
        ("5090_2x", (2, 6, 2, 393216)),
        ("5090_8x", (8, 6, 2, 393216)),
        ("H100_2x", (2, 32, 4, 524288)),
        ("H100_8x", (8, 32, 4, 524288)),
    ],
)
def test_named_profiles(name, expected):
    profile = resolve_profile(name)
    assert profile.name == name
    assert (
        profile.gpu_count,
        profile.device_batch_size,
        profile.sft_device_batch_size,
        profile.total_batch_size,
    ) == expected


@pytest.mark.parametrize("name", ["", None, "   "])
def test_empty_profile_keeps_defaults(name):
    profile = resolve_profile(name)
    assert profile == Profile()
    assert profile.gpu_count == 8
    assert profile.device_batch_size is None
    assert profile.sft_device_batch_size is None
    assert profile.total_batch_size is None


@pytest.mark.parametrize("name", ["A100_8x", "h100_8x", "4090", "default"])
def test_unknown_profile_raises(name):
    with pytest.raises(ConfigError, match=f"Unknown PROFILE: {name}"):
        resolve_profile(name)


def test_profile_table_is_closed():
    assert set(PROFILES) == {"4090_2x", "4090_8x", "5090_2x", "5090_8x", "H100_2x", "H100_8x"}


def test_derive_parameters_unset_fields_are_empty():
    assert derive_parameters(Profile()) == RunParameters("", "", "", "")


def test_derive_parameters_set_fields():
    params = derive_parameters(resolve_profile("5090_2x"))
    assert params.device_batch == "--device_batch_size=6"
    assert params.sft_device_batch == "--sft_device_batch_size=2"
    assert params.total_batch == "--total_batch_size=393216"
    assert params.eval_batch == "--batch-size=6"


def test_derive_parameters_partial_profile():
    params = derive_parameters(Profile("custom", 1, device_batch_size=3))
    assert params.device_batch == "--device_batch_size=3"
    assert params.eval_batch == "--batch-size=3"
    assert params.sft_device_batch == ""
    assert params.total_batch == ""


def test_derive_parameters_is_pure():
    profile = resolve_profile("H100_8x")
    assert derive_parameters(profile) == derive_parameters(profile)
    assert profile == PROFILES["H100_8x"]


def test_fragments_drop_empty_values():
    params = derive_parameters(Profile())
    assert params.fragments("device_batch", "total_batch") == []
    params = derive_parameters(resolve_profile("4090_2x"))
    assert params.fragments("device_batch", "total_batch") == [
        "--device_batch_size=4",
        "--total_batch_size=524288",
    ]


def test_check_gpu_capacity_without_torch(monkeypatch):
    monkeypatch.setattr(config_module, "detect_gpu_count", lambda: None)
    assert check_gpu_capacity(resolve_profile("H100_8x")) is None


def test_check_gpu_capacity_warns(monkeypatch, caplog):
    monkeypatch.setattr(config_module, "detect_gpu_count", lambda: 1)
    with caplog.at_level("WARNING", logger="speedrun.pipeline.config"):
        assert check_gpu_capacity(resolve_profile("4090_2x")) == 1
    assert "expects 2 GPUs but only 1" in caplog.text


def test_run_config_defaults():
    config = RunConfig()
    assert config.profile == ""
    assert config.run == DISABLED_RUN
    assert config.base_dir is None
    assert config.depth == 20
    assert config.initial_shards == 8
    assert config.total_shards == 240
    assert config.tokenizer_max_chars == 2_000_000_000
    assert config.with_rl is False
    assert config.provision is False


def test_load_yaml_config(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("profile: 4090_2x\nrun: d20\nbase_dir: ~/cache\nwith_rl: yes\ndepth: 26\n", encoding="utf-8")
    config = load_config(path)
    assert config.profile == "4090_2x"
    assert config.run == "d20"
    assert config.base_dir == Path("~/cache").expanduser()
    assert config.with_rl is True
    assert config.depth == 26


def test_load_json_config(tmp_path):
    path = tmp_path / "run.json"
    path.write_text(json.dumps({"profile": "H100_8x", "total_shards": "300"}), encoding="utf-8")
    config = load_config(path)
    assert config.profile == "H100_8x"
    assert config.total_shards == 300


@pytest.mark.parametrize("line", ["run:\n", "run: ''\n", "run: '  '\n"])
def test_empty_run_in_config_file_means_disabled(tmp_path, line):
    path = tmp_path / "run.yaml"
    path.write_text(line, encoding="utf-8")
    assert load_config(path).run == DISABLED_RUN


@pytest.mark.parametrize("override", ["run=", "run=null", "run=  "])
def test_empty_run_override_means_disabled(override):
    config = apply_overrides(RunConfig(run="speedrun"), [override])
    assert config.run == DISABLED_RUN


def test_load_config_rejects_unknown_keys(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("gpus: 4\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Unknown config keys"):
        load_config(path)


def test_load_config_rejects_bad_extension(tmp_path):
    path = tmp_path / "run.toml"
    path.write_text("", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(path)


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_env_layers_over_config(tmp_path):
    config = RunConfig(profile="4090_2x", run="from-file")
    environ = {"PROFILE": "H100_2x", "WANDB_RUN": "", "NANOCHAT_BASE_DIR": str(tmp_path)}
    layered = config_from_env(config, environ)
    assert layered.profile == "H100_2x"
    assert layered.run == "from-file"
    assert layered.base_dir == tmp_path


def test_env_without_inputs_returns_same_config():
    config = RunConfig()
    assert config_from_env(config, {}) is config


def test_apply_overrides():
    config = apply_overrides(RunConfig(), ["profile=5090_8x", "depth=32", "with_rl=true", "run=speedrun"])
    assert config.profile == "5090_8x"
    assert config.depth == 32
    assert config.with_rl is True
    assert config.run == "speedrun"


def test_apply_overrides_requires_key_value():
    with pytest.raises(ConfigError):
        apply_overrides(RunConfig(), ["depth"])
    with pytest.raises(ConfigError):
        apply_overrides(RunConfig(), ["=3"])


def test_apply_overrides_rejects_bad_types():
    with pytest.raises(ConfigError, match="integer"):
        apply_overrides(RunConfig(), ["depth=deep"])
    with pytest.raises(ConfigError, match="boolean"):
        apply_overrides(RunConfig(), ["dry_run=maybe"])
