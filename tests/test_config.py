"""Tests for model configuration and presets."""

import json

import pytest

from whisper_engine.config import (
    PRESETS,
    DecodingOptions,
    ModelConfig,
    load_model_config,
    preset_name_for,
)
from whisper_engine.errors import ConfigurationError, ErrorKind


def test_defaults_are_small_preset() -> None:
    assert ModelConfig() == PRESETS["small"]
    assert ModelConfig.from_dict({}) == PRESETS["small"]


def test_presets_differ_only_in_scalars() -> None:
    assert set(PRESETS) == {"tiny", "base", "small", "medium", "large-v3", "large-v3-turbo"}
    for config in PRESETS.values():
        assert config.d_model % config.encoder_attention_heads == 0
        assert config.d_model % config.decoder_attention_heads == 0
    assert PRESETS["tiny"].d_model == 384
    assert PRESETS["large-v3-turbo"].decoder_layers == 4
    assert PRESETS["large-v3"].transcribe_token_id == 50360


def test_every_preset_uses_128_mel_bins(tmp_path) -> None:
    assert ModelConfig().num_mel_bins == 128
    for name, config in PRESETS.items():
        assert config.num_mel_bins == 128, name

    # A shipped config.json still selects an 80-bin front end.
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"num_mel_bins": 80}))
    assert load_model_config(path, "whisper-small").num_mel_bins == 80


@pytest.mark.parametrize(
    ("name", "preset"),
    [
        ("openai/whisper-tiny", "tiny"),
        ("whisper-base.en", "base"),
        ("mlx-community/whisper-small-mlx", "small"),
        ("whisper-medium", "medium"),
        ("openai_whisper-large-v3", "large-v3"),
        ("whisper-large-v3-turbo", "large-v3-turbo"),
        ("distil-large-v3-turbo-q4", "large-v3-turbo"),
        ("mystery-model", "small"),
    ],
)
def test_preset_from_model_name(name: str, preset: str) -> None:
    assert preset_name_for(name) == preset
    assert ModelConfig.from_model_name(name) == PRESETS[preset]


def test_from_dict_resolves_head_counts_and_ignores_unknown_keys() -> None:
    config = ModelConfig.from_dict(
        {"d_model": 64, "num_attention_heads": 4, "encoder_ffn_dim": 128, "architectures": ["x"]}
    )
    assert config.encoder_attention_heads == 4
    assert config.decoder_attention_heads == 4
    assert config.decoder_ffn_dim == 128

    config = ModelConfig.from_dict({"d_model": 64, "encoder_attention_heads": 8})
    assert config.num_attention_heads == 8
    assert config.decoder_attention_heads == 8


def test_large_vocabulary_shifts_task_tokens() -> None:
    config = ModelConfig.from_dict({"vocab_size": 51866})
    assert config.translate_token_id == 50359
    assert config.no_timestamps_token_id == 50364

    config = ModelConfig.from_dict({"vocab_size": 51866, "transcribe_token_id": 1})
    assert config.transcribe_token_id == 1


def test_head_divisibility_is_enforced() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        ModelConfig(d_model=100, num_attention_heads=3)
    assert exc_info.value.kind is ErrorKind.CONFIGURATION

    with pytest.raises(ConfigurationError):
        ModelConfig(d_model=64, num_attention_heads=4, decoder_attention_heads=6)


@pytest.mark.parametrize("value", [0, -1, 1.5, "12", True])
def test_invalid_field_values(value) -> None:
    with pytest.raises(ConfigurationError):
        ModelConfig.from_dict({"encoder_layers": value})


def test_load_model_config_from_file(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({**PRESETS["tiny"].__dict__, "model_type": "whisper"}))
    assert load_model_config(path, "whatever") == PRESETS["tiny"]


def test_load_model_config_falls_back_to_preset(tmp_path) -> None:
    assert load_model_config(tmp_path / "missing.json", "whisper-base") == PRESETS["base"]
    assert load_model_config(None, "whisper-medium") == PRESETS["medium"]

    path = tmp_path / "config.json"
    path.write_text("{ this is not json")
    assert load_model_config(path, "whisper-tiny") == PRESETS["tiny"]


def test_load_model_config_rejects_invalid_values(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"d_model": 10, "num_attention_heads": 3}))
    with pytest.raises(ConfigurationError):
        load_model_config(path, "whisper-tiny")


def test_from_json_errors(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        ModelConfig.from_json(tmp_path / "missing.json")
    path = tmp_path / "config.json"
    path.write_text("[]")
    with pytest.raises(ConfigurationError):
        ModelConfig.from_json(path)


def test_decoding_options() -> None:
    options = DecodingOptions()
    assert options.max_tokens == 224
    assert options.task == "transcribe"
    with pytest.raises(ConfigurationError):
        DecodingOptions(task="summarize")
    with pytest.raises(ConfigurationError):
        DecodingOptions(max_tokens=0)
