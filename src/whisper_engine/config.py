"""Model hyperparameters, presets and per-request decoding options."""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from whisper_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

MAX_DECODE_TOKENS = 224
TASKS = ("transcribe", "translate")

# Vocabularies with the 100th language token (large-v3 family) shift every
# task/timestamp token after <|yue|> up by one.
_MULTILINGUAL_V3_VOCAB = 51866


@dataclass(frozen=True)
class ModelConfig:
    """Whisper hyperparameters. Defaults are the ``small`` preset."""

    # Architecture
    encoder_layers: int = field(default=12)
    decoder_layers: int = field(default=12)
    num_attention_heads: int = field(default=12)
    d_model: int = field(default=768)
    encoder_ffn_dim: int = field(default=3072)
    vocab_size: int = field(default=51865)
    max_source_positions: int = field(default=1500)
    max_target_positions: int = field(default=448)
    num_mel_bins: int = field(default=128)
    # Resolved from num_attention_heads / encoder_ffn_dim when left as None
    encoder_attention_heads: int | None = field(default=None)
    decoder_attention_heads: int | None = field(default=None)
    decoder_ffn_dim: int | None = field(default=None)

    # Special tokens
    eos_token_id: int = field(default=50257)
    decoder_start_token_id: int = field(default=50258)
    translate_token_id: int = field(default=50358)
    transcribe_token_id: int = field(default=50359)
    no_speech_token_id: int = field(default=50362)
    no_timestamps_token_id: int = field(default=50363)
    lang_token_offset: int = field(default=50259)

    def __post_init__(self):
        if self.encoder_attention_heads is None:
            object.__setattr__(self, "encoder_attention_heads", self.num_attention_heads)
        if self.decoder_attention_heads is None:
            object.__setattr__(self, "decoder_attention_heads", self.num_attention_heads)
        if self.decoder_ffn_dim is None:
            object.__setattr__(self, "decoder_ffn_dim", self.encoder_ffn_dim)

        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(
                    f"Invalid model config field {f.name!r}", f"expected int, got {value!r}"
                )
            if value <= 0:
                raise ConfigurationError(
                    f"Invalid model config field {f.name!r}", f"must be positive, got {value}"
                )

        for side, heads in (
            ("encoder", self.encoder_attention_heads),
            ("decoder", self.decoder_attention_heads),
        ):
            if self.d_model % heads:
                raise ConfigurationError(
                    f"d_model must be divisible by {side}_attention_heads",
                    f"d_model={self.d_model}, heads={heads}",
                )

    @property
    def encoder_head_dim(self) -> int:
        return self.d_model // self.encoder_attention_heads

    @property
    def decoder_head_dim(self) -> int:
        return self.d_model // self.decoder_attention_heads

    @property
    def n_frames(self) -> int:
        """Mel frames expected by the encoder (two per output position)."""
        return 2 * self.max_source_positions

    @classmethod
    def from_dict(cls, cfg: dict[str, Any]) -> "ModelConfig":
        """Build a config from a parsed ``config.json``; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in cfg.items() if k in known}
        if "num_attention_heads" not in values and "encoder_attention_heads" in values:
            values["num_attention_heads"] = values["encoder_attention_heads"]
        if values.get("vocab_size", 0) >= _MULTILINGUAL_V3_VOCAB:
            for name, token_id in _V3_TOKEN_IDS.items():
                values.setdefault(name, token_id)
        return cls(**values)

    @classmethod
    def from_json(cls, path: str | Path) -> "ModelConfig":
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                cfg = json.load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read model config {path}", str(e)) from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Malformed model config {path}", str(e)) from e
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Malformed model config {path}", "top level is not an object")
        return cls.from_dict(cfg)

    @classmethod
    def from_preset(cls, name: str) -> "ModelConfig":
        if name not in PRESETS:
            available = ", ".join(PRESETS)
            raise ConfigurationError(f"Unknown preset: {name}. Available: {available}")
        return PRESETS[name]

    @classmethod
    def from_model_name(cls, model_name: str) -> "ModelConfig":
        """Pick a preset from substrings of a model or checkpoint name."""
        return PRESETS[preset_name_for(model_name)]


_V3_TOKEN_IDS = {
    "translate_token_id": 50359,
    "transcribe_token_id": 50360,
    "no_speech_token_id": 50363,
    "no_timestamps_token_id": 50364,
}

_SMALL = ModelConfig()

PRESETS: dict[str, ModelConfig] = {
    "tiny": replace(
        _SMALL, encoder_layers=4, decoder_layers=4, num_attention_heads=6, d_model=384,
        encoder_ffn_dim=1536, encoder_attention_heads=6, decoder_attention_heads=6,
        decoder_ffn_dim=1536,
    ),
    "base": replace(
        _SMALL, encoder_layers=6, decoder_layers=6, num_attention_heads=8, d_model=512,
        encoder_ffn_dim=2048, encoder_attention_heads=8, decoder_attention_heads=8,
        decoder_ffn_dim=2048,
    ),
    "small": _SMALL,
    "medium": replace(
        _SMALL, encoder_layers=24, decoder_layers=24, num_attention_heads=16, d_model=1024,
        encoder_ffn_dim=4096, encoder_attention_heads=16, decoder_attention_heads=16,
        decoder_ffn_dim=4096,
    ),
    "large-v3": replace(
        _SMALL, encoder_layers=32, decoder_layers=32, num_attention_heads=20, d_model=1280,
        encoder_ffn_dim=5120, encoder_attention_heads=20, decoder_attention_heads=20,
        decoder_ffn_dim=5120, vocab_size=_MULTILINGUAL_V3_VOCAB,
        **_V3_TOKEN_IDS,
    ),
    "large-v3-turbo": replace(
        _SMALL, encoder_layers=32, decoder_layers=4, num_attention_heads=20, d_model=1280,
        encoder_ffn_dim=5120, encoder_attention_heads=20, decoder_attention_heads=20,
        decoder_ffn_dim=5120, vocab_size=_MULTILINGUAL_V3_VOCAB,
        **_V3_TOKEN_IDS,
    ),
}

# Most specific hint first: "large-v3-turbo" also contains "large-v3".
_PRESET_HINTS = (
    ("turbo", "large-v3-turbo"),
    ("large", "large-v3"),
    ("medium", "medium"),
    ("small", "small"),
    ("base", "base"),
    ("tiny", "tiny"),
)


def preset_name_for(model_name: str) -> str:
    name = model_name.lower()
    for hint, preset in _PRESET_HINTS:
        if hint in name:
            return preset
    logger.warning("No preset matches model name %r, using 'small'", model_name)
    return "small"


def load_model_config(path: str | Path | None = None, model_name: str = "") -> ModelConfig:
    """Load ``config.json`` or fall back to a preset sniffed from ``model_name``.

    A missing or malformed file falls back to the preset; a well-formed file
    whose values violate the config invariants raises ConfigurationError.
    """
    if path is None or not Path(path).is_file():
        logger.debug("No model config at %s, using preset for %r", path, model_name)
        return ModelConfig.from_model_name(model_name)

    try:
        with open(path, encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not parse %s (%s), falling back to preset", path, e)
        return ModelConfig.from_model_name(model_name)
    if not isinstance(cfg, dict):
        logger.warning("Model config %s is not an object, falling back to preset", path)
        return ModelConfig.from_model_name(model_name)

    return ModelConfig.from_dict(cfg)


@dataclass(frozen=True)
class DecodingOptions:
    """Per-request options for greedy decoding."""

    language: str | None = None
    task: str = "transcribe"
    max_tokens: int = MAX_DECODE_TOKENS

    def __post_init__(self):
        if self.task not in TASKS:
            raise ConfigurationError(f"Unknown task: {self.task}. Available: {', '.join(TASKS)}")
        if self.max_tokens <= 0:
            raise ConfigurationError(f"max_tokens must be positive, got {self.max_tokens}")
