"""Numeric core: audio front end, transformer backends and decoding."""

from whisper_engine.config import ModelConfig
from whisper_engine.core.audio import (
    N_FRAMES,
    N_SAMPLES,
    SAMPLE_RATE,
    AudioFrontend,
    log_mel_spectrogram,
    mel_filter_bank,
    stft,
)
from whisper_engine.core.base import ParameterTree, WhisperTransformer, parameter_shapes
from whisper_engine.core.cache import KVCache, LayerKVCache
from whisper_engine.core.decode import DecodeState, DecodingController, DecodingResult
from whisper_engine.core.model import NNXTransformer, WhisperModel
from whisper_engine.core.reference import ReferenceTransformer
from whisper_engine.errors import ConfigurationError

BACKENDS = {
    "jax": NNXTransformer,
    "numpy": ReferenceTransformer,
}


def create_transformer(
    config: ModelConfig, backend: str = "jax", seed: int = 0
) -> WhisperTransformer:
    """Build a randomly initialized transformer for ``config`` on ``backend``."""
    if backend not in BACKENDS:
        available = ", ".join(BACKENDS)
        raise ConfigurationError(f"Unknown backend: {backend}. Available: {available}")
    return BACKENDS[backend](config, seed=seed)


__all__ = [
    "BACKENDS",
    "N_FRAMES",
    "N_SAMPLES",
    "SAMPLE_RATE",
    "AudioFrontend",
    "DecodeState",
    "DecodingController",
    "DecodingResult",
    "KVCache",
    "LayerKVCache",
    "NNXTransformer",
    "ParameterTree",
    "ReferenceTransformer",
    "WhisperModel",
    "WhisperTransformer",
    "create_transformer",
    "log_mel_spectrogram",
    "mel_filter_bank",
    "parameter_shapes",
    "stft",
]
