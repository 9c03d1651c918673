"""Whisper engine - speech-to-text inference with JAX / Flax NNX and a NumPy backend."""

from whisper_engine.config import PRESETS, DecodingOptions, ModelConfig, load_model_config
from whisper_engine.core import (
    SAMPLE_RATE,
    AudioFrontend,
    DecodeState,
    DecodingController,
    KVCache,
    NNXTransformer,
    ReferenceTransformer,
    WhisperTransformer,
    create_transformer,
    log_mel_spectrogram,
)
from whisper_engine.engine import TranscriptionResult, WhisperEngine
from whisper_engine.errors import ErrorKind, WhisperEngineError
from whisper_engine.utils import (
    LANGUAGES,
    WhisperTokenizer,
    load_audio,
    load_tokenizer,
    load_weights,
)

__version__ = "0.1.0"

__all__ = [
    "LANGUAGES",
    "PRESETS",
    "SAMPLE_RATE",
    "AudioFrontend",
    "DecodeState",
    "DecodingController",
    "DecodingOptions",
    "ErrorKind",
    "KVCache",
    "ModelConfig",
    "NNXTransformer",
    "ReferenceTransformer",
    "TranscriptionResult",
    "WhisperEngine",
    "WhisperEngineError",
    "WhisperTokenizer",
    "WhisperTransformer",
    "create_transformer",
    "load_audio",
    "load_model_config",
    "load_tokenizer",
    "load_weights",
    "log_mel_spectrogram",
]
