"""Non-JAX utilities - I/O, tokenizer, weights."""

from whisper_engine.utils.audio_io import load_audio
from whisper_engine.utils.tokenizer import (
    LANGUAGES,
    Vocabulary,
    WhisperTokenizer,
    load_tokenizer,
    load_vocabulary,
)
from whisper_engine.utils.weights import load_weights, read_checkpoint, remap_checkpoint_names

__all__ = [
    "LANGUAGES",
    "Vocabulary",
    "WhisperTokenizer",
    "load_audio",
    "load_tokenizer",
    "load_vocabulary",
    "load_weights",
    "read_checkpoint",
    "remap_checkpoint_names",
]
