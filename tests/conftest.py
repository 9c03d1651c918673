"""Defines PyTest configuration for the project."""

import json
import os
import random

# Force JAX to use CPU for tests. This must happen BEFORE importing JAX.
if "JAX_PLATFORMS" not in os.environ:
    os.environ["JAX_PLATFORMS"] = "cpu"

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from whisper_engine.config import ModelConfig  # noqa: E402
from whisper_engine.utils.tokenizer import WhisperTokenizer, bytes_to_unicode  # noqa: E402

# Merges over the byte alphabet; ranks follow list order.
MERGES = [
    ("h", "e"),
    ("Ġ", "t"),
    ("Ġt", "he"),
    ("l", "l"),
    ("he", "ll"),
    ("hell", "o"),
    ("o", "r"),
    ("Ġw", "or"),
    ("Ġ", "w"),
    ("Ġwor", "l"),
    ("Ġworl", "d"),
]

# Small model whose special tokens sit just above the byte vocabulary.
SMALL_CONFIG = ModelConfig(
    encoder_layers=2,
    decoder_layers=2,
    num_attention_heads=2,
    d_model=16,
    encoder_ffn_dim=32,
    vocab_size=300,
    max_source_positions=10,
    max_target_positions=32,
    num_mel_bins=8,
    eos_token_id=280,
    decoder_start_token_id=281,
    lang_token_offset=282,
    translate_token_id=292,
    transcribe_token_id=293,
    no_speech_token_id=294,
    no_timestamps_token_id=295,
)


@pytest.fixture(autouse=True)
def set_random_seed() -> None:
    random.seed(1337)
    np.random.seed(1337)


def byte_vocab() -> dict[str, int]:
    """Every byte symbol, then every merge result, then the special tokens."""
    vocab = {symbol: i for i, symbol in enumerate(bytes_to_unicode().values())}
    for first, second in MERGES:
        vocab.setdefault(first + second, len(vocab))
    vocab["<|endoftext|>"] = SMALL_CONFIG.eos_token_id
    vocab["<|startoftranscript|>"] = SMALL_CONFIG.decoder_start_token_id
    return vocab


@pytest.fixture()
def small_config() -> ModelConfig:
    return SMALL_CONFIG


@pytest.fixture()
def vocab_dir(tmp_path):
    directory = tmp_path / "vocab"
    directory.mkdir()
    with open(directory / "vocab.json", "w", encoding="utf-8") as f:
        json.dump(byte_vocab(), f, ensure_ascii=False)
    with open(directory / "merges.txt", "w", encoding="utf-8") as f:
        f.write("#version: 0.2\n")
        for first, second in MERGES:
            f.write(f"{first} {second}\n")
    return directory


@pytest.fixture()
def tokenizer(vocab_dir, small_config) -> WhisperTokenizer:
    return WhisperTokenizer.from_directory(vocab_dir, small_config)
