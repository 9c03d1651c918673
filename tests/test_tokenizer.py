"""Tests for the byte-level BPE tokenizer."""

import json

import pytest

from whisper_engine.config import PRESETS
from whisper_engine.errors import ConfigurationError, TokenizerNotLoadedError, VocabularyError
from whisper_engine.utils.tokenizer import (
    BPE_CACHE_SIZE,
    LANGUAGES,
    WhisperTokenizer,
    bytes_to_unicode,
    load_vocabulary,
    normalize_text,
)
from tests.conftest import MERGES, byte_vocab


def test_byte_table_is_a_bijection() -> None:
    table = bytes_to_unicode()
    assert len(table) == 256
    assert len(set(table.values())) == 256
    assert table[ord(" ")] == "Ġ"


@pytest.mark.parametrize(
    "text",
    [
        "Hello World",
        "  the   world\thello ",
        "Ünïcödé façade naïve",
        "日本語のテキスト",
        "numbers 123, punctuation!?",
    ],
)
def test_round_trip_matches_normalized_text(tokenizer: WhisperTokenizer, text: str) -> None:
    assert tokenizer.decode(tokenizer.encode(text)) == normalize_text(text)


def test_merges_apply_lowest_rank_first(tokenizer: WhisperTokenizer) -> None:
    vocab = tokenizer.vocabulary.token_to_id
    assert tokenizer.encode("hello world") == [vocab["hello"], vocab["Ġworld"]]
    assert tokenizer.encode("the") == [vocab["t"], vocab["he"]]
    assert tokenizer.encode("x the") == [vocab["x"], vocab["Ġthe"]]


def test_encoding_is_deterministic(vocab_dir, small_config) -> None:
    text = "hello the world, hello again"
    first = WhisperTokenizer.from_directory(vocab_dir, small_config).encode(text)
    second = WhisperTokenizer.from_directory(vocab_dir, small_config).encode(text)
    assert first == second


def test_merge_cache_is_bounded(tokenizer: WhisperTokenizer) -> None:
    words = " ".join(f"w{i}" for i in range(BPE_CACHE_SIZE + 100))
    tokenizer.encode(words)
    info = tokenizer._bpe.cache_info()
    assert info.maxsize == BPE_CACHE_SIZE
    assert info.currsize == BPE_CACHE_SIZE

    # Evicted entries are recomputed to the same merges.
    assert tokenizer.encode("hello world") == tokenizer.encode("hello world")


def test_initial_tokens(tokenizer: WhisperTokenizer, small_config) -> None:
    c = small_config
    assert tokenizer.initial_tokens("en") == [
        c.decoder_start_token_id,
        c.lang_token_offset,
        c.transcribe_token_id,
        c.no_timestamps_token_id,
    ]
    assert tokenizer.initial_tokens("de", task="translate") == [
        c.decoder_start_token_id,
        c.lang_token_offset + 2,
        c.translate_token_id,
        c.no_timestamps_token_id,
    ]
    assert tokenizer.initial_tokens() == [
        c.decoder_start_token_id,
        c.transcribe_token_id,
        c.no_timestamps_token_id,
    ]


def test_unknown_language_and_task(tokenizer: WhisperTokenizer) -> None:
    with pytest.raises(ConfigurationError):
        tokenizer.initial_tokens("xx")
    with pytest.raises(ConfigurationError):
        tokenizer.initial_tokens("en", task="summarize")


def test_language_table() -> None:
    assert len(LANGUAGES) == 100
    assert LANGUAGES[0] == "en"
    assert LANGUAGES[-1] == "yue"

    small = WhisperTokenizer(PRESETS["small"])
    large = WhisperTokenizer(PRESETS["large-v3"])
    assert small.language_token("en") == 50259
    assert len(small.available_languages) == 99
    assert large.language_token("yue") == 50358
    with pytest.raises(ConfigurationError):
        small.language_token("yue")


def test_decode_skips_special_tokens(tokenizer: WhisperTokenizer) -> None:
    ids = tokenizer.initial_tokens("en") + tokenizer.encode("hello world") + [tokenizer.eot]
    assert tokenizer.decode(ids) == "hello world"


def test_decode_replaces_invalid_utf8(tokenizer: WhisperTokenizer) -> None:
    vocab = tokenizer.vocabulary.token_to_id
    lone_byte = bytes_to_unicode()[0xE6]
    assert tokenizer.decode([vocab["h"], vocab[lone_byte]]) == "h�"


def test_requires_vocabulary(small_config) -> None:
    tokenizer = WhisperTokenizer(small_config)
    assert not tokenizer.is_loaded
    with pytest.raises(TokenizerNotLoadedError):
        tokenizer.encode("hello")
    with pytest.raises(TokenizerNotLoadedError):
        tokenizer.decode([1, 2, 3])


def test_merges_file_skips_comments_and_blank_lines(vocab_dir) -> None:
    with open(vocab_dir / "merges.txt", "a", encoding="utf-8") as f:
        f.write("\n# trailing comment\n\n")
    vocab = load_vocabulary(vocab_dir)
    assert len(vocab.bpe_ranks) == len(MERGES)
    assert vocab.bpe_ranks[("h", "e")] == 0


def test_tokenizer_json(tmp_path, small_config) -> None:
    data = {
        "model": {
            "vocab": byte_vocab(),
            "merges": [" ".join(pair) for pair in MERGES[:3]] + [list(MERGES[3])],
        },
        "added_tokens": [{"id": 299, "content": "<|extra|>"}],
    }
    with open(tmp_path / "tokenizer.json", "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)

    tokenizer = WhisperTokenizer.from_directory(tmp_path, small_config)
    assert tokenizer.vocabulary.token_to_id["<|extra|>"] == 299
    assert tokenizer.vocabulary.id_to_token[299] == "<|extra|>"
    assert len(tokenizer.vocabulary.bpe_ranks) == 4
    assert tokenizer.decode(tokenizer.encode("the hello")) == "the hello"


def test_missing_vocabulary(tmp_path) -> None:
    with pytest.raises(VocabularyError):
        load_vocabulary(tmp_path)


def test_malformed_vocabulary(tmp_path) -> None:
    (tmp_path / "vocab.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(VocabularyError):
        load_vocabulary(tmp_path)
