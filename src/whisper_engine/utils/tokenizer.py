"""Byte-level BPE tokenizer for Whisper vocabularies."""

import json
import logging
import unicodedata
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import numpy as np

from whisper_engine.config import TASKS, ModelConfig
from whisper_engine.errors import ConfigurationError, TokenizerNotLoadedError, VocabularyError

logger = logging.getLogger(__name__)

# Language codes in token order: <|en|> is lang_token_offset + 0.
LANGUAGES = (
    "en", "zh", "de", "es", "ru", "ko", "fr", "ja", "pt", "tr",
    "pl", "ca", "nl", "ar", "sv", "it", "id", "hi", "fi", "vi",
    "he", "uk", "el", "ms", "cs", "ro", "da", "hu", "ta", "no",
    "th", "ur", "hr", "bg", "lt", "la", "mi", "ml", "cy", "sk",
    "te", "fa", "lv", "bn", "sr", "az", "sl", "kn", "et", "mk",
    "br", "eu", "is", "hy", "ne", "mn", "bs", "kk", "sq", "sw",
    "gl", "mr", "pa", "si", "km", "sn", "yo", "so", "af", "oc",
    "ka", "be", "tg", "sd", "gu", "am", "yi", "lo", "uz", "fo",
    "ht", "ps", "tk", "nn", "mt", "sa", "lb", "my", "bo", "tl",
    "mg", "as", "tt", "haw", "ln", "ha", "ba", "jw", "su", "yue",
)  # fmt: skip

SPACE_MARKER = "Ġ"  # printable stand-in for byte 0x20

# Distinct pre-tokens whose merge results are kept per tokenizer
BPE_CACHE_SIZE = 2**14


@lru_cache(maxsize=1)
def bytes_to_unicode() -> dict[int, str]:
    """GPT-2 style reversible byte to printable character table."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return {b: chr(c) for b, c in zip(bs, cs, strict=True)}


def normalize_text(text: str) -> str:
    """Lowercase, NFC-normalize and collapse whitespace."""
    text = unicodedata.normalize("NFC", text.lower())
    return " ".join(text.split())


@dataclass
class Vocabulary:
    """Token/id maps plus BPE merge ranks."""

    token_to_id: dict[str, int] = field(default_factory=dict)
    bpe_ranks: dict[tuple[str, str], int] = field(default_factory=dict)

    def __post_init__(self):
        self.id_to_token = {v: k for k, v in self.token_to_id.items()}

    def __len__(self) -> int:
        return len(self.token_to_id)

    def add_tokens(self, tokens: dict[str, int]) -> None:
        self.token_to_id.update(tokens)
        self.id_to_token.update({v: k for k, v in tokens.items()})


def _parse_merge(entry) -> tuple[str, str] | None:
    if isinstance(entry, str):
        parts = entry.split(" ")
    elif isinstance(entry, (list, tuple)):
        parts = list(entry)
    else:
        return None
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


def _read_json(path: Path):
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise VocabularyError(f"Cannot read {path.name}", str(e)) from e


def load_vocabulary(directory: str | Path) -> Vocabulary:
    """Load ``vocab.json``, ``merges.txt`` and/or ``tokenizer.json`` from a directory.

    Files are applied in that order: ``tokenizer.json`` replaces the vocabulary
    and merges when it carries them, and its ``added_tokens`` extend the
    vocabulary.

    Raises:
        VocabularyError: If no asset is present or an asset is malformed
    """
    directory = Path(directory)
    vocab_path = directory / "vocab.json"
    merges_path = directory / "merges.txt"
    tokenizer_path = directory / "tokenizer.json"

    if not (vocab_path.is_file() or tokenizer_path.is_file()):
        raise VocabularyError(
            f"No vocabulary found in {directory}", "expected vocab.json or tokenizer.json"
        )

    token_to_id: dict[str, int] = {}
    merges: list[tuple[str, str]] = []

    if vocab_path.is_file():
        data = _read_json(vocab_path)
        if not isinstance(data, dict):
            raise VocabularyError("Malformed vocab.json", "top level is not an object")
        token_to_id = {str(k): int(v) for k, v in data.items()}

    if merges_path.is_file():
        with open(merges_path, encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line.strip() or line.startswith("#"):
                    continue
                pair = _parse_merge(line)
                if pair is not None:
                    merges.append(pair)

    added: dict[str, int] = {}
    if tokenizer_path.is_file():
        data = _read_json(tokenizer_path)
        if not isinstance(data, dict):
            raise VocabularyError("Malformed tokenizer.json", "top level is not an object")
        model = data.get("model") or {}
        if isinstance(model.get("vocab"), dict):
            token_to_id = {str(k): int(v) for k, v in model["vocab"].items()}
        if isinstance(model.get("merges"), list):
            merges = [p for p in map(_parse_merge, model["merges"]) if p is not None]
        for entry in data.get("added_tokens") or []:
            if isinstance(entry, dict) and "content" in entry and "id" in entry:
                added[str(entry["content"])] = int(entry["id"])

    if not token_to_id and not added:
        raise VocabularyError(f"Vocabulary in {directory} is empty")

    vocab = Vocabulary(token_to_id, {pair: rank for rank, pair in enumerate(merges)})
    vocab.add_tokens(added)
    logger.debug("Loaded vocabulary: %d tokens, %d merges", len(vocab), len(vocab.bpe_ranks))
    return vocab


class WhisperTokenizer:
    """Encodes text to token ids and back, and builds decoder prompts."""

    def __init__(self, config: ModelConfig | None = None, vocabulary: Vocabulary | None = None):
        self.config = config or ModelConfig()
        self.vocabulary = vocabulary
        self.byte_encoder = bytes_to_unicode()
        self.byte_decoder = {c: b for b, c in self.byte_encoder.items()}
        self._bpe = lru_cache(maxsize=BPE_CACHE_SIZE)(self._merge)

    @classmethod
    def from_directory(
        cls, directory: str | Path, config: ModelConfig | None = None
    ) -> "WhisperTokenizer":
        return cls(config, load_vocabulary(directory))

    @property
    def is_loaded(self) -> bool:
        return self.vocabulary is not None

    def _require_vocabulary(self) -> Vocabulary:
        if self.vocabulary is None:
            raise TokenizerNotLoadedError()
        return self.vocabulary

    # Special tokens

    @property
    def sot(self) -> int:
        return self.config.decoder_start_token_id

    @property
    def eot(self) -> int:
        return self.config.eos_token_id

    @property
    def num_languages(self) -> int:
        return min(len(LANGUAGES), self.config.translate_token_id - self.config.lang_token_offset)

    @property
    def available_languages(self) -> list[str]:
        return list(LANGUAGES[: self.num_languages])

    def language_token(self, language: str) -> int:
        code = language.lower()
        if code not in LANGUAGES[: self.num_languages]:
            available = ", ".join(self.available_languages)
            raise ConfigurationError(f"Unknown language: {language}. Available: {available}")
        return self.config.lang_token_offset + LANGUAGES.index(code)

    def initial_tokens(self, language: str | None = None, task: str = "transcribe") -> list[int]:
        """Decoder prompt: [sot, language?, task, no_timestamps]."""
        if task not in TASKS:
            raise ConfigurationError(f"Unknown task: {task}. Available: {', '.join(TASKS)}")
        tokens = [self.sot]
        if language is not None:
            tokens.append(self.language_token(language))
        if task == "translate":
            tokens.append(self.config.translate_token_id)
        else:
            tokens.append(self.config.transcribe_token_id)
        tokens.append(self.config.no_timestamps_token_id)
        return tokens

    # BPE

    def _merge(self, token: str) -> tuple[str, ...]:
        """Apply merges to one pre-token, lowest rank first."""
        ranks = self.vocabulary.bpe_ranks
        word = list(token)
        while len(word) > 1:
            pairs = set(zip(word, word[1:]))
            best = min(pairs, key=lambda p: ranks.get(p, float("inf")))
            if best not in ranks:
                break
            first, second = best
            merged = []
            i = 0
            while i < len(word):
                if i < len(word) - 1 and word[i] == first and word[i + 1] == second:
                    merged.append(first + second)
                    i += 2
                else:
                    merged.append(word[i])
                    i += 1
            word = merged

        return tuple(word)

    def encode(self, text: str) -> list[int]:
        """Encode normalized text; symbols missing from the vocabulary are dropped."""
        vocab = self._require_vocabulary()
        ids = []
        for i, word in enumerate(normalize_text(text).split(" ")):
            if not word:
                continue
            mapped = "".join(self.byte_encoder[b] for b in word.encode("utf-8"))
            if i > 0:
                mapped = SPACE_MARKER + mapped
            for symbol in self._bpe(mapped):
                token_id = vocab.token_to_id.get(symbol)
                if token_id is None:
                    logger.debug("Dropping out-of-vocabulary symbol %r", symbol)
                    continue
                ids.append(token_id)
        return ids

    def decode(self, token_ids: list[int] | np.ndarray) -> str:
        """Decode token IDs to text, skipping special tokens."""
        vocab = self._require_vocabulary()
        if isinstance(token_ids, np.ndarray):
            token_ids = token_ids.tolist()

        pieces = []
        for tid in token_ids:
            tid = int(tid)
            if tid >= self.sot or tid == self.eot:
                continue
            if tid in vocab.id_to_token:
                pieces.append(vocab.id_to_token[tid])

        raw = bytearray()
        for c in "".join(pieces):
            if c in self.byte_decoder:
                raw.append(self.byte_decoder[c])
            else:
                raw.extend(c.encode("utf-8"))
        return raw.decode("utf-8", errors="replace").strip()


def load_tokenizer(directory: str | Path, config: ModelConfig | None = None) -> WhisperTokenizer:
    """Load a tokenizer from a model directory."""
    return WhisperTokenizer.from_directory(directory, config)
