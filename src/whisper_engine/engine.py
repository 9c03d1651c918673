"""High-level Whisper transcription API."""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from whisper_engine.config import (
    MAX_DECODE_TOKENS,
    PRESETS,
    DecodingOptions,
    ModelConfig,
    load_model_config,
)
from whisper_engine.core import BACKENDS, DecodingController, create_transformer
from whisper_engine.core.base import WhisperTransformer
from whisper_engine.core.decode import ProgressCallback
from whisper_engine.errors import CheckpointError, ConfigurationError, ResourceError
from whisper_engine.utils.tokenizer import (
    LANGUAGES,
    Vocabulary,
    WhisperTokenizer,
    load_vocabulary,
)
from whisper_engine.utils.weights import load_weights

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionResult:
    """Result of a transcription."""

    text: str
    language: str | None
    duration: float
    task: str = "transcribe"
    tokens: list[int] = field(default_factory=list)
    stop_reason: str = "eot"


class WhisperEngine:
    """Loads one Whisper model at a time and transcribes audio with it.

    Every operation holds the engine lock, so requests are served one at a
    time. ``cancel`` does not take the lock and stops an in-flight
    ``transcribe`` before its next decoder step.

    Example:
        engine = WhisperEngine()
        engine.load_model("models/whisper-tiny")
        result = engine.transcribe("audio.wav", language="en")
        print(result.text)
    """

    def __init__(self, backend: str = "jax", seed: int = 0):
        if backend not in BACKENDS:
            available = ", ".join(BACKENDS)
            raise ConfigurationError(f"Unknown backend: {backend}. Available: {available}")
        self.backend = backend
        self.seed = seed

        self._lock = threading.RLock()
        self._transformer: WhisperTransformer | None = None
        self._tokenizer: WhisperTokenizer | None = None
        self._model_name: str | None = None
        self._active: DecodingController | None = None

    def load_model(
        self,
        weights: str | Path,
        config: str | Path | ModelConfig | None = None,
        vocabulary: str | Path | Vocabulary | None = None,
        model_name: str | None = None,
    ) -> None:
        """Load a checkpoint, replacing any model already loaded.

        Args:
            weights: Checkpoint file or model directory
            config: ModelConfig, preset name, path to ``config.json``, or None to look for
                ``config.json`` next to the weights (falling back to a preset
                chosen from the model name)
            vocabulary: Vocabulary, or directory with vocabulary files; None
                uses the model directory
            model_name: Name used for preset sniffing and reporting

        Raises:
            ConfigurationError: Invalid config or vocabulary
            LoadError: Missing or unreadable checkpoint, or tensors that do not bind
            ResourceError: Out of memory while allocating the model
        """
        with self._lock:
            self._unload()

            weights = Path(weights)
            if not weights.exists():
                raise CheckpointError(f"Checkpoint not found: {weights}")
            model_dir = weights if weights.is_dir() else weights.parent
            model_name = model_name or (weights.name if weights.is_dir() else model_dir.name)

            t0 = time.perf_counter()
            if isinstance(config, ModelConfig):
                model_config = config
            elif isinstance(config, str) and config in PRESETS:
                model_config = ModelConfig.from_preset(config)
            elif config is not None:
                model_config = ModelConfig.from_json(config)
            else:
                model_config = load_model_config(model_dir / "config.json", model_name)

            if not isinstance(vocabulary, Vocabulary):
                vocabulary = load_vocabulary(vocabulary or model_dir)
            tokenizer = WhisperTokenizer(model_config, vocabulary)

            try:
                transformer = create_transformer(model_config, self.backend, self.seed)
                load_weights(transformer, weights)
            except MemoryError as e:
                raise ResourceError(f"Out of memory loading {model_name}", str(e)) from e

            self._transformer = transformer
            self._tokenizer = tokenizer
            self._model_name = model_name
            logger.info(
                "Loaded model %s (%s backend, %d parameters) in %.2fs",
                model_name,
                self.backend,
                transformer.num_parameters,
                time.perf_counter() - t0,
            )

    def transcribe(
        self,
        audio: str | Path | np.ndarray,
        language: str | None = None,
        task: str = "transcribe",
        progress_callback: ProgressCallback | None = None,
        sample_rate: int | None = None,
        max_tokens: int = MAX_DECODE_TOKENS,
    ) -> TranscriptionResult:
        """Transcribe audio to text.

        Args:
            audio: Path to audio file or sample array, (frames,) or (frames, channels)
            language: Language code (e.g., "en", "fr"); None leaves it to the model
            task: "transcribe" or "translate"
            progress_callback: Called with increasing fractions in [0, 1]
            sample_rate: Sample rate of an array input (default: 16000)
            max_tokens: Decoder step budget

        Returns:
            TranscriptionResult with text, language, duration and generated tokens
        """
        with self._lock:
            options = DecodingOptions(language=language, task=task, max_tokens=max_tokens)
            controller = DecodingController(self._transformer, self._tokenizer)
            self._active = controller
            t0 = time.perf_counter()
            try:
                result = controller.run(audio, options, progress_callback, sample_rate)
            finally:
                self._active = None

            logger.info(
                "Transcribed %.2fs of audio in %.2fs (%d tokens, stop: %s)",
                result.duration,
                time.perf_counter() - t0,
                len(result.tokens),
                result.stop_reason,
            )
            return TranscriptionResult(
                text=result.text,
                language=result.language,
                duration=result.duration,
                task=result.task,
                tokens=result.tokens,
                stop_reason=result.stop_reason,
            )

    def cancel(self) -> None:
        """Stop the running transcription before its next decoder step."""
        controller = self._active
        if controller is not None:
            controller.cancel()

    def unload_model(self) -> None:
        with self._lock:
            self._unload()

    def _unload(self) -> None:
        if self._transformer is not None:
            logger.info("Unloading model %s", self._model_name)
        self._transformer = None
        self._tokenizer = None
        self._model_name = None

    def is_model_loaded(self) -> bool:
        return self._transformer is not None

    @property
    def model_name(self) -> str | None:
        return self._model_name

    @property
    def config(self) -> ModelConfig | None:
        return self._transformer.config if self._transformer is not None else None

    @property
    def available_languages(self) -> list[str]:
        """List of supported language codes."""
        if self._tokenizer is None:
            return list(LANGUAGES)
        return self._tokenizer.available_languages
