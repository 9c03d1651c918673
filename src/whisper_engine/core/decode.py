"""Greedy autoregressive decoding."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import numpy as np

from whisper_engine.config import DecodingOptions
from whisper_engine.core.audio import SAMPLE_RATE, AudioFrontend
from whisper_engine.core.base import WhisperTransformer
from whisper_engine.core.cache import KVCache
from whisper_engine.errors import (
    ModelNotLoadedError,
    ResourceError,
    TranscriptionCancelledError,
    TranscriptionError,
    WhisperEngineError,
)
from whisper_engine.utils.tokenizer import WhisperTokenizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# Progress milestones
FRONTEND_DONE = 0.2
ENCODER_DONE = 0.4
DECODE_SPAN = 0.55
DECODE_DONE = ENCODER_DONE + DECODE_SPAN


class DecodeState(Enum):
    IDLE = "idle"
    ENCODING = "encoding"
    DECODING = "decoding"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DecodingResult:
    """Outcome of one decoding run."""

    text: str
    tokens: list[int] = field(default_factory=list)
    language: str | None = None
    task: str = "transcribe"
    stop_reason: str = "eot"
    steps: int = 0
    duration: float = 0.0


class DecodingController:
    """Drives one utterance through front end, encoder and greedy decoder.

    States move IDLE → ENCODING → DECODING → DONE, or to FAILED from any
    state. ``cancel`` may be called from another thread; it takes effect
    before the next decoder step.
    """

    def __init__(
        self,
        transformer: WhisperTransformer | None,
        tokenizer: WhisperTokenizer | None,
        frontend: AudioFrontend | None = None,
    ):
        self.transformer = transformer
        self.tokenizer = tokenizer
        if frontend is None and transformer is not None:
            frontend = AudioFrontend(transformer.config.num_mel_bins)
        self.frontend = frontend
        self.state = DecodeState.IDLE
        self.error: WhisperEngineError | None = None
        self._cancelled = threading.Event()
        self._progress = 0.0
        self._callback: ProgressCallback | None = None

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _report(self, fraction: float) -> None:
        fraction = min(max(fraction, self._progress), 1.0)
        self._progress = fraction
        if self._callback is not None:
            self._callback(fraction)

    def _fail(self, error: WhisperEngineError) -> WhisperEngineError:
        self.state = DecodeState.FAILED
        self.error = error
        return error

    def run(
        self,
        audio: str | Path | np.ndarray,
        options: DecodingOptions | None = None,
        progress_callback: ProgressCallback | None = None,
        sample_rate: int | None = None,
    ) -> DecodingResult:
        """Transcribe ``audio`` and return the decoded result.

        Raises:
            ModelNotLoadedError: If no transformer or vocabulary is available
            WhisperEngineError: Any other failure, after moving to FAILED
        """
        options = options or DecodingOptions()
        self.state = DecodeState.IDLE
        self.error = None
        self._progress = 0.0
        self._callback = progress_callback

        try:
            return self._run(audio, options, sample_rate)
        except WhisperEngineError as e:
            self._fail(e)
            raise
        except MemoryError as e:
            raise self._fail(ResourceError("out of memory during transcription", str(e))) from e
        except Exception as e:
            raise self._fail(TranscriptionError("transcription failed", repr(e))) from e
        finally:
            self._callback = None

    def _run(
        self, audio: str | Path | np.ndarray, options: DecodingOptions, sample_rate: int | None
    ) -> DecodingResult:
        if self.transformer is None or self.tokenizer is None or not self.tokenizer.is_loaded:
            raise ModelNotLoadedError()

        self._report(0.0)
        prompt = self.tokenizer.initial_tokens(options.language, options.task)

        self.state = DecodeState.ENCODING
        samples = self.frontend.load(audio, sample_rate)
        duration = samples.shape[0] / SAMPLE_RATE
        mel = self.frontend.spectrogram(samples)
        self._report(FRONTEND_DONE)

        encoder_output = self.transformer.encode(mel[None])
        self._report(ENCODER_DONE)
        logger.debug("Encoded %.2fs of audio to %s", duration, tuple(encoder_output.shape))

        self.state = DecodeState.DECODING
        tokens, stop_reason = self.greedy_decode(prompt, encoder_output, options.max_tokens)
        self._report(DECODE_DONE)

        generated = tokens[len(prompt) :]
        if generated and generated[-1] == self.tokenizer.eot:
            generated = generated[:-1]
        text = self.tokenizer.decode(generated)
        self._report(1.0)

        self.state = DecodeState.DONE
        return DecodingResult(
            text=text,
            tokens=generated,
            language=options.language,
            task=options.task,
            stop_reason=stop_reason,
            steps=len(tokens) - len(prompt),
            duration=duration,
        )

    def greedy_decode(
        self, prompt: list[int], encoder_output, max_tokens: int
    ) -> tuple[list[int], str]:
        """Append argmax tokens to ``prompt`` until end-of-text or the step budget.

        Each step feeds only the tokens the cache has not seen yet, so after
        a step the cache length is ``len(tokens) - 1``.

        Returns:
            (tokens, stop_reason) with stop_reason "eot" or "max_tokens"
        """
        config = self.transformer.config
        eot = self.tokenizer.eot
        budget = max(0, min(max_tokens, config.max_target_positions - len(prompt)))

        tokens = list(prompt)
        cache: KVCache | None = None
        for step in range(budget):
            if self._cancelled.is_set():
                raise TranscriptionCancelledError(cause=f"after {step} decoder steps")

            fed = cache.length if cache is not None else 0
            logits, cache = self.transformer.decode(
                np.asarray([tokens[fed:]], dtype=np.int32), encoder_output, cache
            )
            next_token = int(np.argmax(np.asarray(logits[0, -1])))
            tokens.append(next_token)
            self._report(ENCODER_DONE + DECODE_SPAN * (step + 1) / budget)

            if next_token == eot:
                logger.debug("End of text after %d steps", step + 1)
                return tokens, "eot"

        return tokens, "max_tokens"
