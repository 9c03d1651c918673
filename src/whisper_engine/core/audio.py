"""Audio front end: waveform to normalized log-mel spectrogram."""

import logging
from functools import lru_cache, partial
from pathlib import Path

import jax
import jax.numpy as jnp
import numpy as np

from whisper_engine.utils.audio_io import load_audio

logger = logging.getLogger(__name__)

# Whisper audio constants
SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160
N_MELS = 128
CHUNK_LENGTH = 30  # seconds
N_SAMPLES = CHUNK_LENGTH * SAMPLE_RATE  # 480000
N_FRAMES = N_SAMPLES // HOP_LENGTH  # 3000


def _hz_to_mel(freq: float) -> float:
    """HTK mel scale."""
    return 2595.0 * np.log10(1.0 + freq / 700.0)


def _mel_to_hz(mel: float) -> float:
    return 700.0 * (10.0 ** (mel / 2595.0) - 1.0)


@lru_cache(maxsize=8)
def mel_filter_bank(
    num_mel_filters: int = N_MELS,
    n_fft: int = N_FFT,
    sampling_rate: int = SAMPLE_RATE,
) -> np.ndarray:
    """Triangular mel filterbank of shape (num_mel_filters, n_fft // 2 + 1).

    Filter edges are ``num_mel_filters + 2`` points spaced evenly in mel
    between 0 Hz and Nyquist, snapped down to FFT bin indices. Each filter
    peaks at 1.0 on its centre bin, so none is all-zero even where
    neighbouring edges collapse onto the same bin at low frequencies.
    """
    num_frequency_bins = n_fft // 2 + 1
    mel_points = np.linspace(
        _hz_to_mel(0.0), _hz_to_mel(sampling_rate / 2.0), num_mel_filters + 2
    )
    hz_points = _mel_to_hz(mel_points)
    bins = np.floor(hz_points * n_fft / sampling_rate).astype(np.int64)
    bins = np.clip(bins, 0, num_frequency_bins - 1)

    filterbank = np.zeros((num_mel_filters, num_frequency_bins), dtype=np.float32)
    for i in range(num_mel_filters):
        start, center, end = bins[i], bins[i + 1], bins[i + 2]
        for j in range(start + 1, center):
            filterbank[i, j] = (j - start) / (center - start)
        for j in range(center + 1, end):
            filterbank[i, j] = (end - j) / (end - center)
        filterbank[i, center] = 1.0

    filterbank.setflags(write=False)
    return filterbank


@partial(jax.jit, static_argnames=["n_fft", "hop_length"])
def stft(audio: jax.Array, n_fft: int = N_FFT, hop_length: int = HOP_LENGTH) -> jax.Array:
    """Compute Short-Time Fourier Transform using JAX.

    Args:
        audio: (n_samples,) audio waveform
        n_fft: FFT window size
        hop_length: hop length between frames

    Returns:
        (n_freqs, n_frames) complex STFT output
    """
    # Periodic Hann window
    window = 0.5 - 0.5 * jnp.cos(2 * jnp.pi * jnp.arange(n_fft) / n_fft)

    pad_amount = n_fft // 2
    audio_padded = jnp.pad(audio, (pad_amount, pad_amount), mode="reflect")

    n_frames = (len(audio_padded) - n_fft) // hop_length + 1

    frame_starts = jnp.arange(n_frames) * hop_length
    frame_indices = frame_starts[:, None] + jnp.arange(n_fft)

    frames = audio_padded[frame_indices] * window

    stft_result = jnp.fft.rfft(frames, n=n_fft, axis=1)

    return stft_result.T


def pad_or_trim(audio: np.ndarray, n_samples: int = N_SAMPLES) -> np.ndarray:
    """Zero-pad on the right or truncate to exactly ``n_samples``."""
    if audio.shape[0] > n_samples:
        return audio[:n_samples]
    if audio.shape[0] < n_samples:
        return np.pad(audio, (0, n_samples - audio.shape[0]))
    return audio


def log_mel_spectrogram(
    audio: np.ndarray, n_mels: int = N_MELS, n_samples: int = N_SAMPLES
) -> np.ndarray:
    """Compute the normalized log-mel spectrogram of a 16 kHz mono waveform.

    Args:
        audio: Audio waveform at 16kHz, values in [-1, 1]
        n_mels: Number of mel filters
        n_samples: Target number of samples (default: 30 seconds)

    Returns:
        (n_mels, n_samples // HOP_LENGTH) float32 spectrogram in [-1, 1]
    """
    audio = pad_or_trim(np.asarray(audio, dtype=np.float32), n_samples)

    # Centered STFT yields one frame more than n_samples / hop; drop the last.
    stft_result = stft(jnp.asarray(audio))[:, :-1]
    magnitudes = np.asarray(jnp.abs(stft_result) ** 2, dtype=np.float32)

    mel_spec = mel_filter_bank(n_mels) @ magnitudes
    log_spec = np.log10(np.maximum(mel_spec, 1e-10))

    # Per-utterance min/max normalization; a flat spectrogram is left as is.
    lo, hi = log_spec.min(), log_spec.max()
    if hi > lo:
        log_spec = (log_spec - lo) / (hi - lo) * 2.0 - 1.0

    return log_spec.astype(np.float32)


class AudioFrontend:
    """Turns an audio file or sample buffer into a fixed-size mel spectrogram."""

    def __init__(self, n_mels: int = N_MELS):
        self.n_mels = n_mels

    def load(
        self, source: str | Path | np.ndarray, sample_rate: int | None = None
    ) -> np.ndarray:
        """Decode ``source`` to 16 kHz mono float32 samples."""
        return load_audio(source, sample_rate=sample_rate, target_rate=SAMPLE_RATE)

    def spectrogram(self, audio: np.ndarray) -> np.ndarray:
        """(n_mels, 3000) spectrogram of 16 kHz mono samples."""
        if audio.shape[0] > N_SAMPLES:
            logger.warning(
                "Audio is %.1fs long, only the first %ds are transcribed",
                audio.shape[0] / SAMPLE_RATE,
                CHUNK_LENGTH,
            )
        return log_mel_spectrogram(audio, n_mels=self.n_mels)

    def process(
        self, source: str | Path | np.ndarray, sample_rate: int | None = None
    ) -> np.ndarray:
        """Return the (n_mels, 3000) spectrogram for ``source``."""
        return self.spectrogram(self.load(source, sample_rate))
