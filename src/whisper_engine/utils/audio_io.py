"""Audio I/O utilities for loading audio files and sample buffers."""

from math import gcd
from pathlib import Path

import numpy as np
import soundfile as sf
from scipy.signal import resample_poly

from whisper_engine.errors import AudioDecodeError, UnsupportedChannelLayoutError


def read_audio_file(path: str | Path) -> tuple[np.ndarray, int]:
    """Decode an audio file with libsndfile.

    Returns:
        (samples, sample_rate) with samples shaped (frames, channels), float32

    Raises:
        AudioDecodeError: If the file is missing or cannot be decoded
    """
    path = Path(path)
    if not path.exists():
        raise AudioDecodeError(f"Audio file not found: {path}")

    try:
        audio, sample_rate = sf.read(path, dtype="float32", always_2d=True)
    except (sf.SoundFileError, RuntimeError) as e:
        raise AudioDecodeError(f"Could not decode audio file {path}", str(e)) from e

    return audio, sample_rate


def normalize_audio(audio: np.ndarray) -> np.ndarray:
    """Convert samples to float32 in range [-1, 1].

    Integer PCM is scaled by the full range of its dtype; float input is
    passed through.
    """
    if np.issubdtype(audio.dtype, np.integer):
        return (audio.astype(np.float32) / float(np.iinfo(audio.dtype).max + 1)).astype(
            np.float32
        )
    return audio.astype(np.float32)


def to_mono(audio: np.ndarray) -> np.ndarray:
    """Average (frames, channels) down to (frames,). Only mono and stereo are accepted."""
    if audio.ndim == 1:
        return audio
    if audio.ndim != 2:
        raise UnsupportedChannelLayoutError(
            "Unsupported audio layout", f"expected 1 or 2 dimensions, got shape {audio.shape}"
        )
    channels = audio.shape[1]
    if channels == 1:
        return audio[:, 0]
    if channels == 2:
        return audio.mean(axis=1)
    raise UnsupportedChannelLayoutError(
        "Unsupported channel layout", f"{channels} channels, expected mono or stereo"
    )


def resample(audio: np.ndarray, orig_rate: int, target_rate: int) -> np.ndarray:
    """Polyphase resampling between integer sample rates."""
    if orig_rate == target_rate:
        return audio
    if orig_rate <= 0:
        raise AudioDecodeError(f"Invalid sample rate: {orig_rate}")
    g = gcd(orig_rate, target_rate)
    return resample_poly(audio, target_rate // g, orig_rate // g).astype(np.float32)


def load_audio(
    source: str | Path | np.ndarray,
    sample_rate: int | None = None,
    target_rate: int = 16000,
) -> np.ndarray:
    """Load audio as mono float32 at ``target_rate``.

    Args:
        source: Path to an audio file (any format libsndfile reads) or a
            sample array shaped (frames,) or (frames, channels)
        sample_rate: Rate of an array source; ignored for files
        target_rate: Output sample rate (default: 16000 for Whisper)

    Returns:
        Audio waveform as float32 array in range [-1, 1]

    Raises:
        AudioDecodeError: If the source cannot be decoded
        UnsupportedChannelLayoutError: If the source has more than two channels
    """
    if isinstance(source, (str, Path)):
        audio, sample_rate = read_audio_file(source)
    else:
        audio = normalize_audio(np.asarray(source))
        sample_rate = sample_rate or target_rate

    audio = to_mono(audio)
    if audio.size == 0:
        raise AudioDecodeError("Audio contains no samples")
    if not np.all(np.isfinite(audio)):
        raise AudioDecodeError("Audio contains non-finite samples")

    return resample(audio, sample_rate, target_rate)
