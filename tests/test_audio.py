"""Tests for the audio front end."""

import numpy as np
import pytest
import soundfile as sf

from whisper_engine.core.audio import (
    N_FRAMES,
    N_SAMPLES,
    SAMPLE_RATE,
    AudioFrontend,
    log_mel_spectrogram,
    mel_filter_bank,
)
from whisper_engine.errors import AudioDecodeError, UnsupportedChannelLayoutError
from whisper_engine.utils.audio_io import load_audio, normalize_audio, resample, to_mono


def _tone(seconds: float, freq: float = 440.0, sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (0.5 * np.sin(2 * np.pi * freq * t)).astype(np.float32)


@pytest.mark.parametrize("seconds", [0.01, 1.0, 29.99, 30.0, 45.0])
def test_frame_count_is_fixed(seconds: float) -> None:
    mel = log_mel_spectrogram(_tone(seconds), n_mels=128)
    assert mel.shape == (128, N_FRAMES)
    assert N_FRAMES == 3000


def test_spectrogram_is_normalized() -> None:
    mel = log_mel_spectrogram(_tone(2.0), n_mels=80)
    assert mel.dtype == np.float32
    assert mel.min() == pytest.approx(-1.0, abs=1e-5)
    assert mel.max() == pytest.approx(1.0, abs=1e-5)


def test_silence_skips_normalization() -> None:
    mel = log_mel_spectrogram(np.zeros(SAMPLE_RATE, dtype=np.float32))
    # Flat input keeps the log floor instead of dividing by a zero range.
    assert np.allclose(mel, -10.0)


def test_spectrogram_is_deterministic() -> None:
    audio = np.random.default_rng(0).uniform(-0.5, 0.5, 3 * SAMPLE_RATE).astype(np.float32)
    assert np.array_equal(log_mel_spectrogram(audio), log_mel_spectrogram(audio.copy()))


def test_truncation_ignores_audio_past_30_seconds() -> None:
    audio = _tone(30.0)
    longer = np.concatenate([audio, _tone(5.0, freq=1000.0)])
    assert np.array_equal(log_mel_spectrogram(audio), log_mel_spectrogram(longer))


@pytest.mark.parametrize("n_mels", [80, 128])
def test_mel_filters_have_no_empty_rows(n_mels: int) -> None:
    filters = mel_filter_bank(n_mels)
    assert filters.shape == (n_mels, 201)
    assert (filters >= 0).all()
    assert (filters.max(axis=1) > 0).all()


def test_mel_filters_peak_at_one() -> None:
    filters = mel_filter_bank(128)
    assert np.allclose(filters.max(axis=1), 1.0)


def test_stereo_is_averaged() -> None:
    left = np.ones(100, dtype=np.float32)
    right = np.zeros(100, dtype=np.float32)
    mono = to_mono(np.stack([left, right], axis=1))
    assert mono.shape == (100,)
    assert np.allclose(mono, 0.5)


def test_more_than_two_channels_is_rejected() -> None:
    with pytest.raises(UnsupportedChannelLayoutError):
        to_mono(np.zeros((100, 6), dtype=np.float32))


def test_int16_is_scaled() -> None:
    audio = normalize_audio(np.array([-32768, 0, 16384], dtype=np.int16))
    assert audio.dtype == np.float32
    assert np.allclose(audio, [-1.0, 0.0, 0.5])


def test_resample_changes_length() -> None:
    audio = _tone(1.0, sample_rate=8000)
    out = resample(audio, 8000, SAMPLE_RATE)
    assert out.shape == (SAMPLE_RATE,)


def test_load_audio_file(tmp_path) -> None:
    path = tmp_path / "tone.wav"
    stereo = np.stack([_tone(0.5, sample_rate=44100)] * 2, axis=1)
    sf.write(path, stereo, 44100)

    audio = load_audio(path)
    assert audio.ndim == 1
    assert abs(audio.shape[0] - SAMPLE_RATE // 2) <= 1


def test_missing_file_raises(tmp_path) -> None:
    with pytest.raises(AudioDecodeError):
        load_audio(tmp_path / "missing.wav")


def test_corrupt_file_raises(tmp_path) -> None:
    path = tmp_path / "broken.wav"
    path.write_bytes(b"RIFF not really a wav file")
    with pytest.raises(AudioDecodeError):
        load_audio(path)


def test_empty_input_raises() -> None:
    with pytest.raises(AudioDecodeError):
        load_audio(np.zeros(0, dtype=np.float32))


def test_frontend_uses_configured_mel_count() -> None:
    frontend = AudioFrontend(n_mels=80)
    mel = frontend.process(_tone(1.0, sample_rate=22050), sample_rate=22050)
    assert mel.shape == (80, N_FRAMES)
    assert frontend.load(_tone(1.0)).shape[0] < N_SAMPLES
