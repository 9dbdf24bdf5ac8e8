"""
Audio input: decoding, downmixing and resampling to the canonical stream.

Everything the engine analyses goes through ``preprocess`` so that
registration and search see exactly the same transformation.
"""

import io
import logging
from pathlib import Path
from typing import Any, Optional, Tuple, Union

import librosa
import numpy as np
import soundfile as sf

from ringabell.errors import InvalidAudioFormat
from .config import TARGET_SR, N_FFT, RES_TYPE

logger = logging.getLogger(__name__)

AudioInput = Union[bytes, bytearray, memoryview, np.ndarray, str, Path]

_PCM_FORMATS = {
    "int16": (np.dtype("<i2"), 32768.0),
    "int32": (np.dtype("<i4"), 2147483648.0),
    "float32": (np.dtype("<f4"), 1.0),
}


def _to_float(signal: np.ndarray) -> np.ndarray:
    if np.issubdtype(signal.dtype, np.integer):
        scale = float(np.iinfo(signal.dtype).max) + 1.0
        return signal.astype(np.float32) / scale
    return signal.astype(np.float32, copy=False)


def _read_container(source: Any) -> Tuple[np.ndarray, int]:
    try:
        signal, sr = sf.read(source, dtype="float32")
    except RuntimeError as e:
        raise InvalidAudioFormat(f"Unrecognized audio header: {e}") from e
    return np.asarray(signal), int(sr)


def _read_raw_pcm(data: bytes, channels: int, sample_format: str) -> np.ndarray:
    if sample_format not in _PCM_FORMATS:
        raise InvalidAudioFormat(f"Unsupported PCM sample format: {sample_format}")
    dtype, scale = _PCM_FORMATS[sample_format]
    frame_size = dtype.itemsize * channels
    if len(data) % frame_size != 0:
        raise InvalidAudioFormat(
            f"PCM buffer of {len(data)} bytes is not a whole number of "
            f"{channels}-channel {sample_format} frames"
        )
    samples = np.frombuffer(data, dtype=dtype).astype(np.float32) / scale
    return samples.reshape(-1, channels) if channels > 1 else samples


def load_audio(
    data: AudioInput,
    sample_rate: Optional[int] = None,
    channels: int = 1,
    sample_format: str = "int16",
) -> Tuple[np.ndarray, int]:
    """
    Decode ``data`` into float samples and their sample rate.

    Args:
        data: One of
            - a path to an audio file,
            - container bytes (WAV, FLAC, OGG...) when ``sample_rate`` is None,
            - headerless interleaved little-endian PCM bytes when
              ``sample_rate`` is given,
            - a sample array, 1-D or (n_samples, n_channels), with ``sample_rate``.
        sample_rate: Rate of headerless input
        channels: Channel count of headerless PCM bytes
        sample_format: "int16", "int32" or "float32" for headerless PCM bytes

    Returns:
        (signal, sample_rate); ``signal`` is float32, shape (n,) or (n, ch)
    """
    if channels < 1:
        raise InvalidAudioFormat(f"Invalid channel count: {channels}")

    if isinstance(data, (str, Path)):
        signal, sr = _read_container(str(data))
    elif isinstance(data, (bytes, bytearray, memoryview)):
        data = bytes(data)
        if not data:
            raise InvalidAudioFormat("Empty audio buffer")
        if sample_rate is None:
            signal, sr = _read_container(io.BytesIO(data))
        else:
            signal, sr = _read_raw_pcm(data, channels, sample_format), int(sample_rate)
    else:
        if sample_rate is None:
            raise InvalidAudioFormat("sample_rate is required for raw sample arrays")
        signal, sr = _to_float(np.asarray(data)), int(sample_rate)

    if signal.size == 0:
        raise InvalidAudioFormat("Empty audio buffer")
    if signal.ndim > 2:
        raise InvalidAudioFormat(f"Expected 1-D or 2-D samples, got shape {signal.shape}")
    if sr <= 0:
        raise InvalidAudioFormat(f"Invalid sample rate: {sr}")
    if not np.all(np.isfinite(signal)):
        raise InvalidAudioFormat("Audio contains NaN or infinite samples")
    return signal, sr


def to_canonical(
    signal: np.ndarray,
    sample_rate: int,
    target_sr: int = TARGET_SR,
    res_type: str = RES_TYPE,
    min_samples: int = N_FFT,
) -> np.ndarray:
    """Downmix to mono by averaging channels and resample to ``target_sr``."""
    if signal.ndim > 1:
        # signal is (num_samples, num_channels); transpose to (channels, samples)
        signal = librosa.to_mono(np.ascontiguousarray(signal.T))

    if sample_rate != target_sr:
        signal = librosa.resample(signal, orig_sr=sample_rate, target_sr=target_sr, res_type=res_type)

    signal = np.ascontiguousarray(signal, dtype=np.float32)
    if len(signal) < min_samples:
        raise InvalidAudioFormat(
            f"Audio too short: {len(signal)} samples at {target_sr} Hz, "
            f"need at least {min_samples}"
        )
    return signal


def preprocess(
    data: AudioInput,
    sample_rate: Optional[int] = None,
    channels: int = 1,
    target_sr: int = TARGET_SR,
    res_type: str = RES_TYPE,
    min_samples: int = N_FFT,
) -> np.ndarray:
    """Load ``data`` and return the canonical mono stream at ``target_sr``."""
    signal, sr = load_audio(data, sample_rate=sample_rate, channels=channels)
    logger.debug("Loaded %d samples at %d Hz (%s)", signal.shape[0], sr,
                 "mono" if signal.ndim == 1 else f"{signal.shape[1]} channels")
    return to_canonical(signal, sr, target_sr=target_sr, res_type=res_type, min_samples=min_samples)


def cut_audio(signal, sample_rate, clip_length_sec, seed: Optional[int] = 42):
    """Return a random excerpt of ``clip_length_sec`` seconds (whole signal if shorter)."""
    rng = np.random.default_rng(seed)
    total_samples = len(signal)
    clip_samples = int(clip_length_sec * sample_rate)
    if clip_samples >= total_samples:
        return signal
    start = int(rng.integers(0, total_samples - clip_samples))
    end = start + clip_samples
    return signal[start:end]


def inject_noise(signal, snr_db, seed: Optional[int] = None):
    """
    Add white Gaussian noise to `signal` to get the desired SNR in dB.
    Assumes `signal` is a 1D float numpy array.
    """
    signal = np.asarray(signal, dtype=np.float64)

    # signal power (mean square)
    signal_power = np.mean(signal ** 2)

    if signal_power == 0:
        # silent signal, nothing to scale the noise against
        return signal

    noise_power = signal_power / (10 ** (snr_db / 10))
    noise_std = np.sqrt(noise_power)

    rng = np.random.default_rng(seed)
    noise = rng.normal(0.0, noise_std, size=signal.shape)

    return signal + noise
