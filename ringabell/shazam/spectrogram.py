"""
Short-time spectral analysis of the canonical stream.

The spectrogram is time-major: ``spec[frame, bin]``. Frame ``k`` covers
samples ``[k * hop_length, k * hop_length + n_fft)``; there is no boundary
padding, so prefixing a recording with a whole number of hops of silence
shifts every frame by exactly that many indices.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np
import scipy.signal

from ringabell.errors import InvalidAudioFormat, OperationCancelled
from .config import default_params

logger = logging.getLogger(__name__)


def max_freq_bin(params: Dict[str, Any]) -> int:
    """Highest frequency bin kept in the spectrogram."""
    return int(params["max_freq_hz"] * params["n_fft"] / params["target_sr"])


def bin_hz(params: Dict[str, Any]) -> float:
    return params["target_sr"] / params["n_fft"]


def frame_to_seconds(frame: int, params: Dict[str, Any]) -> float:
    return frame * params["hop_length"] / params["target_sr"]


def num_frames(n_samples: int, n_fft: int, hop_length: int) -> int:
    if n_samples < n_fft:
        return 0
    return 1 + (n_samples - n_fft) // hop_length


def _stft_scipy(segment: np.ndarray, n_fft: int, hop_length: int) -> np.ndarray:
    # scipy's default "spectrum" scaling divides by the window sum
    _, _, stft = scipy.signal.stft(
        segment,
        nperseg=n_fft,
        noverlap=n_fft - hop_length,
        window='hann',
        boundary=None,
        padded=False,
    )
    return np.abs(stft).T


def _stft_torch(segment: np.ndarray, n_fft: int, hop_length: int) -> np.ndarray:
    import torch

    x = torch.from_numpy(np.ascontiguousarray(segment, dtype=np.float32))
    window = torch.hann_window(n_fft, dtype=torch.float32)
    stft = torch.stft(
        x, n_fft=n_fft, hop_length=hop_length, window=window,
        center=False, return_complex=True,
    )
    # match the scipy scaling convention
    spec = stft.abs() / window.sum()
    return spec.cpu().numpy().T


_BACKENDS = {
    'scipy': _stft_scipy,
    'torch': _stft_torch,
}


def compute_spectrogram(
    signal: np.ndarray,
    params: Optional[Dict[str, Any]] = None,
    cancelled: Optional[Callable[[], bool]] = None,
) -> np.ndarray:
    """
    Magnitude spectrogram of a mono signal.

    Frames are computed in batches of ``params["frame_batch"]``; ``cancelled``
    is polled before each batch and aborts the call with ``OperationCancelled``.

    Returns:
        float32 array of shape (n_frames, max_freq_bin + 1)
    """
    p = params or default_params()
    n_fft, hop = p["n_fft"], p["hop_length"]
    n_frames = num_frames(len(signal), n_fft, hop)
    if n_frames == 0:
        raise InvalidAudioFormat(f"Need at least {n_fft} samples, got {len(signal)}")

    n_bins = max_freq_bin(p) + 1
    stft = _BACKENDS[p["spectrogram_backend"]]
    batch = max(1, int(p["frame_batch"]))

    spectrogram = np.empty((n_frames, n_bins), dtype=np.float32)
    for start in range(0, n_frames, batch):
        if cancelled is not None and cancelled():
            raise OperationCancelled(f"Cancelled after {start}/{n_frames} frames")
        stop = min(start + batch, n_frames)
        segment = signal[start * hop:(stop - 1) * hop + n_fft]
        spectrogram[start:stop] = stft(segment, n_fft, hop)[:, :n_bins]

    logger.debug("Spectrogram: %d frames x %d bins (%s)", n_frames, n_bins, p["spectrogram_backend"])
    return spectrogram


def plot_spectrogram_and_save(spectrogram, params, peaks: Sequence, output_path: Path, every: int = 1):
    """Save a log-magnitude spectrogram with the landmarks drawn on top."""
    import librosa
    import matplotlib.pyplot as plt

    spectrogram = np.asarray(spectrogram)
    plot_peaks = list(peaks)[::every]
    plot_times_sec = [frame_to_seconds(p.time_frame, params) for p in plot_peaks]
    plot_freqs = [p.freq_bin * bin_hz(params) for p in plot_peaks]

    log_spectrogram = librosa.amplitude_to_db(spectrogram.T, ref=np.max)
    extent = [0.0, frame_to_seconds(spectrogram.shape[0], params), 0.0, spectrogram.shape[1] * bin_hz(params)]
    plt.figure(figsize=(10, 4))
    plt.imshow(log_spectrogram, origin='lower', aspect='auto', extent=extent, cmap='magma')
    plt.colorbar(format='%+2.0f dB')
    plt.xlabel('Time (s)')
    plt.ylabel('Hz')
    plt.title('Spectrogram and landmarks')
    plt.scatter(plot_times_sec, plot_freqs, s=8, c='white', marker='o', alpha=0.8)
    plt.savefig(output_path)
    plt.close()
