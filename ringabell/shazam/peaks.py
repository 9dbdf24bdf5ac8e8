"""
Landmark selection on the magnitude spectrogram.

A landmark is a point that dominates its time-frequency neighbourhood and
clearly stands out from the local energy level; such points tend to
survive additive noise and re-encoding, which makes them the features the
hashes are built from.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from scipy.ndimage import maximum_filter, uniform_filter

from .config import default_params
from .spectrogram import bin_hz

logger = logging.getLogger(__name__)

EPS = 1e-10


class Peak(NamedTuple):
    time_frame: int
    freq_bin: int
    magnitude: float


def to_db(spectrogram: np.ndarray) -> np.ndarray:
    return 20.0 * np.log10(spectrogram + EPS)


def _cap_per_frame(t: np.ndarray, f: np.ndarray, mags: np.ndarray, cap: int):
    """Keep the ``cap`` strongest candidates of every frame."""
    order = np.lexsort((f, -mags, t))
    t, f, mags = t[order], f[order], mags[order]
    _, first, counts = np.unique(t, return_index=True, return_counts=True)
    rank = np.arange(len(t)) - np.repeat(first, counts)
    keep = rank < cap
    return t[keep], f[keep], mags[keep]


def _enforce_spacing(t: np.ndarray, f: np.ndarray, mags: np.ndarray, min_dt: int, min_df: int) -> List[Peak]:
    """Greedy strongest-first thinning; drops plateau ties left by the max filter."""
    kept_by_frame = defaultdict(list)
    kept: List[Peak] = []
    for i in np.lexsort((f, t, -mags)):
        ti, fi = int(t[i]), int(f[i])
        crowded = any(
            abs(fk - fi) <= min_df
            for tk in range(ti - min_dt, ti + min_dt + 1)
            for fk in kept_by_frame.get(tk, ())
        )
        if crowded:
            continue
        kept_by_frame[ti].append(fi)
        kept.append(Peak(ti, fi, float(mags[i])))
    kept.sort(key=lambda p: (p.time_frame, p.freq_bin))
    return kept


def find_peaks(spectrogram: np.ndarray, params: Optional[Dict[str, Any]] = None) -> List[Peak]:
    """
    Local-maximum landmarks of a time-major magnitude spectrogram.

    A point is kept when it is the maximum of its
    ``peak_neighborhood_time x peak_neighborhood_freq`` neighbourhood, is
    above ``amp_min_db``, exceeds the neighbourhood's mean level by
    ``peak_rel_db`` and lies above ``min_freq_hz``. At most
    ``max_peaks_per_frame`` survive per frame, and no two landmarks are closer
    than ``min_peak_dt`` frames and ``min_peak_df`` bins.

    Returns:
        Peaks sorted by (time_frame, freq_bin)
    """
    p = params or default_params()
    if spectrogram.size == 0:
        return []

    spec_db = to_db(spectrogram)
    size = (p["peak_neighborhood_time"], p["peak_neighborhood_freq"])
    local_max = maximum_filter(spec_db, size=size, mode='nearest') == spec_db
    local_mean = uniform_filter(spec_db, size=size, mode='nearest')

    mask = local_max & (spec_db >= p["amp_min_db"]) & (spec_db >= local_mean + p["peak_rel_db"])
    min_bin = int(np.ceil(p["min_freq_hz"] / bin_hz(p)))
    mask[:, :min_bin] = False

    t, f = np.nonzero(mask)
    if t.size == 0:
        return []
    mags = spectrogram[t, f].astype(np.float64)

    t, f, mags = _cap_per_frame(t, f, mags, p["max_peaks_per_frame"])
    peaks = _enforce_spacing(t, f, mags, p["min_peak_dt"], p["min_peak_df"])
    logger.debug("Peaks: %d candidates -> %d landmarks over %d frames",
                 int(mask.sum()), len(peaks), spectrogram.shape[0])
    return peaks


def find_band_peaks(spectrogram: np.ndarray, bands: Sequence[Tuple[int, int]],
                    amp_min_db: float = -60.0) -> List[Peak]:
    """
    One candidate per frequency band and frame: the band maximum.

    A band maximum is kept when it is louder than the mean of that frame's
    band maxima and above ``amp_min_db``.
    """
    n_frames, n_bins = spectrogram.shape
    bands = [(lo, min(hi, n_bins - 1)) for lo, hi in bands if lo < n_bins]
    if n_frames == 0 or not bands:
        return []

    max_mags = np.empty((n_frames, len(bands)), dtype=np.float64)
    max_bins = np.empty((n_frames, len(bands)), dtype=np.int64)
    for j, (f_lo, f_hi) in enumerate(bands):
        band_slice = spectrogram[:, f_lo:f_hi + 1]
        local_idx = np.argmax(band_slice, axis=1)
        max_bins[:, j] = f_lo + local_idx
        max_mags[:, j] = band_slice[np.arange(n_frames), local_idx]

    avg = max_mags.mean(axis=1, keepdims=True)
    floor = 10.0 ** (amp_min_db / 20.0)
    keep = (max_mags > avg) & (max_mags >= floor)

    peaks = []
    for t, j in zip(*np.nonzero(keep)):
        peaks.append(Peak(int(t), int(max_bins[t, j]), float(max_mags[t, j])))
    peaks.sort(key=lambda p: (p.time_frame, p.freq_bin))
    return peaks


def extract_peaks(spectrogram: np.ndarray, params: Optional[Dict[str, Any]] = None) -> List[Peak]:
    """Dispatch on ``params["peak_strategy"]``."""
    p = params or default_params()
    if p["peak_strategy"] == "bands":
        return find_band_peaks(spectrogram, p["bands"], p["amp_min_db"])
    return find_peaks(spectrogram, p)
