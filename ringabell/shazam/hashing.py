import heapq
from bisect import bisect_left, bisect_right
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from .config import FUZ_FACTOR, default_params
from .peaks import Peak
from .spectrogram import bin_hz


class FingerprintHash(NamedTuple):
    code: int
    anchor_time: int


def _quantize(x: int, fuzz: int = FUZ_FACTOR) -> int:
    """Round down to nearest multiple of fuzz."""
    return x - (x % fuzz)


def hash_triplet(f_anchor: int, f_target: int, dt: int,
                 fuzz: int = FUZ_FACTOR) -> int:
    """
    Pack (f_anchor, f_target, dt) into a 32-bit integer.

    Layout (MSB → LSB):
        [10 bits f_anchor][10 bits f_target][12 bits dt]

    Assumes:
        f_anchor, f_target < 1024
        dt < 4096
    """
    # fuzzy quantization (error-correction)
    fa = _quantize(f_anchor, fuzz)
    fb = _quantize(f_target, fuzz)
    dt = _quantize(dt, fuzz)
    # clamp to bit ranges (safety)
    fa = max(0, min(fa, 1023))
    fb = max(0, min(fb, 1023))
    dt = max(0, min(dt, 4095))
    # bit pack: fa[31:22], fb[21:12], dt[11:0]
    return (fa << 22) | (fb << 12) | dt


def unpack_code(code: int):
    """Inverse of the bit layout: (f_anchor, f_target, dt) after quantization."""
    return (code >> 22) & 0x3FF, (code >> 12) & 0x3FF, code & 0xFFF


def build_hashes(peaks: Sequence[Peak], params: Optional[Dict[str, Any]] = None) -> List[FingerprintHash]:
    """
    peaks:   landmarks sorted by (time_frame, freq_bin)
    params:  fan_out is the max number of targets per anchor; targets lie
             dt_min_frames..dt_max_frames after the anchor and, when
             freq_band_hz = (base, slope) is set, within
             base + slope * f_anchor (in Hz) of the anchor frequency.
    returns: one FingerprintHash per anchor-target pair, the strongest
             targets first; duplicates are kept
    """
    p = params or default_params()
    fan_out = p["fan_out"]
    dt_min, dt_max = p["dt_min_frames"], p["dt_max_frames"]
    fuzz = p["fuz_factor"]
    freq_band_hz = p["freq_band_hz"]

    fingerprints: List[FingerprintHash] = []
    append = fingerprints.append
    n_peaks = len(peaks)
    if n_peaks == 0:
        return fingerprints

    times = [pk.time_frame for pk in peaks]

    # Band in Hz: delta_f = base + slope * freqs[f_a]; with linear FFT bins
    # that is (base / bin_hz) + slope * f_a when measured in bins.
    if freq_band_hz is not None:
        base, slope = freq_band_hz
        base_over = base / bin_hz(p)

    def strength(pk: Peak):
        return (-pk.magnitude, pk.time_frame, pk.freq_bin)

    for i in range(n_peaks):
        t_a, f_a, _amp_a = peaks[i]
        lo = bisect_left(times, t_a + dt_min, i + 1)
        hi = bisect_right(times, t_a + dt_max, lo)
        if lo >= hi:
            continue

        if freq_band_hz is not None:
            delta_bins = base_over + slope * f_a
            candidates = [pk for pk in peaks[lo:hi] if abs(pk.freq_bin - f_a) <= delta_bins]
        else:
            candidates = peaks[lo:hi]

        for t_b, f_b, _amp_b in heapq.nsmallest(fan_out, candidates, key=strength):
            append(FingerprintHash(hash_triplet(f_a, f_b, t_b - t_a, fuzz), t_a))

    return fingerprints
