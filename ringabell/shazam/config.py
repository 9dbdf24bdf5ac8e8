# ---------- CONFIG ---------- #
#
# Pipeline constants. Registration and search must run with identical values,
# so an engine carries one params dict (see default_params) and snapshots
# store it next to the index.

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

TARGET_SR = 11025          # canonical mono rate; covers content up to ~5.5 kHz
RES_TYPE = "soxr_hq"       # librosa resampler, fixed for determinism
N_FFT = 2048
HOP_LENGTH = 512           # ~21.5 frames per second at TARGET_SR
FRAME_BATCH = 256          # frames per STFT batch (cancellation granularity)
SPECTROGRAM_BACKEND = "scipy"   # or "torch"

MIN_FREQ_HZ = 40.0
MAX_FREQ_HZ = 5000.0       # bins above this are dropped

PEAK_STRATEGY = "neighborhood"  # or "bands"
PEAK_NEIGHBORHOOD_TIME = 5      # frames
PEAK_NEIGHBORHOOD_FREQ = 21     # bins
AMP_MIN_DB = -60.0              # absolute floor, 0 dB ~ full-scale sine * 2
PEAK_REL_DB = 10.0              # required margin over the local mean
MAX_PEAKS_PER_FRAME = 10
MIN_PEAK_DT = 2                 # frames
MIN_PEAK_DF = 10                # bins

# Frequency bands (in terms of frequency bin indices) for the "bands" strategy
# n_fft = 2048 -> freq bins = 1025 (0 to 1024) but we will limit to ~5kHz
BANDS = [
    (1, 10),      # very low
    (11, 20),     # low
    (21, 40),     # low-mid
    (41, 80),     # mid
    (81, 160),    # mid-high
    (161, 511)    # high
]

FUZ_FACTOR = 2  # absorb small variations in frequency / time: 43 → 42, 21 → 20, etc.
FAN_OUT = 5
DT_MIN_FRAMES = 1
DT_MAX_FRAMES = 30
FREQ_BAND_HZ = (40.0, 0.4)  # target zone half-width = 40 Hz + 0.4 * anchor freq

OFFSET_BIN_FRAMES = 1
MIN_ALIGNED_MATCHES = 5
MIN_SCORE = 0.01
MAX_QUERY_HASHES = None     # None = use every query hash


def default_params() -> Dict[str, Any]:
    return {
        "target_sr": TARGET_SR,
        "res_type": RES_TYPE,
        "n_fft": N_FFT,
        "hop_length": HOP_LENGTH,
        "frame_batch": FRAME_BATCH,
        "spectrogram_backend": SPECTROGRAM_BACKEND,
        "min_freq_hz": MIN_FREQ_HZ,
        "max_freq_hz": MAX_FREQ_HZ,
        "peak_strategy": PEAK_STRATEGY,
        "peak_neighborhood_time": PEAK_NEIGHBORHOOD_TIME,
        "peak_neighborhood_freq": PEAK_NEIGHBORHOOD_FREQ,
        "amp_min_db": AMP_MIN_DB,
        "peak_rel_db": PEAK_REL_DB,
        "max_peaks_per_frame": MAX_PEAKS_PER_FRAME,
        "min_peak_dt": MIN_PEAK_DT,
        "min_peak_df": MIN_PEAK_DF,
        "bands": [tuple(b) for b in BANDS],
        "fuz_factor": FUZ_FACTOR,
        "fan_out": FAN_OUT,
        "dt_min_frames": DT_MIN_FRAMES,
        "dt_max_frames": DT_MAX_FRAMES,
        "freq_band_hz": FREQ_BAND_HZ,
        "offset_bin_frames": OFFSET_BIN_FRAMES,
        "min_aligned_matches": MIN_ALIGNED_MATCHES,
        "min_score": MIN_SCORE,
        "max_query_hashes": MAX_QUERY_HASHES,
    }


def resolve_params(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge ``overrides`` over the defaults and validate the result."""
    params = default_params()
    if overrides:
        unknown = sorted(set(overrides) - set(params))
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        params.update(overrides)

    # YAML/JSON give lists where the code expects tuples
    params["bands"] = [tuple(int(x) for x in b) for b in params["bands"]]
    if params["freq_band_hz"] is not None:
        params["freq_band_hz"] = tuple(float(x) for x in params["freq_band_hz"])

    _validate(params)
    return params


def _validate(p: Dict[str, Any]) -> None:
    if p["hop_length"] <= 0 or p["n_fft"] < p["hop_length"]:
        raise ValueError("need 0 < hop_length <= n_fft")
    if p["spectrogram_backend"] not in ("scipy", "torch"):
        raise ValueError(f"Unknown spectrogram_backend: {p['spectrogram_backend']}")
    if p["peak_strategy"] not in ("neighborhood", "bands"):
        raise ValueError(f"Unknown peak_strategy: {p['peak_strategy']}")
    if not 0 <= p["min_freq_hz"] < p["max_freq_hz"] <= p["target_sr"] / 2:
        raise ValueError("need 0 <= min_freq_hz < max_freq_hz <= target_sr / 2")
    # hash layout: 10 bits per frequency bin, 12 bits for dt
    max_bin = int(p["max_freq_hz"] * p["n_fft"] / p["target_sr"])
    if max_bin > 1023:
        raise ValueError(f"max_freq_hz maps to bin {max_bin}, hash codes hold bins < 1024")
    if not 1 <= p["dt_min_frames"] <= p["dt_max_frames"] <= 4095:
        raise ValueError("need 1 <= dt_min_frames <= dt_max_frames <= 4095")
    if p["fuz_factor"] < 1 or p["fan_out"] < 1 or p["offset_bin_frames"] < 1:
        raise ValueError("fuz_factor, fan_out and offset_bin_frames must be >= 1")
    if not 0.0 <= p["min_score"] <= 1.0:
        raise ValueError("min_score must lie in [0, 1]")


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML file of overrides and return the full params dict."""
    with open(config_path, 'r') as f:
        overrides = yaml.safe_load(f) or {}
    if not isinstance(overrides, dict):
        raise ValueError(f"{config_path}: expected a mapping of config keys")
    return resolve_params(overrides)
