import numpy as np

from ringabell.shazam.config import default_params, resolve_params
from ringabell.shazam.peaks import Peak, extract_peaks, find_band_peaks, find_peaks
from ringabell.shazam.spectrogram import compute_spectrogram

N_BINS = 929


def spikes(points, n_frames=40):
    spec = np.zeros((n_frames, N_BINS), dtype=np.float32)
    for t, f, mag in points:
        spec[t, f] = mag
    return spec


def test_isolated_spikes_are_landmarks():
    points = [(5, 100, 0.1), (5, 300, 0.05), (20, 50, 0.2)]

    peaks = find_peaks(spikes(points))

    assert [(p.time_frame, p.freq_bin) for p in peaks] == [(5, 100), (5, 300), (20, 50)]
    assert peaks[0].magnitude == np.float32(0.1)


def test_silence_has_no_landmarks():
    assert find_peaks(np.zeros((30, N_BINS), dtype=np.float32)) == []
    assert find_peaks(np.zeros((0, N_BINS), dtype=np.float32)) == []


def test_quiet_points_are_ignored():
    # -80 dB is under the absolute floor
    assert find_peaks(spikes([(5, 100, 1e-4)])) == []


def test_bins_below_min_freq_are_ignored():
    peaks = find_peaks(spikes([(5, 3, 0.5), (5, 200, 0.1)]))
    assert [p.freq_bin for p in peaks] == [200]


def test_close_landmarks_keep_the_strongest():
    # 3 frames and 11 bins apart: outside the max-filter window, inside the spacing limit
    points = [(10, 100, 0.1), (13, 111, 0.2)]
    params = resolve_params({"min_peak_dt": 3, "min_peak_df": 11})

    peaks = find_peaks(spikes(points), params)

    assert [(p.time_frame, p.freq_bin) for p in peaks] == [(13, 111)]


def test_plateaus_collapse_to_one_landmark():
    peaks = find_peaks(spikes([(10, 100, 0.1), (10, 101, 0.1)]))
    assert len(peaks) == 1
    assert peaks[0] == Peak(10, 100, peaks[0].magnitude)


def test_per_frame_cap_keeps_strongest():
    points = [(8, 40 + 25 * i, 0.01 * (i + 1)) for i in range(15)]
    params = resolve_params({"max_peaks_per_frame": 4})

    peaks = find_peaks(spikes(points), params)

    assert [p.freq_bin for p in peaks] == [40 + 25 * i for i in range(11, 15)]


def test_landmarks_are_sorted(song_a):
    peaks = find_peaks(compute_spectrogram(song_a))
    keys = [(p.time_frame, p.freq_bin) for p in peaks]

    assert keys == sorted(keys)
    assert len(peaks) > 100


def test_landmarks_are_deterministic(song_a):
    spec = compute_spectrogram(song_a)
    assert find_peaks(spec) == find_peaks(spec)


def test_band_peaks():
    spec = spikes([(3, 5, 0.5), (3, 100, 0.4), (3, 300, 0.001)], n_frames=6)
    bands = [(1, 10), (11, 20), (21, 40), (41, 80), (81, 160), (161, 511)]

    peaks = find_band_peaks(spec, bands)

    # band maxima above the frame's mean band maximum
    assert [(p.time_frame, p.freq_bin) for p in peaks] == [(3, 5), (3, 100)]


def test_band_peaks_clip_bands_to_spectrogram():
    spec = spikes([(0, 20, 0.3)], n_frames=2)[:, :30]
    peaks = find_band_peaks(spec, [(1, 10), (11, 100), (200, 300)])
    assert [(p.time_frame, p.freq_bin) for p in peaks] == [(0, 20)]


def test_extract_peaks_dispatch():
    spec = spikes([(3, 100, 0.4), (30, 300, 0.2)])
    bands_params = resolve_params({"peak_strategy": "bands"})

    assert extract_peaks(spec, default_params()) == find_peaks(spec)
    assert extract_peaks(spec, bands_params) == find_band_peaks(spec, bands_params["bands"])
