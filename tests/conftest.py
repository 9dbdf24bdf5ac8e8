"""
Synthetic audio for the tests.

A "song" is a seeded sequence of tone bursts laid on the analysis hop grid:
every burst lasts one analysis window, carries three random tones and starts
on a frame boundary, so each burst peaks cleanly in a single frame.
"""

import io
import os
import tempfile

import numpy as np
import pytest
import soundfile as sf

from ringabell.shazam import ShazamRecognizer
from ringabell.shazam.config import HOP_LENGTH, N_FFT, TARGET_SR

# keep the module-level app in app.py away from any snapshot in the cwd
os.environ["RINGABELL_SNAPSHOT"] = os.path.join(tempfile.mkdtemp(prefix="ringabell-tests-"), "ringabell.rbfp")

SR = TARGET_SR


def make_song(seed, n_notes=60, spacing_frames=4, lead_frames=2, tail_frames=8):
    rng = np.random.default_rng(seed)
    n_frames = lead_frames + n_notes * spacing_frames + tail_frames
    signal = np.zeros(n_frames * HOP_LENGTH + N_FFT, dtype=np.float64)

    envelope = np.hanning(N_FFT)
    t = np.arange(N_FFT) / SR
    for i in range(n_notes):
        start = (lead_frames + i * spacing_frames) * HOP_LENGTH
        freqs = rng.uniform(200.0, 4000.0, size=3)
        amps = rng.uniform(0.1, 0.3, size=3)
        phases = rng.uniform(0.0, 2 * np.pi, size=3)
        burst = sum(a * np.sin(2 * np.pi * f * t + p) for f, a, p in zip(freqs, amps, phases))
        signal[start:start + N_FFT] += envelope * burst
    return signal.astype(np.float32)


def to_wav_bytes(signal, sr=SR):
    buf = io.BytesIO()
    sf.write(buf, signal, sr, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def to_pcm16_bytes(signal):
    return (np.clip(signal, -1.0, 1.0 - 1.0 / 32768) * 32768).astype("<i2").tobytes()


@pytest.fixture
def song_factory():
    return make_song


@pytest.fixture(scope="session")
def song_a():
    return make_song(seed=1)


@pytest.fixture(scope="session")
def song_b():
    return make_song(seed=2)


@pytest.fixture
def engine():
    return ShazamRecognizer()


@pytest.fixture
def loaded_engine(song_a):
    recognizer = ShazamRecognizer()
    recognizer.register("song-a", song_a, sample_rate=SR)
    return recognizer
