#!/usr/bin/env python3
"""
Benchmark script: recognition accuracy and latency under clip length, noise
and room-impulse-response conditions.

Prerequisites:
    1. Run scripts/index_songs.py first to build the snapshot
    2. Have the indexed audio files at hand for queries

Usage:
    python scripts/benchmark.py --db-path ./fingerprints/ringabell.rbfp \
                                --test_dir ~/datasets/fma_small \
                                --aug_dir ~/datasets/aug \
                                --n_test 100
"""

import sys
import json
import time
import random
import argparse
import logging
from pathlib import Path
from dataclasses import dataclass, asdict, field
from typing import List, Optional, Dict

sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
import torch
import torchaudio
from scipy.signal import fftconvolve
from tqdm import tqdm

from ringabell.errors import RingabellError
from ringabell.log import log_section, setup_logging
from ringabell.shazam import ShazamRecognizer

log = logging.getLogger("ringabell.scripts.benchmark")


@dataclass
class TestCondition:
    name: str
    clip_length_sec: float
    snr_db: Optional[float] = None
    use_ir: bool = False


@dataclass
class BenchmarkResults:
    approach: str
    n_db_songs: int
    n_queries: int
    db_load_time_ms: float
    conditions: Dict[str, dict] = field(default_factory=dict)


# Test conditions to evaluate
TEST_CONDITIONS = [
    TestCondition("clean_10s", clip_length_sec=10.0),
    TestCondition("clean_5s", clip_length_sec=5.0),
    TestCondition("clean_3s", clip_length_sec=3.0),
    TestCondition("snr_10db", clip_length_sec=10.0, snr_db=10.0),
    TestCondition("snr_5db", clip_length_sec=10.0, snr_db=5.0),
    TestCondition("snr_0db", clip_length_sec=10.0, snr_db=0.0),
    TestCondition("ir_10s", clip_length_sec=10.0, use_ir=True),
    TestCondition("ir_snr_5db", clip_length_sec=10.0, snr_db=5.0, use_ir=True),
]


def load_noise_files(aug_dir: Path) -> List[Path]:
    """Load noise files from augmentation directory."""
    noise_dir = aug_dir / "noise" if (aug_dir / "noise").exists() else aug_dir
    noise_files = list(noise_dir.rglob("*.wav"))
    if not noise_files:
        noise_files = list(noise_dir.rglob("*.mp3"))
    return noise_files


def load_ir_files(aug_dir: Path) -> List[Path]:
    """Load impulse response files from augmentation directory."""
    ir_dir = aug_dir / "ir" if (aug_dir / "ir").exists() else aug_dir / "rir"
    if not ir_dir.exists():
        ir_dir = aug_dir
    return list(ir_dir.rglob("*.wav"))


def _load_mono(path: Path, sr: int) -> np.ndarray:
    waveform, file_sr = torchaudio.load(path)
    waveform = waveform.mean(dim=0)
    if file_sr != sr:
        waveform = torchaudio.functional.resample(waveform, file_sr, sr)
    return waveform.numpy()


def add_noise(signal: np.ndarray, snr_db: float, noise_files: List[Path], sr: int) -> np.ndarray:
    """Add noise to signal at specified SNR; white noise when no file is usable."""
    signal_power = np.mean(signal ** 2) + 1e-10
    target_noise_power = signal_power / (10 ** (snr_db / 10))

    noise = None
    if noise_files:
        noise_file = random.choice(noise_files)
        try:
            noise = _load_mono(noise_file, sr)
        except RuntimeError as e:
            log.warning(f"Cannot read noise file {noise_file.name}: {e}")

    if noise is None or len(noise) == 0:
        return signal + np.random.normal(0, np.sqrt(target_noise_power), len(signal))

    # Tile or truncate to match signal length
    if len(noise) < len(signal):
        noise = np.tile(noise, int(np.ceil(len(signal) / len(noise))))
    noise = noise[:len(signal)]

    noise_power = np.mean(noise ** 2) + 1e-10
    return signal + noise * np.sqrt(target_noise_power / noise_power)


def apply_ir(signal: np.ndarray, ir_files: List[Path], sr: int) -> np.ndarray:
    """Apply impulse response convolution."""
    if not ir_files:
        return signal

    ir_file = random.choice(ir_files)
    try:
        ir = _load_mono(ir_file, sr)
    except RuntimeError as e:
        log.warning(f"Cannot read impulse response {ir_file.name}: {e}")
        return signal

    # Convolve and normalize
    convolved = fftconvolve(signal, ir, mode='same')
    convolved = convolved / (np.max(np.abs(convolved)) + 1e-10) * np.max(np.abs(signal))
    return convolved.astype(np.float32)


def create_query(
    audio_path: Path,
    condition: TestCondition,
    noise_files: List[Path],
    ir_files: List[Path],
    target_sr: int,
) -> np.ndarray:
    """Create a query audio with specified augmentation."""
    waveform = _load_mono(audio_path, target_sr)

    # Cut clip
    clip_samples = int(condition.clip_length_sec * target_sr)
    if len(waveform) > clip_samples:
        start = random.randint(0, len(waveform) - clip_samples)
        waveform = waveform[start:start + clip_samples]

    if condition.use_ir:
        waveform = apply_ir(waveform, ir_files, target_sr)

    if condition.snr_db is not None:
        waveform = add_noise(waveform, condition.snr_db, noise_files, target_sr)

    return waveform


def benchmark(
    db_path: Path,
    test_files: List[Path],
    noise_files: List[Path],
    ir_files: List[Path],
    conditions: List[TestCondition],
) -> BenchmarkResults:
    """Run every condition over every test file."""
    log_section("📊 Shazam Benchmark")

    start = time.time()
    recognizer = ShazamRecognizer.from_snapshot(db_path)
    db_load_time = (time.time() - start) * 1000
    target_sr = recognizer.params["target_sr"]

    results = BenchmarkResults(
        approach=recognizer.name,
        n_db_songs=recognizer.num_indexed_songs,
        n_queries=len(test_files),
        db_load_time_ms=db_load_time,
    )

    log.info(f"Loaded {results.n_db_songs} songs in {db_load_time:.1f}ms")

    for condition in conditions:
        correct = 0
        total = 0
        query_times = []
        scores = []

        for test_file in tqdm(test_files, desc=condition.name, unit='query', leave=False):
            expected = test_file.stem
            total += 1
            try:
                query_audio = create_query(test_file, condition, noise_files, ir_files, target_sr)

                # Measure recognition time only
                start = time.time()
                result = recognizer.search(query_audio, sample_rate=target_sr)
                query_times.append((time.time() - start) * 1000)
            except RingabellError as e:
                log.warning(f"Error {test_file.name}: {e}")
                continue

            scores.append(result.score)
            if result.song_name == expected:
                correct += 1

        accuracy = correct / total * 100 if total > 0 else 0
        avg_time = float(np.mean(query_times)) if query_times else 0.0

        results.conditions[condition.name] = {
            "accuracy": accuracy,
            "avg_query_time_ms": avg_time,
            "avg_score": float(np.mean(scores)) if scores else 0.0,
            "correct": correct,
            "total": total,
        }

        log.info(f"  {condition.name}: {accuracy:.1f}% ({correct}/{total}), {avg_time:.1f}ms/query")

    return results


def print_summary(results: BenchmarkResults):
    """Print results table."""
    print("\n" + "=" * 80)
    print(f"RESULTS: {results.approach} ({results.n_db_songs} songs, {results.n_queries} queries)")
    print("=" * 80)

    print(f"\n{'Condition':<20} {'Accuracy':>12} {'Avg score':>12} {'Query Time (ms)':>18}")
    print("-" * 80)
    for cond_name, stats in results.conditions.items():
        print(f"{cond_name:<20} {stats['accuracy']:>11.1f}% {stats['avg_score']:>12.3f} "
              f"{stats['avg_query_time_ms']:>18.1f}")

    print("\n" + "=" * 80)


def main():
    parser = argparse.ArgumentParser(description='Benchmark song recognition')
    parser.add_argument('--db-path', type=str, default='./fingerprints/ringabell.rbfp',
                        help='Fingerprint snapshot built by index_songs.py')
    parser.add_argument('--test_dir', type=str, required=True,
                        help='Directory with test audio files')
    parser.add_argument('--aug_dir', type=str, default='~/datasets/aug',
                        help='Directory with noise/IR augmentation files')
    parser.add_argument('--pattern', type=str, default='*.wav')
    parser.add_argument('--n_test', type=int, default=50,
                        help='Number of test queries')
    parser.add_argument('--output', type=str, default='benchmark_results.json')
    parser.add_argument('--seed', type=int, default=42)
    args = parser.parse_args()

    setup_logging("ringabell", logging.INFO)

    random.seed(args.seed)
    np.random.seed(args.seed)
    torch.manual_seed(args.seed)

    db_path = Path(args.db_path).expanduser()
    test_dir = Path(args.test_dir).expanduser()
    aug_dir = Path(args.aug_dir).expanduser()

    test_files = sorted(test_dir.rglob(args.pattern))
    if not test_files:
        log.error(f"No audio files found in {test_dir}")
        sys.exit(1)
    if len(test_files) > args.n_test:
        test_files = random.sample(test_files, args.n_test)

    noise_files = load_noise_files(aug_dir) if aug_dir.exists() else []
    ir_files = load_ir_files(aug_dir) if aug_dir.exists() else []
    log.info(f"{len(test_files)} queries, {len(noise_files)} noise files, {len(ir_files)} impulse responses")

    results = benchmark(db_path, test_files, noise_files, ir_files, TEST_CONDITIONS)
    print_summary(results)

    with open(args.output, 'w') as f:
        json.dump(asdict(results), f, indent=2)
    log.info(f"Results saved to {args.output}")


if __name__ == '__main__':
    main()
