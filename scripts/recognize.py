#!/usr/bin/env python3
"""
Song recognition CLI.

Usage:
    python scripts/recognize.py --query audio.wav
    python scripts/recognize.py --query audio.wav --clip-length 10 --snr 5
    python scripts/recognize.py --query capture.raw --sample-rate 44100 --channels 2
"""

import argparse
import json
import logging
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from ringabell.errors import RingabellError
from ringabell.log import log_detail, log_success, setup_logging
from ringabell.shazam import ShazamRecognizer
from ringabell.shazam.audio import preprocess
from ringabell.shazam.peaks import extract_peaks
from ringabell.shazam.spectrogram import compute_spectrogram, plot_spectrogram_and_save

log = logging.getLogger("ringabell.scripts.recognize")


def plot_query(recognizer: ShazamRecognizer, query_path: Path, output_path: Path,
               sample_rate: int = None, channels: int = 1):
    """Save the spectrogram and landmarks the recognizer sees for ``query_path``."""
    params = recognizer.params
    data = query_path.read_bytes() if sample_rate else query_path
    signal = preprocess(data, sample_rate=sample_rate, channels=channels,
                        target_sr=params["target_sr"], res_type=params["res_type"])
    spectrogram = compute_spectrogram(signal, params)
    peaks = extract_peaks(spectrogram, params)
    plot_spectrogram_and_save(spectrogram, params, peaks, output_path)
    log_detail("Spectrogram plot", str(output_path))


def main():
    parser = argparse.ArgumentParser(description='Ringabell - Song Recognition')
    parser.add_argument('--query', '-q', type=str, required=True,
                        help='Path to query audio file')
    parser.add_argument('--db-path', type=str, default='fingerprints/ringabell.rbfp',
                        help='Path to the fingerprint snapshot')
    parser.add_argument('--clip-length', type=float, default=None,
                        help='Clip length in seconds (for testing with shorter clips)')
    parser.add_argument('--snr', type=float, default=None,
                        help='SNR in dB for noise injection (for testing robustness)')
    parser.add_argument('--sample-rate', type=int, default=None,
                        help='Treat the query as headerless int16 PCM at this rate')
    parser.add_argument('--channels', type=int, default=1,
                        help='Channel count of headerless PCM input')
    parser.add_argument('--plot', type=str, default=None,
                        help='Save the query spectrogram with its landmarks to this PNG')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Log per-stage timings')

    args = parser.parse_args()
    setup_logging("ringabell", logging.DEBUG if args.verbose else logging.INFO)

    query_path = Path(args.query)
    if not query_path.exists():
        log.error(f"Query file not found: {query_path}")
        sys.exit(1)

    try:
        recognizer = ShazamRecognizer.from_snapshot(Path(args.db_path))
    except (OSError, RingabellError) as e:
        log.error(f"Cannot load database {args.db_path}: {e}")
        sys.exit(1)

    log_detail("Recognizing", query_path.name)
    log_detail("Database", f"{recognizer.num_indexed_songs} songs indexed")

    try:
        if args.sample_rate is not None:
            result = recognizer.search(query_path.read_bytes(), sample_rate=args.sample_rate,
                                       channels=args.channels)
            song_name, score, metadata = result.song_name, result.score, result.metadata
        else:
            song_name, score, metadata = recognizer.recognize(
                query_path,
                clip_length_sec=args.clip_length,
                snr_db=args.snr,
            )
    except RingabellError as e:
        log.error(f"Recognition failed: {e}")
        sys.exit(1)

    if song_name:
        log_success(f"Match found: {song_name}")
        log_detail("Score", f"{score:.3f}")
        log_detail("Aligned hashes", str(metadata.get('best_song_score', 'N/A')))
        log_detail("Offset", f"{metadata.get('offset_sec') or 0.0:.2f}s")
    else:
        log.warning("No match found")

    print(json.dumps({"songName": song_name, "score": score}))

    if args.plot:
        plot_query(recognizer, query_path, Path(args.plot), args.sample_rate, args.channels)


if __name__ == '__main__':
    main()
