#!/usr/bin/env python3
"""
Index songs into a fingerprint snapshot.

Usage:
    python scripts/index_songs.py --folder ~/datasets/fma_small
    python scripts/index_songs.py --folder ./songs --pattern "*.flac" \
                                  --output fingerprints/ringabell.rbfp --config my_params.yaml
"""

import argparse
import logging
from pathlib import Path
import sys

from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).parent.parent))

from ringabell.errors import IndexCorruption, RingabellError
from ringabell.log import log_detail, log_section, log_success, setup_logging
from ringabell.shazam import ShazamRecognizer

log = logging.getLogger("ringabell.scripts.index_songs")


def index_folder(folder: Path, output: Path, pattern: str, config: str = None) -> int:
    """Register every matching file under ``folder`` and save the snapshot."""
    log_section("🎵 Shazam Indexing")

    if output.exists():
        try:
            recognizer = ShazamRecognizer.from_snapshot(output)
        except IndexCorruption as e:
            log.error(f"Cannot extend {output}: {e}")
            sys.exit(1)
        log_detail("Loaded existing", f"{recognizer.num_indexed_songs} songs")
        if config:
            log.warning("Ignoring --config, the existing snapshot carries its own params")
    else:
        recognizer = ShazamRecognizer.from_config(config) if config else ShazamRecognizer()
        log_detail("Database", "starting fresh")

    audio_files = sorted(folder.rglob(pattern))
    log_detail("Audio files", str(len(audio_files)))

    added = 0
    for f in tqdm(audio_files, desc="Indexing", unit='song'):
        try:
            if recognizer.index_song(f) is not None:
                added += 1
        except RingabellError as e:
            log.warning(f"Error {f.name}: {e}")

    output.parent.mkdir(parents=True, exist_ok=True)
    recognizer.save(output)

    log_success(f"Added {added} songs, {recognizer.num_indexed_songs} total in {output}")
    return added


def main():
    parser = argparse.ArgumentParser(description='Index songs for recognition')
    parser.add_argument('--folder', '-f', type=str, required=True)
    parser.add_argument('--output', '-o', type=str, default='./fingerprints/ringabell.rbfp')
    parser.add_argument('--pattern', '-p', type=str, default='*.wav')
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='YAML file overriding the pipeline constants')
    parser.add_argument('--verbose', '-v', action='store_true')
    args = parser.parse_args()

    setup_logging("ringabell", logging.DEBUG if args.verbose else logging.INFO)

    folder = Path(args.folder).expanduser()
    output = Path(args.output).expanduser()

    if not folder.exists():
        log.error(f"Folder not found: {folder}")
        sys.exit(1)

    index_folder(folder, output, args.pattern, args.config)


if __name__ == '__main__':
    main()
