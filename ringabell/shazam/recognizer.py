import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from tqdm import tqdm

from ringabell.base import BaseSongRecognizer
from ringabell.errors import DuplicateSongName, OperationCancelled, RingabellError
from .audio import AudioInput, cut_audio, inject_noise, load_audio, to_canonical
from .config import load_config, resolve_params
from .db import FingerprintIndex, ReadWriteLock, SongRegistry, decode_snapshot, encode_snapshot, load_db, save_db
from .hashing import FingerprintHash, build_hashes
from .matching import match
from .peaks import extract_peaks
from .spectrogram import compute_spectrogram, frame_to_seconds

logger = logging.getLogger(__name__)


class Timer:
    """Context manager for timing code blocks; timings are logged at DEBUG."""

    def __init__(self):
        self.timings: Dict[str, float] = {}

    @contextmanager
    def measure(self, label: str):
        """Time a block of code and log the result."""
        start = time.perf_counter()
        yield
        elapsed = time.perf_counter() - start
        self.timings[label] = elapsed
        logger.debug("%s: %.4fs", label, elapsed)

    def log(self, message: str, *args):
        logger.debug(message, *args)

    @property
    def total(self) -> float:
        return sum(self.timings.values())


def _with_deadline(cancelled: Optional[Callable[[], bool]], timeout: Optional[float]) -> Optional[Callable[[], bool]]:
    """Fold a timeout in seconds into a cancellation callable."""
    if timeout is None:
        return cancelled
    deadline = time.monotonic() + timeout

    def expired() -> bool:
        return time.monotonic() >= deadline or (cancelled is not None and cancelled())

    return expired


def _check(cancelled: Optional[Callable[[], bool]], stage: str) -> None:
    if cancelled is not None and cancelled():
        raise OperationCancelled(f"Cancelled before {stage}")


def fingerprint_audio(
    audio: AudioInput,
    params: Dict[str, Any],
    sample_rate: Optional[int] = None,
    channels: int = 1,
    cancelled: Optional[Callable[[], bool]] = None,
    timer: Optional[Timer] = None,
) -> List[FingerprintHash]:
    """
    Run the full pipeline on one recording: decode, canonicalize, spectrogram,
    landmarks, hashes. Pure; touches no engine state.
    """
    timer = timer or Timer()

    with timer.measure("Load audio"):
        signal, sr = load_audio(audio, sample_rate=sample_rate, channels=channels)
    with timer.measure("Canonicalize"):
        signal = to_canonical(signal, sr, target_sr=params["target_sr"],
                              res_type=params["res_type"], min_samples=params["n_fft"])

    _check(cancelled, "spectrogram")
    with timer.measure("Extract spectrogram"):
        spectrogram = compute_spectrogram(signal, params, cancelled=cancelled)

    _check(cancelled, "peak extraction")
    with timer.measure("Find peaks"):
        peaks = extract_peaks(spectrogram, params)

    _check(cancelled, "hashing")
    with timer.measure("Build hashes"):
        hashes = build_hashes(peaks, params)

    timer.log("  Frames: %d, peaks: %d, hashes: %d", spectrogram.shape[0], len(peaks), len(hashes))
    return hashes


@dataclass
class SearchResult:
    song_name: Optional[str]
    score: float
    song_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return self.song_name is not None

    def to_dict(self) -> Dict[str, Any]:
        return {"songName": self.song_name, "score": self.score}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class ShazamRecognizer(BaseSongRecognizer):
    """
    Shazam-style audio fingerprinting and recognition.

    Uses spectral peak constellation hashing following the classic Shazam
    algorithm. The recognizer owns the song registry and the fingerprint
    index; concurrent ``search`` calls share a read lock, while ``register``
    and the other mutating calls take the write lock only to apply their
    changes, so readers see all of a song's hashes or none of them.
    """

    def __init__(self, params: Optional[Dict[str, Any]] = None):
        """
        Args:
            params: Overrides of the pipeline constants (see ``config.default_params``)
        """
        self.params = resolve_params(params)
        self._registry = SongRegistry()
        self._index = FingerprintIndex()
        self._lock = ReadWriteLock()

    @classmethod
    def from_config(cls, config_path: Union[str, Path]) -> "ShazamRecognizer":
        return cls(load_config(config_path))

    @classmethod
    def from_snapshot(cls, path: Union[str, Path]) -> "ShazamRecognizer":
        recognizer = cls()
        recognizer.load(path)
        return recognizer

    @property
    def name(self) -> str:
        return "Shazam"

    @property
    def num_indexed_songs(self) -> int:
        with self._lock.read_locked():
            return len(self._registry)

    @property
    def num_hashes(self) -> int:
        with self._lock.read_locked():
            return len(self._index)

    def song_names(self) -> List[str]:
        """Registered names, in registration order."""
        with self._lock.read_locked():
            return [name for _, name in self._registry.items()]

    def fingerprint(
        self,
        audio: AudioInput,
        sample_rate: Optional[int] = None,
        channels: int = 1,
        cancelled: Optional[Callable[[], bool]] = None,
        timeout: Optional[float] = None,
    ) -> List[FingerprintHash]:
        """Hashes of ``audio`` under this recognizer's params."""
        return fingerprint_audio(audio, self.params, sample_rate, channels, _with_deadline(cancelled, timeout))

    def _ensure_new(self, name: str) -> None:
        with self._lock.read_locked():
            if self._registry.id_of(name) is not None:
                raise DuplicateSongName(name)

    def register(
        self,
        name: str,
        audio: AudioInput,
        sample_rate: Optional[int] = None,
        channels: int = 1,
        cancelled: Optional[Callable[[], bool]] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Fingerprint ``audio`` and add it to the index under ``name``.

        Raises:
            DuplicateSongName: ``name`` is already registered
            InvalidAudioFormat: ``audio`` is empty, unparseable or too short
            OperationCancelled: ``cancelled()`` returned True or ``timeout`` expired
        """
        self._ensure_new(name)
        timer = Timer()
        cancelled = _with_deadline(cancelled, timeout)
        song_id = None
        while song_id is None:
            params = self.params
            try:
                hashes = fingerprint_audio(audio, params, sample_rate, channels, cancelled, timer)
            except RingabellError as e:
                logger.warning("Rejected registration of '%s': %s", name, e)
                raise

            with timer.measure("Insert"):
                with self._lock.write_locked():
                    # a snapshot loaded meanwhile may use other hashing constants
                    if self.params is params:
                        song_id = self._registry.add(name)
                        self._index.insert(song_id, hashes)
            if song_id is None:
                logger.info("Parameters changed while fingerprinting '%s', starting over", name)

        if not hashes:
            logger.warning("Registered '%s' without any fingerprint hash (silent input?)", name)
        logger.info("Registered '%s' as song %d: %d hashes in %.3fs", name, song_id, len(hashes), timer.total)
        return song_id

    def register_many(
        self,
        items: Iterable[Tuple[str, AudioInput]],
        sample_rate: Optional[int] = None,
        channels: int = 1,
        cancelled: Optional[Callable[[], bool]] = None,
        timeout: Optional[float] = None,
        n_jobs: int = -1,
    ) -> List[int]:
        """
        Register several recordings, fingerprinting them in parallel.

        Every name is checked before any work starts; the inserts are applied
        in input order under a single write lock. ``cancelled`` and ``timeout``
        are also checked right before the inserts, so a cancelled batch leaves
        the index untouched.

        Raises:
            DuplicateSongName: a name is repeated or already registered
            InvalidAudioFormat: one of the recordings is unusable
            OperationCancelled: ``cancelled()`` returned True or ``timeout`` expired
        """
        from joblib import Parallel, delayed

        items = list(items)
        names = [name for name, _ in items]
        seen = set()
        for name in names:
            if name in seen:
                raise DuplicateSongName(name)
            seen.add(name)
            self._ensure_new(name)

        cancelled = _with_deadline(cancelled, timeout)
        # cancellation callables watch caller state, so keep the workers in-process
        prefer = "threads" if cancelled is not None else None
        song_ids = []
        while True:
            params = self.params
            all_hashes = Parallel(n_jobs=n_jobs, prefer=prefer)(
                delayed(fingerprint_audio)(audio, params, sample_rate, channels, cancelled) for _, audio in items
            )

            _check(cancelled, "indexing")
            with self._lock.write_locked():
                # a snapshot loaded meanwhile may use other hashing constants
                if self.params is params:
                    for name in names:
                        if self._registry.id_of(name) is not None:
                            raise DuplicateSongName(name)
                    for name, hashes in zip(names, all_hashes):
                        song_id = self._registry.add(name)
                        self._index.insert(song_id, hashes)
                        song_ids.append(song_id)
                    break
            logger.info("Parameters changed while fingerprinting the batch, starting over")

        logger.info("Registered %d songs (%d hashes)", len(song_ids), sum(len(h) for h in all_hashes))
        return song_ids

    def search(
        self,
        audio: AudioInput,
        sample_rate: Optional[int] = None,
        channels: int = 1,
        cancelled: Optional[Callable[[], bool]] = None,
        timeout: Optional[float] = None,
    ) -> SearchResult:
        """
        Find the registered recording that best matches ``audio``.

        Not finding anything is a normal result: ``song_name`` is None and
        ``score`` is 0.
        """
        timer = Timer()
        cancelled = _with_deadline(cancelled, timeout)
        hashes = fingerprint_audio(audio, self.params, sample_rate, channels, cancelled, timer)

        _check(cancelled, "matching")
        with timer.measure("Hash matching and voting"):
            with self._lock.read_locked():
                result = match(hashes, self._index, self.params)
                song_name = self._registry.name_of(result.song_id)

        timer.log("  Query hashes: %d (%d used)", len(hashes), result.num_query_hashes)
        timer.log("  Candidate songs: %d", result.num_candidate_songs)
        timer.log("Total recognition time: %.4fs", timer.total)

        metadata = {
            "num_query_hashes": len(hashes),
            "num_sampled_hashes": result.num_query_hashes,
            "num_total_matches": result.total_matches,
            "num_candidate_songs": result.num_candidate_songs,
            "best_song_score": result.peak_count,
            "best_song_offset_distribution": result.offset_votes,
            "offset_frames": result.offset,
            "offset_sec": frame_to_seconds(result.offset, self.params) if result.offset is not None else None,
            "timings": timer.timings,
            "total_time": timer.total,
        }

        if song_name is None:
            logger.info("No match (%d query hashes, %d candidates)", len(hashes), result.num_candidate_songs)
            return SearchResult(song_name=None, score=0.0, metadata=metadata)

        logger.info("Matched '%s' with score %.3f (%d aligned hashes)", song_name, result.score, result.peak_count)
        return SearchResult(song_name=song_name, score=result.score, song_id=result.song_id, metadata=metadata)

    def remove(self, song_id: int) -> str:
        """Deregister a song and drop its hashes. Returns its name."""
        with self._lock.write_locked():
            if song_id not in self._registry:
                raise KeyError(f"Unknown song id {song_id}")
            removed = self._index.remove(song_id)
            name = self._registry.remove(song_id)
        logger.info("Removed '%s' (song %d, %d hashes)", name, song_id, removed)
        return name

    def reset(self) -> None:
        """Clear the registry and the index. Song ids are not reused afterwards."""
        with self._lock.write_locked():
            self._registry.reset()
            self._index.reset()
        logger.info("Index reset")

    def index_song(self, audio_path: Path) -> Optional[int]:
        """Add a single song to the database; already registered names are skipped."""
        audio_path = Path(audio_path)
        song_name = audio_path.stem
        with self._lock.read_locked():
            if self._registry.id_of(song_name) is not None:
                return None  # Already indexed
        return self.register(song_name, audio_path)

    def index_folder(self, folder: Path, pattern: str = "*.wav") -> int:
        """Index all songs in a folder."""
        audio_paths = sorted(Path(folder).glob(pattern))
        count = 0
        for audio_path in tqdm(audio_paths, desc="Indexing songs", unit='song'):
            try:
                if self.index_song(audio_path) is not None:
                    count += 1
            except RingabellError as e:
                logger.warning("Skipping %s: %s", audio_path.name, e)
        return count

    def recognize(
        self,
        query_path: Path,
        clip_length_sec: Optional[float] = None,
        snr_db: Optional[float] = None,
        seed: Optional[int] = 42,
    ) -> Tuple[Optional[str], float, Dict[str, Any]]:
        """
        Recognize a song from an audio file.

        Args:
            query_path: Path to the audio file to recognize
            clip_length_sec: Optional clip length in seconds
            snr_db: Optional SNR for noise injection
            seed: Seed for the clip position and the noise

        Returns:
            Tuple of (song_name, score, metadata)
        """
        signal, sample_rate = load_audio(Path(query_path))

        if clip_length_sec is not None:
            signal = cut_audio(signal, sample_rate, clip_length_sec, seed=seed)

        if snr_db is not None:
            signal = inject_noise(signal, snr_db, seed=seed)

        result = self.search(signal, sample_rate=sample_rate)
        return result.song_name, result.score, result.metadata

    def save(self, path: Union[str, Path]) -> None:
        """Write a snapshot of the registry, the index and the params."""
        with self._lock.read_locked():
            save_db(path, self._registry, self._index, self.params)

    def load(self, path: Union[str, Path]) -> None:
        """
        Replace the registry, index and params with the snapshot at ``path``.

        The snapshot is fully validated first; on ``IndexCorruption`` the
        recognizer is left untouched.
        """
        params, registry, index = load_db(path)
        self._install(params, registry, index)

    def to_bytes(self) -> bytes:
        with self._lock.read_locked():
            return encode_snapshot(self._registry, self._index, self.params)

    def load_bytes(self, data: bytes) -> None:
        self._install(*decode_snapshot(data))

    def _install(self, params: Dict[str, Any], registry: SongRegistry, index: FingerprintIndex) -> None:
        with self._lock.write_locked():
            self.params = params
            self._registry = registry
            self._index = index
