"""
Storage for the engine: the inverted fingerprint index, the song registry,
the reader-writer lock guarding both, and the snapshot file format.
"""

import io
import json
import logging
import os
import struct
import tempfile
import threading
import zlib
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from ringabell.errors import DuplicateSongName, IndexCorruption
from .config import resolve_params
from .hashing import FingerprintHash

logger = logging.getLogger(__name__)

Posting = Tuple[int, int]  # (song_id, anchor_time)


class ReadWriteLock:
    """
    Many concurrent readers or a single writer.

    Waiting writers block new readers, so a steady stream of searches cannot
    starve registrations. Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class FingerprintIndex:
    """
    code -> list of (song_id, anchor_time) occurrences.

    Not thread-safe on its own; the engine serializes access with a
    ``ReadWriteLock``.
    """

    def __init__(self):
        self._table: Dict[int, List[Posting]] = {}
        self._size = 0

    def insert(self, song_id: int, hashes: Iterable[FingerprintHash]) -> int:
        """Append one posting per hash; repeated codes are kept. Returns the count."""
        table = self._table
        added = 0
        for code, anchor_time in hashes:
            postings = table.get(code)
            if postings is None:
                table[code] = [(song_id, anchor_time)]
            else:
                postings.append((song_id, anchor_time))
            added += 1
        self._size += added
        return added

    def lookup(self, code: int) -> Sequence[Posting]:
        """All occurrences of ``code`` (read-only), empty if unknown."""
        return self._table.get(code, ())

    def posting_size(self, code: int) -> int:
        return len(self._table.get(code, ()))

    def remove(self, song_id: int) -> int:
        """Drop every posting of ``song_id``. Returns the number removed."""
        removed = 0
        for code in list(self._table):
            postings = self._table[code]
            remaining = [entry for entry in postings if entry[0] != song_id]
            if len(remaining) != len(postings):
                removed += len(postings) - len(remaining)
                if remaining:
                    self._table[code] = remaining
                else:
                    del self._table[code]
        self._size -= removed
        return removed

    def reset(self) -> None:
        self._table.clear()
        self._size = 0

    def entries(self) -> Iterator[Tuple[int, int, int]]:
        """Every posting as (code, song_id, anchor_time)."""
        for code, postings in self._table.items():
            for song_id, anchor_time in postings:
                yield code, song_id, anchor_time

    def song_ids(self) -> set:
        return {song_id for postings in self._table.values() for song_id, _ in postings}

    @property
    def num_codes(self) -> int:
        return len(self._table)

    def __contains__(self, code: int) -> bool:
        return code in self._table

    def __len__(self) -> int:
        return self._size


class SongRegistry:
    """song_id -> name. Ids come from a counter starting at 1 and are never reused."""

    def __init__(self):
        self._names: Dict[int, str] = {}
        self._ids: Dict[str, int] = {}
        self._next_id = 1

    @classmethod
    def from_items(cls, items: Iterable[Tuple[int, str]], next_id: int) -> "SongRegistry":
        """Rebuild a registry from stored (song_id, name) pairs."""
        registry = cls()
        for song_id, name in items:
            if song_id in registry._names or name in registry._ids or not 0 < song_id < next_id:
                raise ValueError(f"Inconsistent registry entry {song_id}: {name!r}")
            registry._names[song_id] = name
            registry._ids[name] = song_id
        registry._next_id = next_id
        return registry

    def add(self, name: str) -> int:
        if name in self._ids:
            raise DuplicateSongName(name)
        song_id = self._next_id
        self._next_id += 1
        self._names[song_id] = name
        self._ids[name] = song_id
        return song_id

    def name_of(self, song_id: Optional[int]) -> Optional[str]:
        return self._names.get(song_id)

    def id_of(self, name: str) -> Optional[int]:
        return self._ids.get(name)

    def remove(self, song_id: int) -> str:
        name = self._names.pop(song_id)
        del self._ids[name]
        return name

    def reset(self) -> None:
        self._names.clear()
        self._ids.clear()

    def items(self) -> List[Tuple[int, str]]:
        return sorted(self._names.items())

    @property
    def next_id(self) -> int:
        return self._next_id

    def __contains__(self, song_id: int) -> bool:
        return song_id in self._names

    def __len__(self) -> int:
        return len(self._names)


# ---------------------------------------------------------------------------
# Snapshot format (little-endian)
#
#   header   magic "RBFP", version u16, song count u32, code count u32,
#            params JSON length u32, then the params JSON
#   registry next_id u32, then per song (sorted by id):
#            id u32, name length u16, UTF-8 name
#   index    entry count u64, then (code u32, song_id u32, anchor u32)
#            records sorted by code, song_id, anchor
#   trailer  CRC32 u32 of everything above
# ---------------------------------------------------------------------------

MAGIC = b"RBFP"
VERSION = 1
HEADER = struct.Struct("<4sHIII")
ENTRY_DTYPE = np.dtype([("code", "<u4"), ("song_id", "<u4"), ("anchor", "<u4")])


def encode_snapshot(registry: SongRegistry, index: FingerprintIndex, params: Dict[str, Any]) -> bytes:
    buf = io.BytesIO()
    params_json = json.dumps(params, sort_keys=True).encode("utf-8")
    songs = registry.items()

    entries = np.array(list(index.entries()), dtype=ENTRY_DTYPE)
    entries = np.sort(entries, order=["code", "song_id", "anchor"])

    buf.write(HEADER.pack(MAGIC, VERSION, len(songs), index.num_codes, len(params_json)))
    buf.write(params_json)

    buf.write(struct.pack("<I", registry.next_id))
    for song_id, name in songs:
        raw = name.encode("utf-8")
        if len(raw) > 0xFFFF:
            raise ValueError(f"Song name too long to store: {name[:40]}...")
        buf.write(struct.pack("<IH", song_id, len(raw)))
        buf.write(raw)

    buf.write(struct.pack("<Q", len(entries)))
    buf.write(entries.tobytes())

    payload = buf.getvalue()
    return payload + struct.pack("<I", zlib.crc32(payload) & 0xFFFFFFFF)


class _Reader:
    def __init__(self, data: bytes, end: int):
        self.data = data
        self.pos = 0
        self.end = end

    def take(self, n: int) -> bytes:
        if n < 0 or self.pos + n > self.end:
            raise IndexCorruption(f"Snapshot truncated at byte {self.pos}")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def unpack(self, fmt: str):
        s = struct.Struct(fmt)
        return s.unpack(self.take(s.size))


def decode_snapshot(data: bytes) -> Tuple[Dict[str, Any], SongRegistry, FingerprintIndex]:
    """Validate and decode a snapshot; any inconsistency raises ``IndexCorruption``."""
    if len(data) < HEADER.size + 4:
        raise IndexCorruption("Snapshot too small")

    (stored_crc,) = struct.unpack("<I", data[-4:])
    if zlib.crc32(data[:-4]) & 0xFFFFFFFF != stored_crc:
        raise IndexCorruption("Snapshot checksum mismatch")

    reader = _Reader(data, len(data) - 4)
    magic, version, n_songs, n_codes, params_len = reader.unpack(HEADER.format)
    if magic != MAGIC:
        raise IndexCorruption(f"Bad snapshot magic {magic!r}")
    if version != VERSION:
        raise IndexCorruption(f"Unsupported snapshot version {version}")

    try:
        params = resolve_params(json.loads(reader.take(params_len).decode("utf-8")))
    except (UnicodeDecodeError, ValueError, TypeError, KeyError) as e:
        raise IndexCorruption(f"Invalid snapshot params: {e}") from e

    (next_id,) = reader.unpack("<I")
    songs = []
    for _ in range(n_songs):
        song_id, name_len = reader.unpack("<IH")
        try:
            songs.append((song_id, reader.take(name_len).decode("utf-8")))
        except UnicodeDecodeError as e:
            raise IndexCorruption(f"Invalid song name for id {song_id}") from e
    try:
        registry = SongRegistry.from_items(songs, next_id)
    except ValueError as e:
        raise IndexCorruption(str(e)) from e

    (n_entries,) = reader.unpack("<Q")
    entries = np.frombuffer(reader.take(n_entries * ENTRY_DTYPE.itemsize), dtype=ENTRY_DTYPE)
    if reader.pos != reader.end:
        raise IndexCorruption("Trailing bytes after index entries")
    if len(np.unique(entries["code"])) != n_codes:
        raise IndexCorruption("Index code count does not match header")
    dangling = set(np.unique(entries["song_id"]).tolist()) - {sid for sid, _ in registry.items()}
    if dangling:
        raise IndexCorruption(f"Index references unregistered songs: {sorted(dangling)[:10]}")

    # replay inserts song by song
    per_song = defaultdict(list)
    for code, song_id, anchor in entries.tolist():
        per_song[song_id].append(FingerprintHash(code, anchor))
    index = FingerprintIndex()
    for song_id in sorted(per_song):
        index.insert(song_id, per_song[song_id])

    return params, registry, index


def save_db(path: Union[str, Path], registry: SongRegistry, index: FingerprintIndex, params: Dict[str, Any]) -> None:
    """Write a snapshot atomically (private temp file + rename)."""
    path = Path(path)
    payload = encode_snapshot(registry, index, params)
    # one temp file per writer so concurrent saves never share it
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    logger.info("Saved snapshot %s: %d songs, %d postings", path, len(registry), len(index))


def load_db(path: Union[str, Path]) -> Tuple[Dict[str, Any], SongRegistry, FingerprintIndex]:
    with open(path, "rb") as f:
        data = f.read()
    params, registry, index = decode_snapshot(data)
    logger.info("Loaded snapshot %s: %d songs, %d postings", path, len(registry), len(index))
    return params, registry, index
