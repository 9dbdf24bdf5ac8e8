import struct
import threading
import time
import zlib

import pytest

from ringabell.errors import DuplicateSongName, IndexCorruption
from ringabell.shazam.config import default_params, resolve_params
from ringabell.shazam.db import (
    FingerprintIndex,
    HEADER,
    ReadWriteLock,
    SongRegistry,
    decode_snapshot,
    encode_snapshot,
    load_db,
    save_db,
)
from ringabell.shazam.hashing import FingerprintHash


def sample_state():
    registry = SongRegistry()
    index = FingerprintIndex()
    a = registry.add("alpha")
    b = registry.add("beta ♪")
    index.insert(a, [FingerprintHash(10, 0), FingerprintHash(10, 5), FingerprintHash(20, 3)])
    index.insert(b, [FingerprintHash(10, 7), FingerprintHash(30, 1)])
    return registry, index


def with_crc(payload: bytes) -> bytes:
    return payload + struct.pack("<I", zlib.crc32(payload) & 0xFFFFFFFF)


# ---------------------------------------------------------------------------
# index
# ---------------------------------------------------------------------------

def test_insert_and_lookup():
    _, index = sample_state()

    assert sorted(index.lookup(10)) == [(1, 0), (1, 5), (2, 7)]
    assert index.lookup(99) == ()
    assert index.posting_size(10) == 3
    assert index.posting_size(99) == 0
    assert 20 in index and 99 not in index
    assert len(index) == 5
    assert index.num_codes == 3
    assert index.song_ids() == {1, 2}


def test_repeated_hashes_are_kept():
    index = FingerprintIndex()
    assert index.insert(1, [FingerprintHash(5, 2), FingerprintHash(5, 2)]) == 2
    assert list(index.lookup(5)) == [(1, 2), (1, 2)]


def test_remove_song():
    _, index = sample_state()

    assert index.remove(1) == 3
    assert list(index.lookup(10)) == [(2, 7)]
    assert 20 not in index
    assert len(index) == 2
    assert index.remove(1) == 0


def test_reset_index():
    _, index = sample_state()
    index.reset()
    assert len(index) == 0
    assert index.num_codes == 0
    assert list(index.entries()) == []


# ---------------------------------------------------------------------------
# registry
# ---------------------------------------------------------------------------

def test_registry_ids_and_names():
    registry, _ = sample_state()

    assert registry.items() == [(1, "alpha"), (2, "beta ♪")]
    assert registry.name_of(2) == "beta ♪"
    assert registry.name_of(None) is None
    assert registry.id_of("alpha") == 1
    assert registry.id_of("gamma") is None
    assert 1 in registry and 3 not in registry
    assert len(registry) == 2


def test_registry_rejects_duplicates():
    registry, _ = sample_state()
    with pytest.raises(DuplicateSongName):
        registry.add("alpha")
    assert registry.next_id == 3


def test_registry_never_reuses_ids():
    registry, _ = sample_state()
    assert registry.remove(2) == "beta ♪"
    assert registry.add("gamma") == 3
    registry.reset()
    assert len(registry) == 0
    assert registry.add("beta ♪") == 4


@pytest.mark.parametrize("items, next_id", [
    ([(1, "a"), (1, "b")], 3),
    ([(1, "a"), (2, "a")], 3),
    ([(5, "a")], 3),
    ([(0, "a")], 3),
])
def test_registry_from_inconsistent_items(items, next_id):
    with pytest.raises(ValueError):
        SongRegistry.from_items(items, next_id)


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------

def test_snapshot_round_trip():
    registry, index = sample_state()
    params = resolve_params({"fan_out": 4})

    loaded_params, loaded_registry, loaded_index = decode_snapshot(encode_snapshot(registry, index, params))

    assert loaded_params == params
    assert loaded_registry.items() == registry.items()
    assert loaded_registry.next_id == registry.next_id
    assert sorted(loaded_index.entries()) == sorted(index.entries())


def test_snapshot_is_deterministic():
    registry, index = sample_state()
    # same content inserted in another order
    other = FingerprintIndex()
    other.insert(2, [FingerprintHash(30, 1), FingerprintHash(10, 7)])
    other.insert(1, [FingerprintHash(20, 3), FingerprintHash(10, 5), FingerprintHash(10, 0)])

    params = default_params()
    assert encode_snapshot(registry, index, params) == encode_snapshot(registry, other, params)


def test_empty_snapshot():
    params, registry, index = decode_snapshot(encode_snapshot(SongRegistry(), FingerprintIndex(), default_params()))
    assert len(registry) == 0
    assert len(index) == 0
    assert registry.next_id == 1


def test_save_and_load(tmp_path):
    registry, index = sample_state()
    path = tmp_path / "snap.rbfp"

    save_db(path, registry, index, default_params())
    _, loaded_registry, loaded_index = load_db(path)

    assert loaded_registry.items() == registry.items()
    assert len(loaded_index) == len(index)
    assert list(tmp_path.iterdir()) == [path]


def test_concurrent_saves_to_one_path(tmp_path):
    registry, index = sample_state()
    path = tmp_path / "snap.rbfp"
    errors = []

    def saver():
        for _ in range(20):
            try:
                save_db(path, registry, index, default_params())
            except Exception as e:
                errors.append(e)

    threads = [threading.Thread(target=saver) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    _, loaded_registry, _ = load_db(path)
    assert loaded_registry.items() == registry.items()
    assert list(tmp_path.iterdir()) == [path]


def test_flipped_byte_fails_checksum():
    registry, index = sample_state()
    data = bytearray(encode_snapshot(registry, index, default_params()))
    data[HEADER.size + 3] ^= 0x01
    with pytest.raises(IndexCorruption, match="checksum"):
        decode_snapshot(bytes(data))


@pytest.mark.parametrize("cut", [1, 10, 200])
def test_truncated_snapshot(cut):
    registry, index = sample_state()
    data = encode_snapshot(registry, index, default_params())
    with pytest.raises(IndexCorruption):
        decode_snapshot(data[:-cut])


def test_too_small():
    with pytest.raises(IndexCorruption):
        decode_snapshot(b"RBFP")


def test_bad_magic_and_version():
    registry, index = sample_state()
    payload = encode_snapshot(registry, index, default_params())[:-4]

    with pytest.raises(IndexCorruption, match="magic"):
        decode_snapshot(with_crc(b"XXXX" + payload[4:]))

    bumped = payload[:4] + struct.pack("<H", 99) + payload[6:]
    with pytest.raises(IndexCorruption, match="version"):
        decode_snapshot(with_crc(bumped))


def test_trailing_bytes():
    registry, index = sample_state()
    payload = encode_snapshot(registry, index, default_params())[:-4]
    with pytest.raises(IndexCorruption):
        decode_snapshot(with_crc(payload + b"\x00" * 12))


def test_dangling_song_reference():
    registry, index = sample_state()
    index.insert(7, [FingerprintHash(40, 0)])
    with pytest.raises(IndexCorruption, match="unregistered"):
        decode_snapshot(encode_snapshot(registry, index, default_params()))


def test_invalid_params_in_snapshot():
    registry, index = sample_state()
    params = default_params()
    params["peak_strategy"] = "random"
    with pytest.raises(IndexCorruption, match="params"):
        decode_snapshot(encode_snapshot(registry, index, params))


# ---------------------------------------------------------------------------
# lock
# ---------------------------------------------------------------------------

def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = threading.Barrier(2, timeout=5)

    def reader():
        with lock.read_locked():
            inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert not inside.broken


def test_writer_waits_for_readers():
    lock = ReadWriteLock()
    written = threading.Event()

    def writer():
        with lock.write_locked():
            written.set()

    with lock.read_locked():
        t = threading.Thread(target=writer)
        t.start()
        time.sleep(0.05)
        assert not written.is_set()
    t.join(timeout=5)
    assert written.is_set()


def test_waiting_writer_blocks_new_readers():
    lock = ReadWriteLock()
    order = []

    def writer():
        with lock.write_locked():
            order.append("writer")

    def late_reader():
        with lock.read_locked():
            order.append("reader")

    with lock.read_locked():
        w = threading.Thread(target=writer)
        w.start()
        time.sleep(0.05)
        r = threading.Thread(target=late_reader)
        r.start()
        time.sleep(0.05)
        assert order == []
    w.join(timeout=5)
    r.join(timeout=5)
    assert order == ["writer", "reader"]
