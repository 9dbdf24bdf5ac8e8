"""
Offset-histogram voting over the fingerprint index.

For every query hash found in the index, each posting votes for
``(song, db_anchor_time - query_anchor_time)``. The recording the query was
cut from piles its votes into a single offset bucket, because every shared
landmark pair is shifted by the same amount; unrelated songs only collect
scattered votes.
"""

import heapq
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from .config import default_params
from .db import FingerprintIndex
from .hashing import FingerprintHash


@dataclass
class MatchResult:
    song_id: Optional[int]
    score: float                  # peak_count / num_query_hashes, 0.0 when not found
    peak_count: int = 0           # votes in the winning offset bucket
    total_matches: int = 0        # votes for the winning song over all buckets
    offset: Optional[int] = None  # winning bucket start, in frames (db - query)
    num_query_hashes: int = 0
    num_candidate_songs: int = 0
    offset_votes: Dict[int, int] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return self.song_id is not None


def sample_query_hashes(fingerprints: Sequence[FingerprintHash], max_hashes: int,
                        rarity: Callable[[int], int], n_bins: int = 20) -> List[FingerprintHash]:
    """
    Keep at most ``max_hashes`` query hashes, spread over time and preferring
    codes with short posting lists (rare codes discriminate better).
    """
    n = len(fingerprints)
    if n <= max_hashes:
        return list(fingerprints)

    times = np.fromiter((fp.anchor_time for fp in fingerprints), dtype=np.int64, count=n)
    tmin = int(times.min())
    tmax = int(times.max()) + 1  # avoid div by 0

    # Assign each fp to a time bin in ONE pass
    denom = max(1, (tmax - tmin))
    bin_idx = ((times - tmin) * n_bins) // denom
    bin_idx = np.clip(bin_idx, 0, n_bins - 1)

    bins = [[] for _ in range(n_bins)]
    for fp, b in zip(fingerprints, bin_idx):
        bins[int(b)].append(fp)

    per_bin = max(1, max_hashes // n_bins)

    def key(fp):
        return rarity(fp.code)

    chosen = []
    for bin_fps in bins:
        if not bin_fps:
            continue
        chosen.extend(heapq.nsmallest(per_bin, bin_fps, key=key))

    # Fill remaining slots with rarest overall
    if len(chosen) < max_hashes:
        chosen_set = set(chosen)
        remaining = [fp for fp in fingerprints if fp not in chosen_set]
        chosen.extend(heapq.nsmallest(max_hashes - len(chosen), remaining, key=key))

    return chosen[:max_hashes]


def vote(fingerprints: Sequence[FingerprintHash], index: FingerprintIndex,
         offset_bin_frames: int = 1) -> Dict[int, Counter]:
    """
    song_id -> Counter(offset bucket -> votes).

    A query hash votes at most once per (song, bucket), so no bucket can
    exceed the number of query hashes.
    """
    offset_votes: Dict[int, Counter] = defaultdict(Counter)
    for code, t_query in fingerprints:
        postings = index.lookup(code)
        if not postings:
            continue
        seen = set()
        for song_id, t_db in postings:
            key = (song_id, (t_db - t_query) // offset_bin_frames)
            if key in seen:
                continue
            seen.add(key)
            offset_votes[song_id][key[1]] += 1
    return offset_votes


def match(fingerprints: Sequence[FingerprintHash], index: FingerprintIndex,
          params: Optional[Dict[str, Any]] = None) -> MatchResult:
    """
    Pick the song with the tallest offset bucket.

    Ties go to the song with more votes overall, then to the lowest id. The
    result is "not found" (``song_id=None``, ``score=0.0``) unless the peak
    holds at least ``min_aligned_matches`` votes and the score reaches
    ``min_score``.
    """
    p = params or default_params()
    query = fingerprints
    if p["max_query_hashes"]:
        query = sample_query_hashes(fingerprints, p["max_query_hashes"], index.posting_size)

    offset_votes = vote(query, index, p["offset_bin_frames"])
    num_query = len(query)

    best = None
    for song_id, hist in offset_votes.items():
        # tallest bucket; equal buckets resolve to the smallest offset
        bucket, peak = max(hist.items(), key=lambda kv: (kv[1], -kv[0]))
        total = sum(hist.values())
        rank = (peak, total, -song_id)
        if best is None or rank > best[0]:
            best = (rank, song_id, bucket, peak, total)

    if best is None:
        return MatchResult(song_id=None, score=0.0, num_query_hashes=num_query)

    _, song_id, bucket, peak, total = best
    score = min(1.0, peak / num_query)
    if peak < p["min_aligned_matches"] or score < p["min_score"]:
        return MatchResult(
            song_id=None, score=0.0, peak_count=peak, total_matches=total,
            num_query_hashes=num_query, num_candidate_songs=len(offset_votes),
        )

    return MatchResult(
        song_id=song_id,
        score=float(score),
        peak_count=peak,
        total_matches=total,
        offset=bucket * p["offset_bin_frames"],
        num_query_hashes=num_query,
        num_candidate_songs=len(offset_votes),
        offset_votes=dict(offset_votes[song_id]),
    )
