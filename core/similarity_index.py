# core/similarity_index.py

import threading
from functools import lru_cache
from itertools import combinations
from math import comb
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core.fingerprint import FINGERPRINT_BITS, Fingerprint


@lru_cache(maxsize=4096)
def _band_neighbors(value: int, radius: int, width: int) -> Tuple[int, ...]:
    """All band values within `radius` bit flips of `value`"""
    neighbors = [value]
    for flips in range(1, radius + 1):
        for positions in combinations(range(width), flips):
            mask = 0
            for pos in positions:
                mask |= 1 << pos
            neighbors.append(value ^ mask)
    return tuple(neighbors)


class UnionFind:
    """Disjoint Set Union (Union-Find) for transitive clustering."""

    def __init__(self, n: int):
        self.parent = list(range(n))
        self.rank = [0] * n

    def find(self, x: int) -> int:
        """Find root with path compression."""
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, x: int, y: int) -> bool:
        """Union by rank."""
        px, py = self.find(x), self.find(y)
        if px == py:
            return False
        if self.rank[px] < self.rank[py]:
            px, py = py, px
        self.parent[py] = px
        if self.rank[px] == self.rank[py]:
            self.rank[px] += 1
        return True


class HammingIndex:
    """
    Multi-index hashing over fixed-length fingerprints.

    Each fingerprint is cut into `num_bands` equal bands and every band value
    is bucketed. Two fingerprints within distance k must agree on at least one
    band up to k // num_bands flipped bits (pigeonhole), so probing those
    neighbors of each query band yields a complete candidate set. Candidates
    are then verified with the full Hamming distance, which makes results
    identical to a pairwise scan.

    Writers and readers share one lock: an insert is never partially visible.
    """

    def __init__(self, bits: int = FINGERPRINT_BITS, num_bands: int = 8):
        if num_bands <= 0 or bits % num_bands:
            raise ValueError(f"{bits} bits cannot be split into {num_bands} bands")
        self.bits = bits
        self.num_bands = num_bands
        self.band_width = bits // num_bands
        self._band_mask = (1 << self.band_width) - 1

        self._fingerprints: Dict[int, Fingerprint] = {}
        self._buckets: List[Dict[int, Set[int]]] = [{} for _ in range(num_bands)]
        self._lock = threading.RLock()

    def __len__(self):
        with self._lock:
            return len(self._fingerprints)

    def __contains__(self, asset_id: int) -> bool:
        with self._lock:
            return asset_id in self._fingerprints

    def get(self, asset_id: int) -> Optional[Fingerprint]:
        with self._lock:
            return self._fingerprints.get(asset_id)

    def items(self) -> List[Tuple[int, Fingerprint]]:
        """Snapshot of (id, fingerprint) pairs in insertion order"""
        with self._lock:
            return list(self._fingerprints.items())

    def insert(self, asset_id: int, fingerprint: Fingerprint):
        """
        Add or replace the fingerprint stored for an id.

        A replaced id moves to the end of the insertion order.
        """
        if fingerprint.bits != self.bits:
            raise ValueError(
                f"Fingerprint has {fingerprint.bits} bits, index expects {self.bits}"
            )

        with self._lock:
            if asset_id in self._fingerprints:
                self._remove_locked(asset_id)

            self._fingerprints[asset_id] = fingerprint
            for band, value in enumerate(self._band_values(fingerprint)):
                self._buckets[band].setdefault(value, set()).add(asset_id)

    def insert_many(self, entries: Iterable[Tuple[int, Fingerprint]]):
        for asset_id, fingerprint in entries:
            self.insert(asset_id, fingerprint)

    def remove(self, asset_id: int) -> bool:
        """Drop an id from the index. Returns False if it was not indexed."""
        with self._lock:
            if asset_id not in self._fingerprints:
                return False
            self._remove_locked(asset_id)
            return True

    def clear(self):
        with self._lock:
            self._fingerprints.clear()
            self._buckets = [{} for _ in range(self.num_bands)]

    def query_within(self, fingerprint: Optional[Fingerprint], k: int) -> Set[int]:
        """Every indexed id whose fingerprint is within Hamming distance k"""
        if fingerprint is None or k < 0:
            return set()
        if fingerprint.bits != self.bits:
            raise ValueError(
                f"Fingerprint has {fingerprint.bits} bits, index expects {self.bits}"
            )

        with self._lock:
            return {
                asset_id for asset_id in self._candidates(fingerprint, k)
                if self._fingerprints[asset_id].distance(fingerprint) <= k
            }

    def query_id_within(self, asset_id: int, k: int) -> Set[int]:
        """Neighbors of an indexed id, itself included. Unknown ids give an empty set."""
        with self._lock:
            return self.query_within(self._fingerprints.get(asset_id), k)

    def cluster_all(self, k: int, linkage: str = "greedy") -> List[List[int]]:
        """
        Partition every indexed id into near-duplicate groups.

        greedy: walk ids in insertion order; each id joins the earliest
        created cluster whose representative (first member) is within k,
        otherwise it founds a new cluster.

        connected: connected components of the within-k graph.

        Groups and their members are ordered by insertion order.
        """
        if linkage == "greedy":
            return self._cluster_greedy(k)
        if linkage == "connected":
            return self._cluster_connected(k)
        raise ValueError(f"Unknown linkage: {linkage}")

    def _cluster_greedy(self, k: int) -> List[List[int]]:
        entries = self.items()

        representatives = HammingIndex(self.bits, self.num_bands)
        cluster_of_rep: Dict[int, int] = {}
        clusters: List[List[int]] = []

        for asset_id, fingerprint in entries:
            matches = representatives.query_within(fingerprint, k)
            if matches:
                earliest = min(cluster_of_rep[rep] for rep in matches)
                clusters[earliest].append(asset_id)
            else:
                cluster_of_rep[asset_id] = len(clusters)
                clusters.append([asset_id])
                representatives.insert(asset_id, fingerprint)

        return clusters

    def _cluster_connected(self, k: int) -> List[List[int]]:
        with self._lock:
            entries = list(self._fingerprints.items())
            position = {asset_id: i for i, (asset_id, _) in enumerate(entries)}
            uf = UnionFind(len(entries))
            for i, (asset_id, fingerprint) in enumerate(entries):
                for neighbor in self.query_within(fingerprint, k):
                    uf.union(i, position[neighbor])

        groups: Dict[int, List[int]] = {}
        for i, (asset_id, _) in enumerate(entries):
            groups.setdefault(uf.find(i), []).append(asset_id)

        # dict preserves first-seen order of roots, which follows insertion order
        return list(groups.values())

    def _band_values(self, fingerprint: Fingerprint) -> List[int]:
        values = []
        for band in range(self.num_bands):
            shift = self.bits - (band + 1) * self.band_width
            values.append((fingerprint.value >> shift) & self._band_mask)
        return values

    def _probe_count(self, radius: int) -> int:
        per_band = sum(comb(self.band_width, flips) for flips in range(radius + 1))
        return per_band * self.num_bands

    def _candidates(self, fingerprint: Fingerprint, k: int) -> Set[int]:
        radius = k // self.num_bands
        if radius >= self.band_width:
            return set(self._fingerprints)
        if self._probe_count(radius) > len(self._fingerprints):
            # Probing costs more than scanning everything
            return set(self._fingerprints)

        candidates: Set[int] = set()
        for band, value in enumerate(self._band_values(fingerprint)):
            buckets = self._buckets[band]
            for neighbor in _band_neighbors(value, radius, self.band_width):
                bucket = buckets.get(neighbor)
                if bucket:
                    candidates.update(bucket)
        return candidates

    def _remove_locked(self, asset_id: int):
        fingerprint = self._fingerprints.pop(asset_id)
        for band, value in enumerate(self._band_values(fingerprint)):
            bucket = self._buckets[band].get(value)
            if bucket is not None:
                bucket.discard(asset_id)
                if not bucket:
                    del self._buckets[band][value]
