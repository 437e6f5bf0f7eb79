# tests/test_similarity_index.py

import random
import threading

import pytest

from core.fingerprint import Fingerprint
from core.similarity_index import HammingIndex


def flip(fingerprint: Fingerprint, positions) -> Fingerprint:
    value = fingerprint.value
    for pos in positions:
        value ^= 1 << pos
    return Fingerprint(value)


def bits_set(count: int) -> Fingerprint:
    return Fingerprint((1 << count) - 1)


@pytest.fixture
def populated_index():
    """Random fingerprints plus near copies so small radii have hits"""
    rng = random.Random(11)
    index = HammingIndex()
    entries = {}
    next_id = 0
    for _ in range(150):
        base = Fingerprint(rng.getrandbits(64))
        entries[next_id] = base
        next_id += 1
        for _ in range(rng.randint(0, 3)):
            near = flip(base, rng.sample(range(64), rng.randint(1, 9)))
            entries[next_id] = near
            next_id += 1
    index.insert_many(entries.items())
    return index, entries


def brute_force(entries, query, k):
    return {asset_id for asset_id, f in entries.items() if f - query <= k}


@pytest.mark.parametrize("k", [0, 1, 3, 5, 7, 8, 12, 17, 32, 64])
def test_query_within_matches_brute_force(populated_index, k):
    index, entries = populated_index
    rng = random.Random(k)
    queries = list(entries.values())[:40] + [Fingerprint(rng.getrandbits(64)) for _ in range(10)]

    for query in queries:
        assert index.query_within(query, k) == brute_force(entries, query, k)


def test_query_within_other_band_layouts():
    rng = random.Random(5)
    entries = {i: Fingerprint(rng.getrandbits(64)) for i in range(60)}
    entries.update({100 + i: flip(f, [i % 64, (i * 7) % 64]) for i, f in entries.items()})

    for num_bands in (1, 4, 16, 64):
        index = HammingIndex(num_bands=num_bands)
        index.insert_many(entries.items())
        for query in list(entries.values())[:15]:
            for k in (0, 2, 6):
                assert index.query_within(query, k) == brute_force(entries, query, k)


def test_missing_fingerprint_queries_are_empty():
    index = HammingIndex()
    index.insert(1, Fingerprint(0))

    assert index.query_within(None, 5) == set()
    assert index.query_id_within(99, 5) == set()
    assert index.query_id_within(1, 5) == {1}


def test_cluster_scenario_two_groups():
    """Distances (0,1) = 2 and (0,2) = 40 at threshold 5"""
    index = HammingIndex()
    index.insert(0, Fingerprint(0))
    index.insert(1, bits_set(2))
    index.insert(2, Fingerprint(((1 << 40) - 1) << 24))

    assert index.cluster_all(5) == [[0, 1], [2]]


def test_greedy_attaches_to_earliest_cluster():
    index = HammingIndex()
    index.insert(10, Fingerprint(0))   # founds cluster 0
    index.insert(11, bits_set(6))      # 6 from 10, founds cluster 1
    index.insert(12, bits_set(3))      # 3 from both representatives

    assert index.cluster_all(5) == [[10, 12], [11]]


def test_greedy_and_connected_differ_on_chains():
    index = HammingIndex()
    index.insert(1, Fingerprint(0))
    index.insert(2, bits_set(4))
    index.insert(3, bits_set(8))       # 8 from 1, 4 from 2

    assert index.cluster_all(5) == [[1, 2], [3]]
    assert index.cluster_all(5, linkage="connected") == [[1, 2, 3]]


def test_clusters_are_disjoint_and_follow_greedy_rule(populated_index):
    index, entries = populated_index
    k = 5
    clusters = index.cluster_all(k)

    members = [asset_id for group in clusters for asset_id in group]
    assert sorted(members) == sorted(entries)
    assert len(members) == len(set(members))

    representatives = [group[0] for group in clusters]
    position = {asset_id: i for i, asset_id in enumerate(entries)}
    for c, group in enumerate(clusters):
        rep = group[0]
        for asset_id in group[1:]:
            assert entries[asset_id] - entries[rep] <= k
            # no earlier-founded representative was within reach
            for earlier in representatives[:c]:
                if position[earlier] < position[asset_id]:
                    assert entries[asset_id] - entries[earlier] > k
        for other in representatives[:c]:
            assert entries[rep] - entries[other] > k


def test_connected_clusters_are_components(populated_index):
    index, entries = populated_index
    clusters = index.cluster_all(5, linkage="connected")
    group_of = {asset_id: g for g, group in enumerate(clusters) for asset_id in group}

    for a, fa in entries.items():
        for b in index.query_within(fa, 5):
            assert group_of[a] == group_of[b]


def test_cluster_all_is_deterministic(populated_index):
    index, _ = populated_index
    assert index.cluster_all(5) == index.cluster_all(5)


def test_insert_replaces_and_remove_forgets():
    index = HammingIndex()
    index.insert(1, Fingerprint(0))
    index.insert(1, Fingerprint(2**64 - 1))

    assert len(index) == 1
    assert index.query_within(Fingerprint(0), 5) == set()
    assert index.remove(1)
    assert not index.remove(1)
    assert 1 not in index
    assert index.query_within(Fingerprint(2**64 - 1), 0) == set()


def test_invalid_configuration_and_lengths():
    with pytest.raises(ValueError):
        HammingIndex(bits=64, num_bands=7)
    with pytest.raises(ValueError):
        HammingIndex().insert(1, Fingerprint(0, bits=16))


def test_concurrent_reads_during_inserts():
    index = HammingIndex()
    rng = random.Random(1)
    values = [Fingerprint(rng.getrandbits(64)) for _ in range(500)]
    errors = []

    def writer():
        for i, f in enumerate(values):
            index.insert(i, f)

    def reader():
        try:
            for f in values[:100]:
                for asset_id in index.query_within(f, 8):
                    assert index.get(asset_id) is not None
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len(index) == 500
