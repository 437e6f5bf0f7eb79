# tests/test_pipeline.py

import logging
import threading

import pytest

from core.database import AssetDatabase
from core.errors import EmptyInputError, ExternalServiceError
from core.file_source import SourceFile
from core.fingerprint import FingerprintExtractor
from core.pipeline import IndexingPipeline
from core.similarity_index import HammingIndex


class CountingTagger:
    """Tagger returning fixed tags and counting requests"""

    def __init__(self, tags=("Outdoor", "sky"), fail=False):
        self.tags = list(tags)
        self.fail = fail
        self.calls = 0

    def tag_image(self, raster):
        self.calls += 1
        if self.fail:
            raise ExternalServiceError("service unavailable")
        return list(self.tags)


@pytest.fixture
def store():
    db = AssetDatabase(":memory:")
    yield db
    db.close()


@pytest.fixture
def index():
    return HammingIndex()


@pytest.fixture
def noise_files(noise_images, encoder):
    return [
        SourceFile.from_bytes(encoder(img, ".png"), f"noise_{i}.png", f"set/noise_{i}.png")
        for i, img in enumerate(noise_images[:7])
    ]


def test_empty_input_raises_and_writes_nothing(store, index):
    pipeline = IndexingPipeline(store, index)

    with pytest.raises(EmptyInputError):
        pipeline.run([])
    assert store.count() == 0
    assert len(index) == 0


def test_every_file_is_persisted_and_indexed(store, index, noise_files):
    report = IndexingPipeline(store, index).run(noise_files)

    assert (report.total, report.processed, report.added) == (7, 7, 7)
    assert report.skipped == report.failed == 0
    records = store.get_all()
    assert [r.file_path for r in records] == [f.relative_path for f in noise_files]
    for record in records:
        assert record.id in index
        assert index.get(record.id) == record.fingerprint
        assert record.thumbnail[:2] == b"\xff\xd8"
        assert (record.width, record.height) == (64, 48)


def test_tagging_budget_limits_requests(store, index, noise_files):
    tagger = CountingTagger()
    report = IndexingPipeline(store, index, tagger=tagger, tagging_budget=5).run(noise_files)

    assert tagger.calls == 5
    assert report.tagged == 5
    tags = [r.tags for r in store.get_all()]
    assert tags[:5] == [["outdoor", "sky"]] * 5
    assert tags[5:] == [[], []]


def test_tagging_budget_resets_per_run(store, index, noise_files):
    tagger = CountingTagger()
    pipeline = IndexingPipeline(store, index, tagger=tagger, tagging_budget=2)

    pipeline.run(noise_files[:3])
    pipeline.run(noise_files[3:])

    assert tagger.calls == 4


def test_failed_item_uses_a_tagging_slot(store, index, noise_files):
    """Budget follows list position, so a broken first file still counts"""
    broken = SourceFile.from_bytes(b"definitely not an image", "broken.jpg")
    tagger = CountingTagger()

    report = IndexingPipeline(store, index, tagger=tagger, tagging_budget=5).run(
        [broken] + noise_files[:6]
    )

    tagged = [r.file_name for r in store.get_all() if r.tags]
    assert tagged == ["noise_0.png", "noise_1.png", "noise_2.png", "noise_3.png"]
    assert tagger.calls == 4
    assert report.tagged == 4


def test_skipped_item_uses_a_tagging_slot(store, index, noise_files):
    IndexingPipeline(store, index).run(noise_files[:1])
    tagger = CountingTagger()

    IndexingPipeline(store, index, tagger=tagger, tagging_budget=2).run(noise_files[:4])

    tagged = [r.file_name for r in store.get_all() if r.tags]
    assert tagged == ["noise_1.png"]
    assert tagger.calls == 1


def test_item_states_are_logged_in_order(store, index, noise_files, caplog):
    broken = SourceFile.from_bytes(b"definitely not an image", "broken.jpg")
    pipeline = IndexingPipeline(store, index, tagger=CountingTagger(), tagging_budget=1)

    with caplog.at_level(logging.DEBUG, logger="core.pipeline"):
        pipeline.run([noise_files[0], broken, noise_files[0]])

    states = {}
    for record in caplog.records:
        if record.msg == "%s: %s":
            path, state = record.args
            states.setdefault(path, []).append(state)

    assert states["set/noise_0.png"] == [
        "discovered", "normalized", "fingerprinted", "tagging_attempted", "persisted",
        "discovered", "skipped",
    ]
    assert states["broken.jpg"] == ["discovered", "failed"]


def test_tagging_failure_keeps_item(store, index, noise_files):
    tagger = CountingTagger(fail=True)
    report = IndexingPipeline(store, index, tagger=tagger, tagging_budget=2).run(noise_files)

    assert report.added == 7
    assert report.tagged == 0
    assert tagger.calls == 2
    assert all(r.tags == [] for r in store.get_all())


def test_progress_reported_after_every_item(store, index, noise_files):
    calls = []
    IndexingPipeline(store, index).run(noise_files, progress_callback=lambda p, t: calls.append((p, t)))

    assert calls == [(i, 7) for i in range(1, 8)]


def test_undecodable_file_fails_alone(store, index, noise_files):
    files = noise_files[:2] + [SourceFile.from_bytes(b"definitely not an image", "broken.jpg")] \
        + noise_files[2:4]
    calls = []

    report = IndexingPipeline(store, index).run(files, progress_callback=lambda p, t: calls.append(p))

    assert report.failed == 1
    assert report.added == 4
    assert report.failures == ["broken.jpg"]
    assert calls == [1, 2, 3, 4, 5]
    assert "broken.jpg" not in [r.file_name for r in store.get_all()]


def test_unreadable_file_fails_alone(store, index, noise_files):
    def explode():
        raise OSError("permission denied")

    missing = SourceFile("gone.png", "set/gone.png", 10, 0.0, explode)
    report = IndexingPipeline(store, index).run([missing] + noise_files[:1])

    assert (report.failed, report.added) == (1, 1)


def test_rerun_skips_everything(store, index, noise_files):
    tagger = CountingTagger()
    pipeline = IndexingPipeline(store, index, tagger=tagger)
    pipeline.run(noise_files)
    calls_after_first = tagger.calls

    report = pipeline.run(noise_files)

    assert report.skipped == 7
    assert report.added == 0
    assert store.count() == 7
    assert tagger.calls == calls_after_first


def test_cancel_between_items(store, index, noise_files):
    cancel = threading.Event()

    def progress(processed, total):
        if processed == 3:
            cancel.set()

    report = IndexingPipeline(store, index).run(noise_files, progress, cancel)

    assert report.cancelled
    assert report.processed == 3
    assert store.count() == 3
    assert len(index) == 3


def test_parallel_run_matches_sequential(index, noise_files):
    sequential_store = AssetDatabase(":memory:")
    parallel_store = AssetDatabase(":memory:")
    try:
        IndexingPipeline(sequential_store, HammingIndex()).run(noise_files)
        report = IndexingPipeline(parallel_store, index, n_workers=3).run(noise_files)

        assert report.added == 7
        assert [(r.file_path, r.fingerprint) for r in parallel_store.get_all()] == \
            [(r.file_path, r.fingerprint) for r in sequential_store.get_all()]
    finally:
        sequential_store.close()
        parallel_store.close()


def test_reencoded_copies_cluster_together(store, index, scene_a, scene_b, encoder):
    files = [
        SourceFile.from_bytes(encoder(scene_a, ".png"), "a.png"),
        SourceFile.from_bytes(encoder(scene_a, ".jpg", quality=90), "a.jpg"),
        SourceFile.from_bytes(encoder(scene_b, ".png"), "b.png"),
    ]
    IndexingPipeline(store, index).run(files)

    ids = [r.id for r in store.get_all()]
    assert index.cluster_all(5) == [[ids[0], ids[1]], [ids[2]]]


def test_extractor_must_match_index_length(store):
    with pytest.raises(ValueError):
        IndexingPipeline(store, HammingIndex(), extractor=FingerprintExtractor(hash_size=4))
