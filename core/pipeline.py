# core/pipeline.py

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence, Tuple

from tqdm import tqdm

from core.errors import DecodeError, EmptyInputError, ExternalServiceError, FingerprintError
from core.file_source import SourceFile
from core.fingerprint import Fingerprint, FingerprintExtractor
from core.models import AssetRecord, IndexingReport, ItemState
from core.semantic import SemanticTagger, normalize_tags
from core.similarity_index import HammingIndex
from core.thumbnail import NormalizedImage, ThumbnailNormalizer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class IndexingPipeline:
    """
    Index discovered files: normalize -> fingerprint -> tag -> persist.

    Items are persisted one at a time in input order by the calling thread,
    which is also the only writer of the store and the similarity index.
    Tagging is requested for the first `tagging_budget` positions of a run.
    With n_workers > 1, decoding and fingerprinting of the next few items
    run ahead on a bounded thread pool.
    """

    def __init__(self,
                 store,
                 index: HammingIndex,
                 normalizer: Optional[ThumbnailNormalizer] = None,
                 extractor: Optional[FingerprintExtractor] = None,
                 tagger: Optional[SemanticTagger] = None,
                 tagging_budget: int = 5,
                 thumbnail_quality: int = 80,
                 n_workers: int = 1,
                 show_progress: bool = False):
        self.store = store
        self.index = index
        self.normalizer = normalizer or ThumbnailNormalizer()
        self.extractor = extractor or FingerprintExtractor()
        self.tagger = tagger
        self.tagging_budget = tagging_budget
        self.thumbnail_quality = thumbnail_quality
        self.n_workers = max(1, n_workers)
        self.show_progress = show_progress

        if self.extractor.bit_length != index.bits:
            raise ValueError(
                f"Extractor produces {self.extractor.bit_length} bits, "
                f"index expects {index.bits}"
            )

    def run(self,
            files: Sequence[SourceFile],
            progress_callback: Optional[ProgressCallback] = None,
            cancel_event: Optional[threading.Event] = None) -> IndexingReport:
        """
        Index a batch of files.

        Per-item failures are logged and counted, never raised. Cancellation
        is honoured between items; everything persisted so far stays.

        Raises:
            EmptyInputError: if `files` is empty
            StoreError: if the store rejects a write (batch aborts)
        """
        if not files:
            raise EmptyInputError("No supported image files found in the selected folder.")

        files = list(files)
        total = len(files)
        report = IndexingReport(total=total)

        logger.info("Indexing %d files", total)

        executor = ThreadPoolExecutor(max_workers=self.n_workers) if self.n_workers > 1 else None
        try:
            with tqdm(total=total, desc="Indexing images", unit="img",
                      disable=not self.show_progress) as pbar:
                for start in range(0, total, self.n_workers):
                    batch = files[start:start + self.n_workers]
                    futures = self._submit(executor, batch)

                    for offset, source in enumerate(batch):
                        if cancel_event is not None and cancel_event.is_set():
                            report.cancelled = True
                            break

                        if futures is not None and futures[offset] is not None:
                            prepare = futures[offset].result
                        else:
                            prepare = lambda s=source: self._prepare(s)

                        state = self._index_one(source, prepare, report, position=start + offset)
                        self._count(state, report)

                        report.processed += 1
                        pbar.update(1)
                        if progress_callback:
                            progress_callback(report.processed, total)

                    if report.cancelled:
                        logger.info("Indexing cancelled after %d of %d files",
                                    report.processed, total)
                        break
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)

        logger.info(
            "Indexing finished: %d added, %d skipped, %d failed, %d tagged",
            report.added, report.skipped, report.failed, report.tagged
        )
        return report

    def _submit(self, executor, batch):
        """Start normalization of the batch on the pool, skipping known files"""
        if executor is None:
            return None
        return [
            None if self._already_indexed(source)
            else executor.submit(self._prepare, source)
            for source in batch
        ]

    def _prepare(self, source: SourceFile) -> Tuple[NormalizedImage, Fingerprint]:
        """Decode, downscale and fingerprint one file (no shared state)"""
        try:
            data = source.read_bytes()
        except OSError as e:
            raise DecodeError(f"Cannot read {source.relative_path}: {e}") from e

        normalized = self.normalizer.normalize(data)
        fingerprint = self.extractor.extract(normalized.raster)
        return normalized, fingerprint

    def _already_indexed(self, source: SourceFile) -> bool:
        return self.store.find_by_name_and_size(source.file_name, source.file_size) is not None

    def _index_one(self, source: SourceFile,
                   prepare: Callable[[], Tuple[NormalizedImage, Fingerprint]],
                   report: IndexingReport,
                   position: int) -> ItemState:
        self._trace(source, ItemState.DISCOVERED)
        if self._already_indexed(source):
            return self._trace(source, ItemState.SKIPPED)

        try:
            normalized, fingerprint = prepare()
        except (DecodeError, FingerprintError) as e:
            logger.warning("Failed to process %s: %s", source.file_name, e)
            report.failures.append(source.relative_path)
            return self._trace(source, ItemState.FAILED)
        self._trace(source, ItemState.NORMALIZED)
        self._trace(source, ItemState.FINGERPRINTED)

        tags = []
        # Budget covers the first N positions of the run, whatever their outcome
        if self.tagger is not None and position < self.tagging_budget:
            tags = self._request_tags(normalized, source)
            self._trace(source, ItemState.TAGGING_ATTEMPTED)
        if tags:
            report.tagged += 1

        record = AssetRecord(
            file_name=source.file_name,
            file_path=source.relative_path,
            file_size=source.file_size,
            last_modified=source.last_modified,
            width=normalized.original_width,
            height=normalized.original_height,
            thumbnail=normalized.encode_thumbnail(self.thumbnail_quality),
            fingerprint=fingerprint,
            tags=tags,
        )

        asset_id = self.store.add(record)
        self.index.insert(asset_id, fingerprint)
        return self._trace(source, ItemState.PERSISTED)

    def _request_tags(self, normalized: NormalizedImage, source: SourceFile):
        try:
            return normalize_tags(self.tagger.tag_image(normalized.raster))
        except ExternalServiceError as e:
            logger.warning("Tagging %s failed: %s", source.file_name, e)
            return []

    @staticmethod
    def _trace(source: SourceFile, state: ItemState) -> ItemState:
        logger.debug("%s: %s", source.relative_path, state.value)
        return state

    @staticmethod
    def _count(state: ItemState, report: IndexingReport):
        if state is ItemState.PERSISTED:
            report.added += 1
        elif state is ItemState.SKIPPED:
            report.skipped += 1
        elif state is ItemState.FAILED:
            report.failed += 1
