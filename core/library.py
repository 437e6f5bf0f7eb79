# core/library.py

import logging
import threading
from typing import Callable, List, Optional, Sequence

from config import SystemConfig
from core.database import AssetDatabase
from core.errors import (DecodeError, EmptyInputError, ExternalServiceError,
                         FingerprintError, StoreError)
from core.file_source import SourceFile, get_image_files
from core.fingerprint import FingerprintExtractor
from core.models import AssetRecord, Cluster, IndexingReport, SearchResult
from core.pipeline import IndexingPipeline
from core.semantic import GeminiSemanticService, normalize_tags
from core.similarity_index import HammingIndex
from core.tag_ranker import TagRanker
from core.thumbnail import ThumbnailNormalizer, decode_thumbnail

logger = logging.getLogger(__name__)


class ImageLibrary:
    """
    Process-scoped service tying together the store, the similarity index,
    the ranker and the indexing pipeline. Presentation layers hold a
    reference to one of these and only consume its results.
    """

    def __init__(self,
                 store: AssetDatabase,
                 config: Optional[SystemConfig] = None,
                 semantic_service=None):
        self.config = config or SystemConfig()
        self.store = store
        self.semantic = semantic_service

        dd = self.config.duplicate_detection
        fp = self.config.fingerprint

        self.extractor = FingerprintExtractor(fp.hash_method, fp.hash_size)
        self.normalizer = ThumbnailNormalizer(self.config.normalizer.max_dimension)
        self.index = HammingIndex(bits=self.extractor.bit_length, num_bands=dd.num_bands)
        self.ranker = TagRanker(expander=semantic_service)
        self.pipeline = IndexingPipeline(
            store=store,
            index=self.index,
            normalizer=self.normalizer,
            extractor=self.extractor,
            tagger=semantic_service,
            tagging_budget=self.config.indexing.tagging_budget,
            thumbnail_quality=self.config.normalizer.thumbnail_quality,
            n_workers=self.config.indexing.n_workers,
            show_progress=self.config.indexing.show_progress,
        )
        self._index_lock = threading.Lock()

        self.rebuild_index()

    @classmethod
    def open(cls, config: Optional[SystemConfig] = None) -> 'ImageLibrary':
        """Open the configured database and semantic service"""
        config = config or SystemConfig()
        store = AssetDatabase(config.database_path)
        semantic = GeminiSemanticService.from_config(config.semantic)
        if semantic is None:
            logger.info("Semantic service disabled, search falls back to keywords only")
        return cls(store, config, semantic)

    def close(self):
        self.store.close()
        if self.semantic is not None and hasattr(self.semantic, 'close'):
            self.semantic.close()

    def rebuild_index(self) -> int:
        """
        Load every stored fingerprint into the similarity index.

        Records without a fingerprint are re-fingerprinted from their
        thumbnail when possible. Returns the number of indexed assets.
        """
        self.index.clear()
        for record in self.store.get_all():
            fingerprint = record.fingerprint
            if fingerprint is None or fingerprint.bits != self.index.bits:
                fingerprint = self._refingerprint(record)
                if fingerprint is None:
                    continue
            self.index.insert(record.id, fingerprint)

        logger.info("Similarity index holds %d fingerprints", len(self.index))
        return len(self.index)

    def _refingerprint(self, record: AssetRecord):
        if not record.thumbnail:
            return None
        try:
            fingerprint = self.extractor.extract(decode_thumbnail(record.thumbnail))
        except (DecodeError, FingerprintError) as e:
            logger.warning("Cannot re-fingerprint %s: %s", record.file_name, e)
            return None
        self.store.update_fingerprint(record.id, fingerprint)
        record.fingerprint = fingerprint
        return fingerprint

    # Indexing

    def index_files(self,
                    files: Sequence[SourceFile],
                    progress_callback: Optional[Callable[[int, int], None]] = None,
                    cancel_event: Optional[threading.Event] = None) -> IndexingReport:
        """
        Run the pipeline over a file list. Batch-level errors are turned
        into a report carrying a user-facing message.
        """
        if not self._index_lock.acquire(blocking=False):
            return IndexingReport(total=len(files), message="Indexing is already running.")
        try:
            return self.pipeline.run(files, progress_callback, cancel_event)
        except EmptyInputError as e:
            logger.info("Nothing to index: %s", e)
            return IndexingReport(message=str(e))
        except StoreError as e:
            logger.error("Indexing aborted: %s", e)
            return IndexingReport(total=len(files), message=f"Database access failed: {e}")
        finally:
            self._index_lock.release()

    def index_folder(self, directory: str, **kwargs) -> IndexingReport:
        return self.index_files(get_image_files(directory), **kwargs)

    def backfill_tags(self, limit: Optional[int] = None) -> int:
        """
        Request tags for untagged assets from their stored thumbnails.
        Returns the number of assets that received tags.
        """
        if self.semantic is None:
            return 0

        tagged = 0
        attempts = 0
        for record in self.store.get_all():
            if record.tags or not record.thumbnail:
                continue
            if limit is not None and attempts >= limit:
                break
            attempts += 1

            try:
                raster = decode_thumbnail(record.thumbnail)
            except DecodeError as e:
                logger.warning("Cannot read thumbnail of %s: %s", record.file_name, e)
                continue

            try:
                tags = normalize_tags(self.semantic.tag_image(raster))
            except ExternalServiceError as e:
                logger.warning("Tagging %s failed: %s", record.file_name, e)
                continue

            if tags:
                self.store.update_tags(record.id, tags)
                tagged += 1

        logger.info("Backfilled tags for %d of %d assets", tagged, attempts)
        return tagged

    # Queries

    def assets(self) -> List[AssetRecord]:
        return self.store.get_all()

    def search(self, query: str) -> List[SearchResult]:
        return self.ranker.rank(query, self.store.get_all())

    def find_similar(self, asset_id: int, k: Optional[int] = None) -> List[SearchResult]:
        """Assets within k bits of the given one, closest first"""
        k = self.config.duplicate_detection.hash_threshold if k is None else k
        fingerprints = dict(self.index.items())
        fingerprint = fingerprints.get(asset_id)
        if fingerprint is None:
            return []

        neighbors = self.index.query_within(fingerprint, k) - {asset_id}
        results = [
            SearchResult(asset=record, similarity=fingerprint.similarity(fingerprints[record.id]))
            for record in self.store.get_all()
            if record.id in neighbors and record.id in fingerprints
        ]
        return sorted(results, key=lambda r: r.similarity, reverse=True)

    def cluster(self, k: Optional[int] = None, linkage: Optional[str] = None,
                include_singletons: bool = False) -> List[Cluster]:
        """Near-duplicate groups, representative first"""
        dd = self.config.duplicate_detection
        k = dd.hash_threshold if k is None else k
        groups = self.index.cluster_all(k, linkage or dd.linkage)

        records = {record.id: record for record in self.store.get_all()}
        clusters = []
        for group in groups:
            members = [records[asset_id] for asset_id in group if asset_id in records]
            if len(members) > 1 or (members and include_singletons):
                clusters.append(Cluster(members=members))
        return clusters

    def find_duplicates(self, k: Optional[int] = None) -> List[SearchResult]:
        """
        Every non-representative cluster member, scored by similarity to
        its cluster representative.
        """
        clusters = self.cluster(k, linkage="greedy")
        fingerprints = dict(self.index.items())

        results = []
        for cluster in clusters:
            representative = fingerprints.get(cluster.representative.id)
            if representative is None:
                continue
            for duplicate in cluster.duplicates:
                if duplicate.id not in fingerprints:
                    continue
                results.append(SearchResult(
                    asset=duplicate,
                    similarity=representative.similarity(fingerprints[duplicate.id]),
                ))
        return results

    def delete(self, asset_id: int) -> bool:
        """Remove an asset from the store and the similarity index"""
        removed = self.store.delete(asset_id)
        self.index.remove(asset_id)
        return removed
