# core/tag_ranker.py

import logging
from typing import List, Optional, Sequence

from core.models import AssetRecord, SearchResult
from core.semantic import QueryExpander

logger = logging.getLogger(__name__)

FILENAME_WEIGHT = 0.8
TAG_WEIGHT = 1.0


def collect_tags(assets: Sequence[AssetRecord]) -> List[str]:
    """Distinct tags across the collection, in first-seen order"""
    seen = {}
    for asset in assets:
        for tag in asset.tags:
            seen.setdefault(tag.lower(), None)
    return list(seen)


class TagRanker:
    """
    Two-stage text search over file names and semantic tags.

    Stage 1 (lexical) is substring matching and always runs. Stage 2
    (semantic) asks the query expander which known tags fit the query
    intent, and only runs when stage 1 found nothing.
    """

    def __init__(self, expander: Optional[QueryExpander] = None):
        self.expander = expander

    def rank(self, query: str, assets: Sequence[AssetRecord]) -> List[SearchResult]:
        """
        Rank assets for a query, best first.

        Ties keep collection order. A blank query yields no results.
        """
        needle = query.strip().lower()
        if not needle:
            return []

        results = self.lexical_pass(needle, assets)
        if not results:
            results = self.semantic_pass(query.strip(), assets)

        # sorted() is stable, so equal scores stay in collection order
        return sorted(results, key=lambda r: r.similarity, reverse=True)

    def lexical_pass(self, needle: str, assets: Sequence[AssetRecord]) -> List[SearchResult]:
        needle = needle.lower()
        results = []
        for asset in assets:
            score = 0.0
            if needle in asset.file_name.lower():
                score += FILENAME_WEIGHT
            if any(needle in tag.lower() for tag in asset.tags):
                score += TAG_WEIGHT
            if score > 0:
                results.append(SearchResult(asset=asset, similarity=score))
        return results

    def semantic_pass(self, query: str, assets: Sequence[AssetRecord]) -> List[SearchResult]:
        if self.expander is None:
            return []

        all_tags = collect_tags(assets)
        if not all_tags:
            return []

        known = set(all_tags)
        relevant = [tag for tag in self.expander.expand(query, all_tags)
                    if tag.lower() in known]
        relevant = list(dict.fromkeys(tag.lower() for tag in relevant))
        if not relevant:
            logger.debug("Semantic expansion found no tags for %r", query)
            return []

        relevant_set = set(relevant)
        results = []
        for asset in assets:
            overlap = {tag.lower() for tag in asset.tags} & relevant_set
            if overlap:
                results.append(SearchResult(
                    asset=asset,
                    similarity=len(overlap) / len(relevant),
                ))
        return results
