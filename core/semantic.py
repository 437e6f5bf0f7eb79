# core/semantic.py

import base64
import io
import json
import logging
import os
from typing import Iterable, List, Optional, Protocol

import httpx
from PIL import Image

from core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

TAG_PROMPT = (
    "Generate {max_tags} precise semantic tags for this image. "
    "Output only the tags separated by commas."
)

EXPAND_PROMPT = (
    'Given the user search query: "{query}", and a set of image keywords: '
    "[{keywords}], return a list of keywords that most closely match the intent. "
    "Return ONLY the relevant keywords as a JSON array."
)


class SemanticTagger(Protocol):
    """Produces keyword tags for a normalized raster. Never raises."""

    def tag_image(self, raster: Image.Image) -> List[str]:
        ...


class QueryExpander(Protocol):
    """Maps a free-text query to the relevant subset of known tags. Never raises."""

    def expand(self, query: str, candidate_tags: Iterable[str]) -> List[str]:
        ...


def normalize_tags(raw_tags: Iterable[str], limit: Optional[int] = None) -> List[str]:
    """Lowercase, strip, drop empties and repeats, keep first-seen order"""
    tags: List[str] = []
    for tag in raw_tags:
        cleaned = str(tag).strip().strip('"').strip().lower()
        if cleaned and cleaned not in tags:
            tags.append(cleaned)
        if limit is not None and len(tags) >= limit:
            break
    return tags


class NullSemanticService:
    """Offline stand-in: no tags, no expansion"""

    def tag_image(self, raster: Image.Image) -> List[str]:
        return []

    def expand(self, query: str, candidate_tags: Iterable[str]) -> List[str]:
        return []


class GeminiSemanticService:
    """
    Tagging and query expansion backed by the Gemini generateContent API.

    Both public calls fail soft: timeouts, HTTP errors and malformed replies
    are logged and turned into an empty list.
    """

    def __init__(self,
                 api_key: str,
                 model: str = "gemini-2.0-flash",
                 base_url: str = "https://generativelanguage.googleapis.com/v1beta",
                 timeout: float = 20.0,
                 max_tags: int = 5):
        self.model = model
        self.max_tags = max_tags
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"x-goog-api-key": api_key},
        )

    @classmethod
    def from_config(cls, semantic_config) -> Optional['GeminiSemanticService']:
        """Build the service from SemanticConfig, or None if no key is set"""
        api_key = os.environ.get(semantic_config.api_key_env)
        if not semantic_config.enabled or not api_key:
            return None
        return cls(
            api_key=api_key,
            model=semantic_config.model,
            base_url=semantic_config.base_url,
            timeout=semantic_config.timeout_seconds,
            max_tags=semantic_config.max_tags,
        )

    def close(self):
        self._http.close()

    def tag_image(self, raster: Image.Image) -> List[str]:
        """Return up to max_tags lowercase keywords for the raster"""
        try:
            text = self._generate({
                "contents": [{
                    "parts": [
                        {"inline_data": {"mime_type": "image/jpeg",
                                         "data": self._encode_raster(raster)}},
                        {"text": TAG_PROMPT.format(max_tags=self.max_tags)},
                    ]
                }]
            })
        except ExternalServiceError as e:
            logger.warning("Semantic tagging failed: %s", e)
            return []

        return normalize_tags(text.split(','), limit=self.max_tags)

    def expand(self, query: str, candidate_tags: Iterable[str]) -> List[str]:
        """Return the candidate tags judged relevant to the query intent"""
        candidates = list(candidate_tags)
        if not candidates:
            return []

        try:
            text = self._generate({
                "contents": [{
                    "parts": [{"text": EXPAND_PROMPT.format(
                        query=query, keywords=", ".join(candidates))}]
                }],
                "generationConfig": {
                    "responseMimeType": "application/json",
                    "responseSchema": {"type": "ARRAY", "items": {"type": "STRING"}},
                },
            })
            keywords = json.loads(text or "[]")
        except ExternalServiceError as e:
            logger.warning("Semantic search failed: %s", e)
            return []
        except json.JSONDecodeError as e:
            logger.warning("Semantic search returned invalid JSON: %s", e)
            return []

        if not isinstance(keywords, list):
            logger.warning("Semantic search returned %s, expected a list",
                           type(keywords).__name__)
            return []

        return normalize_tags(keywords)

    def _generate(self, payload: dict) -> str:
        """POST a generateContent request and return the first text part"""
        try:
            response = self._http.post(f"/models/{self.model}:generateContent", json=payload)
            response.raise_for_status()
            body = response.json()
            parts = body["candidates"][0]["content"]["parts"]
            return "".join(part.get("text", "") for part in parts)
        except httpx.TimeoutException as e:
            raise ExternalServiceError(f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(str(e)) from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError(f"unexpected response: {e}") from e

    @staticmethod
    def _encode_raster(raster: Image.Image) -> str:
        buffer = io.BytesIO()
        raster.convert('RGB').save(buffer, format="JPEG", quality=80)
        return base64.b64encode(buffer.getvalue()).decode('ascii')
