# core/models.py

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from core.fingerprint import Fingerprint


@dataclass
class AssetRecord:
    """One indexed image"""
    file_name: str
    file_path: str
    file_size: int
    last_modified: float
    width: int
    height: int
    thumbnail: bytes = b""
    fingerprint: Optional[Fingerprint] = None
    tags: List[str] = field(default_factory=list)
    id: Optional[int] = None  # Assigned by the store on insert


@dataclass
class SearchResult:
    """Container for search results"""
    asset: AssetRecord
    similarity: float


@dataclass
class Cluster:
    """
    Near-duplicate group. The first member is the representative the
    other members were matched against.
    """
    members: List[AssetRecord]

    @property
    def representative(self) -> AssetRecord:
        return self.members[0]

    @property
    def duplicates(self) -> List[AssetRecord]:
        return self.members[1:]

    def __len__(self):
        return len(self.members)


class ItemState(Enum):
    """Per-file indexing state"""
    DISCOVERED = "discovered"
    NORMALIZED = "normalized"
    FINGERPRINTED = "fingerprinted"
    TAGGING_ATTEMPTED = "tagging_attempted"
    PERSISTED = "persisted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class IndexingReport:
    """Summary of one indexing run"""
    total: int = 0
    processed: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0
    tagged: int = 0
    cancelled: bool = False
    message: Optional[str] = None
    failures: List[str] = field(default_factory=list)
