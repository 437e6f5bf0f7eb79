# core/file_source.py

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional

from utils.file_utils import is_image_name

logger = logging.getLogger(__name__)


@dataclass
class SourceFile:
    """A discovered image file; content is read on demand"""
    file_name: str
    relative_path: str
    file_size: int
    last_modified: float
    loader: Callable[[], bytes]

    def read_bytes(self) -> bytes:
        return self.loader()

    @classmethod
    def from_bytes(cls, data: bytes, file_name: str,
                   relative_path: Optional[str] = None,
                   last_modified: float = 0.0) -> 'SourceFile':
        return cls(
            file_name=file_name,
            relative_path=relative_path or file_name,
            file_size=len(data),
            last_modified=last_modified,
            loader=lambda: data,
        )


class FileEntry(ABC):
    """Node of a browsable file tree"""

    name: str

    @property
    @abstractmethod
    def is_directory(self) -> bool:
        ...


class File(FileEntry):
    """Leaf entry that can be opened as a SourceFile"""

    @property
    def is_directory(self) -> bool:
        return False

    @abstractmethod
    def open(self, relative_path: str) -> SourceFile:
        ...


class Directory(FileEntry):
    """Entry with children"""

    @property
    def is_directory(self) -> bool:
        return True

    @abstractmethod
    def children(self) -> Iterable[FileEntry]:
        ...


class LocalFile(File):
    def __init__(self, path: Path):
        self.path = path
        self.name = path.name

    def open(self, relative_path: str) -> SourceFile:
        stat = self.path.stat()
        return SourceFile(
            file_name=self.name,
            relative_path=relative_path,
            file_size=stat.st_size,
            last_modified=stat.st_mtime,
            loader=self.path.read_bytes,
        )


class LocalDirectory(Directory):
    def __init__(self, path: Path):
        self.path = Path(path)
        self.name = self.path.name

    def children(self) -> Iterable[FileEntry]:
        for child in sorted(self.path.iterdir()):
            if child.is_dir():
                yield LocalDirectory(child)
            elif child.is_file():
                yield LocalFile(child)


def walk_images(root: Directory) -> Iterator[SourceFile]:
    """
    Depth-first walk yielding every image file below root.

    Relative paths start with the root's name, the way a browser folder
    picker reports them. Unreadable directories are logged and skipped.
    """
    stack = [(root, root.name)]
    while stack:
        directory, prefix = stack.pop()
        try:
            entries = list(directory.children())
        except OSError as e:
            logger.warning("Cannot list %s: %s", prefix, e)
            continue

        subdirectories = []
        for entry in entries:
            relative_path = f"{prefix}/{entry.name}" if prefix else entry.name
            if entry.is_directory:
                subdirectories.append((entry, relative_path))
            elif is_image_name(entry.name):
                try:
                    yield entry.open(relative_path)
                except OSError as e:
                    logger.warning("Cannot stat %s: %s", relative_path, e)

        # Reversed so siblings are visited in listing order
        stack.extend(reversed(subdirectories))


def get_image_files(directory: str) -> List[SourceFile]:
    """All image files under a local directory, recursively"""
    return list(walk_images(LocalDirectory(Path(directory))))
