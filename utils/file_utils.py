"""
File operation utilities
"""

import mimetypes
from pathlib import Path

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.tiff', '.tif', '.webp'}


def is_image_name(name: str) -> bool:
    """Extension or guessed MIME type says this is an image"""
    suffix = Path(name).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return True
    mime, _ = mimetypes.guess_type(name)
    return bool(mime and mime.startswith('image/'))


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"
