# core/errors.py


class VisionQuestError(Exception):
    """Base class for all library errors"""


class DecodeError(VisionQuestError):
    """Image bytes could not be decoded (corrupt or unsupported format)"""


class FingerprintError(VisionQuestError):
    """Normalized raster is degenerate and cannot be fingerprinted"""


class ExternalServiceError(VisionQuestError):
    """Tagging or query-expansion call failed or timed out"""


class EmptyInputError(VisionQuestError):
    """A requested indexing batch contained no image files"""


class StoreError(VisionQuestError):
    """Persistence layer is unavailable or rejected an operation"""
