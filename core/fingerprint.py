# core/fingerprint.py

import imagehash
import numpy as np
from PIL import Image
from typing import Union

from core.errors import FingerprintError

FINGERPRINT_BITS = 64


class Fingerprint:
    """
    Fixed-length perceptual hash stored as an unsigned integer.

    Bit 0 of the bit string is the most significant bit of ``value``.
    Subtracting two fingerprints yields their Hamming distance, the same
    way ``imagehash.ImageHash`` objects behave.
    """

    __slots__ = ('value', 'bits')

    def __init__(self, value: int, bits: int = FINGERPRINT_BITS):
        if bits <= 0:
            raise ValueError("Fingerprint length must be positive")
        if value < 0 or value >> bits:
            raise ValueError(f"Value does not fit in {bits} bits")
        self.value = value
        self.bits = bits

    @classmethod
    def from_bool_array(cls, bits: np.ndarray) -> 'Fingerprint':
        """Build a fingerprint from a boolean array (row-major)"""
        flat = np.asarray(bits, dtype=bool).flatten()
        value = 0
        for bit in flat:
            value = (value << 1) | int(bit)
        return cls(value, bits=len(flat))

    @classmethod
    def from_image_hash(cls, image_hash: imagehash.ImageHash) -> 'Fingerprint':
        return cls.from_bool_array(image_hash.hash)

    @classmethod
    def from_hex(cls, hex_string: str, bits: int = FINGERPRINT_BITS) -> 'Fingerprint':
        """Parse the hex form produced by ``to_hex``"""
        digits = -(-bits // 4)
        if len(hex_string) != digits:
            raise ValueError(f"Expected {digits} hex digits, got {len(hex_string)}")
        return cls(int(hex_string, 16), bits=bits)

    @classmethod
    def from_bitstring(cls, bit_string: str) -> 'Fingerprint':
        """Parse a '0'/'1' string such as '0110...'"""
        if not bit_string or set(bit_string) - {'0', '1'}:
            raise ValueError("Bit string must be a non-empty run of 0 and 1")
        return cls(int(bit_string, 2), bits=len(bit_string))

    def to_hex(self) -> str:
        return format(self.value, f'0{-(-self.bits // 4)}x')

    def to_bitstring(self) -> str:
        return format(self.value, f'0{self.bits}b')

    def distance(self, other: 'Fingerprint') -> int:
        """Hamming distance to another fingerprint of the same length"""
        if self.bits != other.bits:
            raise ValueError(
                f"Fingerprint lengths differ: {self.bits} vs {other.bits}"
            )
        return bin(self.value ^ other.value).count('1')

    def similarity(self, other: 'Fingerprint') -> float:
        """Map Hamming distance to a [0, 1] score"""
        return 1.0 - self.distance(other) / self.bits

    def __sub__(self, other: 'Fingerprint') -> int:
        return self.distance(other)

    def __eq__(self, other):
        if not isinstance(other, Fingerprint):
            return NotImplemented
        return self.value == other.value and self.bits == other.bits

    def __hash__(self):
        return hash((self.value, self.bits))

    def __str__(self):
        return self.to_hex()

    def __repr__(self):
        return f"Fingerprint('{self.to_hex()}')"


def hamming_distance(f1: Fingerprint, f2: Fingerprint) -> int:
    """Count of differing bit positions"""
    return f1.distance(f2)


class FingerprintExtractor:
    """
    Convert a normalized raster into a 64-bit perceptual hash.

    The default ``phash`` reduces the raster to a 32x32 luminance grid, takes
    its DCT and keeps one bit per low-frequency coefficient (above or below
    the median). ``dhash`` and ``average`` are available for comparison.
    """

    HASH_FUNCTIONS = {
        'phash': imagehash.phash,
        'dhash': imagehash.dhash,
        'average': imagehash.average_hash,
    }

    def __init__(self, hash_method: str = "phash", hash_size: int = 8):
        if hash_method not in self.HASH_FUNCTIONS:
            raise ValueError(f"Unknown hash method: {hash_method}")
        self.hash_method = hash_method
        self.hash_size = hash_size

    @property
    def bit_length(self) -> int:
        return self.hash_size * self.hash_size

    def extract(self, raster: Union[Image.Image, np.ndarray]) -> Fingerprint:
        """
        Compute the fingerprint of a raster.

        Raises:
            FingerprintError: if the raster has zero area
        """
        image = self._as_image(raster)

        width, height = image.size
        if width == 0 or height == 0:
            raise FingerprintError(f"Degenerate raster of size {width}x{height}")

        hash_func = self.HASH_FUNCTIONS[self.hash_method]
        image_hash = hash_func(image, hash_size=self.hash_size)
        return Fingerprint.from_image_hash(image_hash)

    @staticmethod
    def _as_image(raster: Union[Image.Image, np.ndarray]) -> Image.Image:
        if isinstance(raster, Image.Image):
            return raster

        array = np.asarray(raster)
        if array.ndim not in (2, 3) or array.size == 0:
            raise FingerprintError(f"Degenerate raster of shape {array.shape}")
        if array.dtype != np.uint8:
            array = np.clip(array, 0, 255).astype(np.uint8)
        return Image.fromarray(array)
