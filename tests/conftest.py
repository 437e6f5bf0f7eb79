# tests/conftest.py

import cv2
import numpy as np
import pytest


def draw_scene_a() -> np.ndarray:
    """Horizontal gradient with a bright box and a dark disc (400x300)"""
    gradient = np.linspace(40, 200, 400, dtype=np.float32)
    img = np.zeros((300, 400, 3), dtype=np.uint8)
    img[:, :, 0] = gradient.astype(np.uint8)
    img[:, :, 1] = (gradient * 0.8 + 20).astype(np.uint8)
    img[:, :, 2] = (220 - gradient * 0.5).astype(np.uint8)
    cv2.rectangle(img, (50, 40), (170, 140), (215, 215, 215), -1)
    cv2.circle(img, (300, 200), 60, (35, 35, 35), -1)
    return img


def draw_scene_b() -> np.ndarray:
    """Horizontal stripes with a mid-grey box in the lower right (400x300)"""
    img = np.zeros((300, 400, 3), dtype=np.uint8)
    for i, y in enumerate(range(0, 300, 75)):
        value = 60 if i % 2 == 0 else 190
        img[y:y + 75, :] = (value, value - 20, value + 10)
    cv2.rectangle(img, (260, 180), (380, 280), (120, 120, 120), -1)
    return img


def encode(img: np.ndarray, ext: str = ".png", quality: int = 95) -> bytes:
    params = [cv2.IMWRITE_JPEG_QUALITY, quality] if ext in (".jpg", ".jpeg") else []
    ok, buffer = cv2.imencode(ext, img, params)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def scene_a():
    return draw_scene_a()


@pytest.fixture
def scene_b():
    return draw_scene_b()


@pytest.fixture
def encoder():
    return encode


@pytest.fixture
def noise_images():
    """Small random images, one per index, reproducible"""
    rng = np.random.default_rng(7)
    return [rng.integers(0, 255, (48, 64, 3), dtype=np.uint8) for _ in range(10)]
