from __future__ import annotations
"""
Preprocessing utilities for target images:
- Decode uploaded bytes (cv2.imdecode)
- BGR -> luminance RasterImage
- Working-scale normalization before feature extraction
- Preview thumbnails for the project dashboard
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from common.errors import InvalidParameter
from common.types import RasterImage
from target_compiler.resample import resize


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (JPEG/PNG/WebP...) to a BGR uint8 array."""
    if not data:
        raise InvalidParameter("empty image file")
    arr = np.frombuffer(data, dtype=np.uint8)
    bgr = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if bgr is None or bgr.size == 0:
        raise InvalidParameter("could not decode image data")
    return bgr


def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        g = img
    elif img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    else:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def to_raster(img: np.ndarray) -> RasterImage:
    return RasterImage.from_array(to_gray_u8(img))


def working_scale(width: int, height: int, max_dimension: Optional[int]) -> float:
    """Downscale-only factor that fits the longer side into max_dimension."""
    if not max_dimension:
        return 1.0
    longest = max(int(width), int(height))
    if longest <= int(max_dimension):
        return 1.0
    return float(max_dimension) / float(longest)


def normalize(image: RasterImage, max_dimension: Optional[int]) -> Tuple[RasterImage, float]:
    """
    Returns (working_image, scale). Images already within max_dimension are
    returned unchanged with scale 1.0.
    """
    s = working_scale(image.width, image.height, max_dimension)
    if s == 1.0:
        return image, 1.0
    return resize(image, s), s


def resize_keep(img: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    w, h = int(size[0]), int(size[1])
    return cv2.resize(img, (w, h), interpolation=cv2.INTER_AREA)


def make_preview(bgr: np.ndarray, box: Tuple[int, int] = (300, 300)) -> bytes:
    """PNG thumbnail that fits inside `box` (aspect preserved, never upscaled)."""
    H, W = bgr.shape[:2]
    k = min(box[0] / float(W), box[1] / float(H), 1.0)
    size = (max(1, int(round(W * k))), max(1, int(round(H * k))))
    thumb = resize_keep(bgr, size) if size != (W, H) else bgr
    ok, buf = cv2.imencode(".png", thumb)
    if not ok:
        raise InvalidParameter("failed to encode preview image")
    return buf.tobytes()


def reencode_jpeg(data: bytes, quality: int = 85) -> Optional[bytes]:
    """Re-encode image bytes as JPEG; None if the bytes are not a decodable image."""
    arr = np.frombuffer(data, dtype=np.uint8)
    bgr = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if bgr is None:
        return None
    ok, buf = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    return buf.tobytes() if ok else None
