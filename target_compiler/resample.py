from __future__ import annotations
"""
Deterministic bilinear resampling for luminance images.

Only plain arithmetic is used (no platform trig/transcendental calls), so the
same input and scale always produce the same samples.
"""

import math
from typing import List, Sequence

import numpy as np

from common.errors import InvalidParameter
from common.types import RasterImage


def output_size(width: int, height: int, scale: float) -> tuple[int, int]:
    """(floor(width*scale), floor(height*scale)); raises on bad scale or empty result."""
    try:
        s = float(scale)
    except (TypeError, ValueError):
        raise InvalidParameter(f"scale must be a number, got {scale!r}") from None
    if not math.isfinite(s) or s <= 0.0:
        raise InvalidParameter(f"scale must be a finite number > 0, got {scale!r}")
    w = int(math.floor(width * s))
    h = int(math.floor(height * s))
    if w < 1 or h < 1:
        raise InvalidParameter(f"scale {s} shrinks {width}x{height} to an empty image ({w}x{h})")
    return w, h


def resize(image: RasterImage, scale: float) -> RasterImage:
    """
    Bilinear resize by `scale`.

    For each destination pixel the source coordinate is (x/scale, y/scale);
    the four neighbours (clamped to the source bounds) are blended with
    weights (1-xw)(1-yw), xw(1-yw), (1-xw)yw, xw*yw and rounded half-up.
    scale == 1 reproduces the source exactly.
    """
    W, H = image.width, image.height
    new_w, new_h = output_size(W, H, scale)
    s = float(scale)

    sx = np.arange(new_w, dtype=np.float64) / s
    sy = np.arange(new_h, dtype=np.float64) / s
    fx = np.floor(sx)
    fy = np.floor(sy)
    xw = (sx - fx)[None, :]
    yw = (sy - fy)[:, None]

    x1 = np.minimum(fx.astype(np.intp), W - 1)
    y1 = np.minimum(fy.astype(np.intp), H - 1)
    x2 = np.minimum(np.ceil(sx).astype(np.intp), W - 1)
    y2 = np.minimum(np.ceil(sy).astype(np.intp), H - 1)

    # gather from the uint8 source, widen only the samples
    src = image.pixels
    p1 = src[y1[:, None], x1[None, :]].astype(np.float64)
    p2 = src[y1[:, None], x2[None, :]].astype(np.float64)
    p3 = src[y2[:, None], x1[None, :]].astype(np.float64)
    p4 = src[y2[:, None], x2[None, :]].astype(np.float64)

    val = (
        p1 * (1.0 - xw) * (1.0 - yw)
        + p2 * xw * (1.0 - yw)
        + p3 * (1.0 - xw) * yw
        + p4 * xw * yw
    )
    out = np.clip(np.floor(val + 0.5), 0, 255).astype(np.uint8)
    return RasterImage(width=new_w, height=new_h, pixels=out)


def tracking_scales(width: int, height: int, sizes: Sequence[int] = (256, 128)) -> List[float]:
    """
    Scales that bring the shorter side of a width x height image to each of
    `sizes` (the multi-resolution tracking image list).
    """
    min_dim = min(int(width), int(height))
    if min_dim <= 0:
        raise InvalidParameter("image dimensions must be > 0")
    return [float(sz) / float(min_dim) for sz in sizes if int(sz) > 0]
