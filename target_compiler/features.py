from __future__ import annotations
"""
Feature extraction for target images.

extract() samples a fixed-stride grid over the image interior and scores each
sample with a first-order edge-strength heuristic:

    score = |c - right| + |c - below|

where `right` and `below` are the samples one stride away. This is a
lightweight proxy for a real corner/descriptor detector: it is NOT rotation
or scale invariant, and the points only carry location + score.
"""

from typing import List

import numpy as np

from common.errors import InvalidParameter
from common.types import DEFAULT_POINT_CAP, FeaturePoint, RasterImage


DEFAULT_STRIDE = 10
DEFAULT_THRESHOLD = 30.0


def score_grid(image: RasterImage, stride: int = DEFAULT_STRIDE):
    """
    Returns (xs, ys, scores) for every interior grid sample in row-major order.
    Samples closer than `stride` to any border are never produced.
    """
    if int(stride) < 1:
        raise InvalidParameter(f"stride must be >= 1, got {stride}")
    s = int(stride)
    W, H = image.width, image.height
    xs = np.arange(s, W - s, s, dtype=np.intp)
    ys = np.arange(s, H - s, s, dtype=np.intp)
    if xs.size == 0 or ys.size == 0:
        empty = np.zeros((0,), dtype=np.intp)
        return empty, empty, np.zeros((0,), dtype=np.float64)

    px = image.pixels.astype(np.int32)
    c = px[ys[:, None], xs[None, :]]
    right = px[ys[:, None], (xs + s)[None, :]]
    below = px[(ys + s)[:, None], xs[None, :]]
    scores = (np.abs(c - right) + np.abs(c - below)).astype(np.float64)

    gx, gy = np.meshgrid(xs, ys)
    return gx.ravel(), gy.ravel(), scores.ravel()


def extract(
    image: RasterImage,
    cap: int = DEFAULT_POINT_CAP,
    *,
    stride: int = DEFAULT_STRIDE,
    threshold: float = DEFAULT_THRESHOLD,
) -> List[FeaturePoint]:
    """
    Ranked, bounded feature points.

    Points scoring <= threshold are dropped; the rest are sorted by descending
    score (stable w.r.t. scan order) and truncated to `cap`. An empty list is a
    valid result and signals a low-texture image.
    """
    if int(cap) < 0:
        raise InvalidParameter(f"cap must be >= 0, got {cap}")
    xs, ys, scores = score_grid(image, stride)
    keep = scores > float(threshold)
    xs, ys, scores = xs[keep], ys[keep], scores[keep]

    order = np.argsort(-scores, kind="stable")[: int(cap)]
    return [FeaturePoint(x=int(xs[i]), y=int(ys[i]), score=float(scores[i])) for i in order]
