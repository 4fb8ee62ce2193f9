from __future__ import annotations
"""
Target-image quality evaluation.

A 0-100 score telling the user how well an image is likely to track, built
from four metrics (each 0-100):

    contrast    luminance standard deviation / 60, capped
    features    surviving feature points relative to the point cap
    resolution  pixel count against 1024x768 (80 at exactly that size)
    balance     100 for aspect ratios strictly between 1:2 and 2:1, else 50

Weights: contrast 0.30, features 0.35, resolution 0.20, balance 0.15.
Everything is computed from the image and its extracted points, so the same
image always gets the same score.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np

from common.types import DEFAULT_POINT_CAP, FeaturePoint, RasterImage


WEIGHTS = {"contrast": 0.30, "features": 0.35, "resolution": 0.20, "balance": 0.15}

REFERENCE_PIXELS = 1024 * 768
CONTRAST_STD = 60.0

TIERS = [
    (30, "Poor", "Poor image quality. Choose an image with more distinct features and better contrast."),
    (60, "Average", "Average image quality. This may work but consider using an image with more distinct features."),
    (80, "Good", "Good image quality. This should work well for AR tracking."),
    (101, "Excellent", "Excellent image quality. This image has ideal characteristics for AR tracking."),
]


@dataclass
class TargetQuality:
    score: int
    rating: str
    feature_count: int
    metrics: Dict[str, int] = field(default_factory=dict)
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "rating": self.rating,
            "featureCount": self.feature_count,
            "metrics": dict(self.metrics),
            "recommendation": self.recommendation,
        }


def contrast_metric(image: RasterImage) -> float:
    std = float(np.std(image.pixels, dtype=np.float64))
    return min(100.0, std / CONTRAST_STD * 100.0)


def resolution_metric(width: int, height: int) -> float:
    return min(100.0, (int(width) * int(height)) / float(REFERENCE_PIXELS) * 80.0)


def balance_metric(width: int, height: int) -> float:
    ratio = float(width) / float(height)
    return 100.0 if 0.5 < ratio < 2.0 else 50.0


def feature_metric(count: int, cap: int = DEFAULT_POINT_CAP) -> float:
    if int(cap) <= 0:
        return 0.0
    return min(100.0, 100.0 * int(count) / float(cap))


def evaluate_target(
    image: RasterImage,
    points: Sequence[FeaturePoint],
    cap: int = DEFAULT_POINT_CAP,
) -> TargetQuality:
    """
    Score a target image.

    Params:
        image: luminance image the user uploaded (full resolution)
        points: feature points extract() found for it
        cap: the point cap extract() ran with
    """
    metrics = {
        "contrast": contrast_metric(image),
        "features": feature_metric(len(points), cap),
        "resolution": resolution_metric(image.width, image.height),
        "balance": balance_metric(image.width, image.height),
    }
    score = int(min(100, round(sum(metrics[k] * w for k, w in WEIGHTS.items()))))

    rating, recommendation = TIERS[-1][1], TIERS[-1][2]
    for upper, name, text in TIERS:
        if score < upper:
            rating, recommendation = name, text
            break

    hints: List[str] = []
    if metrics["contrast"] < 40:
        hints.append("The image needs more contrast between elements.")
    if metrics["features"] < 50:
        hints.append("Add more distinguishable features or details to improve tracking.")
    if metrics["resolution"] < 40:
        hints.append("Consider using a higher resolution image.")
    if metrics["balance"] < 100:
        hints.append("Very wide or tall images track poorly; crop closer to a square.")

    return TargetQuality(
        score=score,
        rating=rating,
        feature_count=len(points),
        metrics={k: int(round(v)) for k, v in metrics.items()},
        recommendation=" ".join([recommendation] + hints),
    )
