from __future__ import annotations
"""
Native descriptor artifact ("mind file" surrogate).

Schema (UTF-8 JSON):
    {
      "version": 1,
      "imageTargets": [
        {
          "dimensions": {"width": int, "height": int},
          "scale": float,
          "matchingData": {"points": [{"x": int, "y": int, "score": float}, ...]},
          "trackingData": [{"scale", "width", "height", "points": [...]}, ...]
        }
      ]
    }

A placeholder artifact carries "placeholder": true and no targets. It is only
ever produced when the caller opts in with allow_placeholder=True.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Sequence, Union

from common.errors import CompilationError
from common.types import CompiledArtifact, FeaturePoint, ImageDescriptor, TrackingSet


log = logging.getLogger(__name__)

SCHEMA_VERSION = 1
JSON_CONTENT_TYPE = "application/json"


def _target_dict(d: ImageDescriptor) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "dimensions": d.dimensions,
        "scale": float(d.scale),
        "matchingData": {"points": [p.to_dict() for p in d.points]},
    }
    if d.tracking:
        out["trackingData"] = [t.to_dict() for t in d.tracking]
    return out


def _dumps(doc: Dict[str, Any]) -> bytes:
    return json.dumps(doc, allow_nan=False, sort_keys=True, separators=(",", ":")).encode("utf-8")


def placeholder_artifact(reason: str) -> CompiledArtifact:
    doc = {"version": SCHEMA_VERSION, "placeholder": True, "reason": str(reason), "imageTargets": []}
    return CompiledArtifact(data=_dumps(doc), fmt="json", placeholder=True, content_type=JSON_CONTENT_TYPE)


def export_descriptor(
    descriptors: Union[ImageDescriptor, Sequence[ImageDescriptor]],
    *,
    allow_placeholder: bool = False,
) -> CompiledArtifact:
    """
    Serialize one or more descriptors to a native JSON artifact.

    Serialization failure raises CompilationError unless allow_placeholder is
    set, in which case a marked placeholder artifact is returned instead.
    """
    items: List[ImageDescriptor] = [descriptors] if isinstance(descriptors, ImageDescriptor) else list(descriptors)
    if not items:
        raise CompilationError("nothing to export: no image descriptors")
    try:
        doc = {"version": SCHEMA_VERSION, "imageTargets": [_target_dict(d) for d in items]}
        data = _dumps(doc)
    except (TypeError, ValueError) as e:
        if not allow_placeholder:
            raise CompilationError(f"descriptor serialization failed: {e}") from e
        log.warning(
            "Descriptor serialization failed; emitting placeholder artifact",
            extra={"extra": {"error": str(e), "targets": len(items)}},
        )
        return placeholder_artifact(str(e))
    return CompiledArtifact(data=data, fmt="json", placeholder=False, content_type=JSON_CONTENT_TYPE)


def _points(raw: Iterable[Dict[str, Any]]) -> List[FeaturePoint]:
    return [FeaturePoint(x=int(p["x"]), y=int(p["y"]), score=float(p["score"])) for p in raw]


def decode_artifact(data: bytes) -> List[ImageDescriptor]:
    """Parse a native artifact back into ImageDescriptors. Placeholders are rejected."""
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise CompilationError(f"artifact is not native JSON: {e}") from e
    if not isinstance(doc, dict):
        raise CompilationError("artifact root must be an object")
    if doc.get("placeholder"):
        raise CompilationError(f"placeholder artifact carries no tracking data: {doc.get('reason', '')}")
    try:
        out: List[ImageDescriptor] = []
        for t in doc["imageTargets"]:
            dims = t["dimensions"]
            tracking = tuple(
                TrackingSet(
                    scale=float(ts["scale"]),
                    width=int(ts["width"]),
                    height=int(ts["height"]),
                    points=tuple(_points(ts["points"])),
                )
                for ts in t.get("trackingData", [])
            )
            pts = _points(t["matchingData"]["points"])
            out.append(
                ImageDescriptor(
                    width=int(dims["width"]),
                    height=int(dims["height"]),
                    points=tuple(pts),
                    scale=float(t.get("scale", 1.0)),
                    tracking=tracking,
                    cap=max(len(pts), 1),
                )
            )
    except (KeyError, TypeError) as e:
        raise CompilationError(f"artifact missing field: {e}") from e
    return out
