from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import time

import numpy as np

from common.errors import CredentialError, InvalidParameter


DEFAULT_POINT_CAP = 200


@dataclass(slots=True, frozen=True)
class RasterImage:
    """
    Single-channel (luminance) image.

    Attributes:
        width, height: image dimensions in pixels (> 0).
        pixels: np.ndarray of shape (H, W), dtype uint8. Marked read-only.
    """
    width: int
    height: int
    pixels: np.ndarray = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise InvalidParameter(f"image dimensions must be > 0, got {self.width}x{self.height}")
        px = np.asarray(self.pixels)
        if px.ndim != 2:
            raise InvalidParameter("pixels must be a single-channel (H, W) array; convert to luminance first")
        if px.shape != (int(self.height), int(self.width)):
            raise InvalidParameter(
                f"pixel buffer shape {px.shape} does not match {self.width}x{self.height}"
            )
        if px.dtype != np.uint8:
            px = np.clip(px, 0, 255).astype(np.uint8)
        else:
            px = px.copy()
        px.setflags(write=False)
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))
        object.__setattr__(self, "pixels", px)

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "RasterImage":
        a = np.asarray(arr)
        if a.ndim != 2:
            raise InvalidParameter("expected a 2D luminance array")
        return cls(width=a.shape[1], height=a.shape[0], pixels=a)


@dataclass(slots=True, frozen=True)
class FeaturePoint:
    x: int
    y: int
    score: float

    def __post_init__(self) -> None:
        if self.score < 0:
            raise InvalidParameter(f"score must be >= 0, got {self.score}")

    def to_dict(self) -> Dict[str, Any]:
        return {"x": int(self.x), "y": int(self.y), "score": float(self.score)}


def _check_points(points: Tuple[FeaturePoint, ...], width: int, height: int, cap: Optional[int]) -> None:
    if cap is not None and len(points) > cap:
        raise InvalidParameter(f"{len(points)} points exceed cap {cap}")
    for p in points:
        if not (0 <= p.x < width and 0 <= p.y < height):
            raise InvalidParameter(f"point ({p.x},{p.y}) outside {width}x{height}")


@dataclass(slots=True, frozen=True)
class TrackingSet:
    """Feature points extracted from one down-scaled tracking image."""
    scale: float
    width: int
    height: int
    points: Tuple[FeaturePoint, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "points", tuple(self.points))
        _check_points(self.points, self.width, self.height, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scale": float(self.scale),
            "width": int(self.width),
            "height": int(self.height),
            "points": [p.to_dict() for p in self.points],
        }


@dataclass(slots=True, frozen=True)
class ImageDescriptor:
    """
    One target image's trackable features.

    Attributes:
        width, height: dimensions of the image the matching points refer to.
        points: FeaturePoints, descending score, at most `cap`.
        scale: descriptor image size relative to the decoded source image.
        tracking: optional multi-resolution tracking sets.
    """
    width: int
    height: int
    points: Tuple[FeaturePoint, ...] = ()
    scale: float = 1.0
    tracking: Tuple[TrackingSet, ...] = ()
    cap: int = field(default=DEFAULT_POINT_CAP, compare=False)

    def __post_init__(self) -> None:
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise InvalidParameter("descriptor dimensions must be > 0")
        object.__setattr__(self, "points", tuple(self.points))
        object.__setattr__(self, "tracking", tuple(self.tracking))
        _check_points(self.points, self.width, self.height, self.cap)

    @property
    def dimensions(self) -> Dict[str, int]:
        return {"width": int(self.width), "height": int(self.height)}


@dataclass(slots=True, frozen=True)
class CompiledArtifact:
    """
    Opaque compiled descriptor bytes.

    fmt is "json" for the native path and "external" for the delegated
    library's own binary format. placeholder=True marks an artifact that
    carries no tracking data.
    """
    data: bytes
    fmt: str = "json"
    placeholder: bool = False
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    def to_meta(self) -> Dict[str, Any]:
        return {"fmt": self.fmt, "bytes": self.size, "placeholder": self.placeholder}


@dataclass(slots=True)
class UploadSession:
    """
    One presigned write credential for one file. Consumed exactly once.

    Attributes:
        url: storage endpoint to PUT to
        fields: extra headers/form fields required by the storage endpoint
        public_url: URL the object will be readable at after a successful write
        expires_at: unix epoch seconds; None if the backend did not say
    """
    file_name: str
    content_type: str
    url: str
    fields: Dict[str, str]
    public_url: str
    key: Optional[str] = None
    expires_at: Optional[float] = None
    _consumed: bool = field(default=False, repr=False)

    @classmethod
    def from_response(cls, file_name: str, content_type: str, payload: Dict[str, Any]) -> "UploadSession":
        if not isinstance(payload, dict):
            raise CredentialError("credential response is not a JSON object")
        url = payload.get("url")
        public_url = payload.get("publicUrl")
        if not public_url and isinstance(payload.get("publicUrls"), dict):
            public_url = payload["publicUrls"].get("url")
        if not url or not public_url:
            raise CredentialError("credential response missing url/publicUrl")
        fields = payload.get("fields") or {}
        if not isinstance(fields, dict):
            raise CredentialError("credential fields must be an object")
        expires = payload.get("expiresAt")
        return cls(
            file_name=file_name,
            content_type=content_type,
            url=str(url),
            fields={str(k): str(v) for k, v in fields.items()},
            public_url=str(public_url),
            key=payload.get("key"),
            expires_at=float(expires) if expires is not None else None,
        )

    @property
    def consumed(self) -> bool:
        return self._consumed

    def expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def consume(self) -> None:
        if self._consumed:
            raise CredentialError(f"upload credential for {self.file_name} already used")
        if self.expired():
            raise CredentialError(f"upload credential for {self.file_name} expired")
        self._consumed = True
