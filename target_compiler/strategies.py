from __future__ import annotations
"""
Target compilers.

Two interchangeable strategies implement TargetCompiler.compile():

- NativeCompiler: luminance -> working-scale resize -> extract() -> JSON export.
  Depends only on this package.
- DelegatedCompiler: hands the decoded image to an externally provided
  compiled-tracking library and returns that library's own binary export.

The external library is never looked up from ambient state inside the call
path: the caller detects it once (detect_external_compiler) and injects the
resulting capability into select_compiler().
"""

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol

import numpy as np

from common.config import CompilerSettings
from common.errors import CompilationError, InvalidParameter
from common.types import CompiledArtifact, ImageDescriptor, RasterImage, TrackingSet
from common.utils import clamp
from target_compiler.export import export_descriptor
from target_compiler.features import extract
from target_compiler.preprocess import normalize, to_raster
from target_compiler.quality import TargetQuality, evaluate_target
from target_compiler.resample import resize, tracking_scales


log = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass
class CompilationResult:
    artifact: CompiledArtifact
    strategy: str
    descriptor: Optional[ImageDescriptor] = None
    low_texture: bool = False
    warnings: List[str] = field(default_factory=list)
    quality: Optional[TargetQuality] = None

    @property
    def point_count(self) -> Optional[int]:
        return None if self.descriptor is None else len(self.descriptor.points)


class TargetCompiler(Protocol):
    name: str

    def compile(self, image: np.ndarray, progress: Optional[ProgressCallback] = None) -> CompilationResult:
        ...


def _report(progress: Optional[ProgressCallback], pct: float) -> None:
    if progress is not None:
        progress(clamp(pct, 0.0, 100.0))


# -----------------------------
# Native
# -----------------------------

class NativeCompiler:
    name = "native"

    def __init__(self, settings: Optional[CompilerSettings] = None):
        self.settings = settings or CompilerSettings()

    def describe(self, image: np.ndarray, progress: Optional[ProgressCallback] = None) -> ImageDescriptor:
        """Build the in-memory ImageDescriptor for a decoded (BGR or gray) image."""
        return self.describe_raster(to_raster(image), progress)

    def assess(self, image: np.ndarray) -> TargetQuality:
        """Quality score for a decoded image without building a descriptor."""
        S = self.settings
        raster = to_raster(image)
        work, _ = normalize(raster, S.max_dimension)
        points = extract(work, S.max_points, stride=S.stride, threshold=S.threshold)
        return evaluate_target(raster, points, S.max_points)

    def describe_raster(self, raster: RasterImage, progress: Optional[ProgressCallback] = None) -> ImageDescriptor:
        S = self.settings
        _report(progress, 0.0)
        work, scale = normalize(raster, S.max_dimension)
        points = extract(work, S.max_points, stride=S.stride, threshold=S.threshold)
        _report(progress, 40.0)

        tracking: List[TrackingSet] = []
        scales = tracking_scales(raster.width, raster.height, S.tracking_sizes) if S.tracking_sizes else []
        for i, ts in enumerate(scales):
            try:
                level = resize(raster, ts)
            except InvalidParameter:
                log.debug("Skipping tracking scale", extra={"extra": {"scale": ts}})
                continue
            tracking.append(
                TrackingSet(
                    scale=ts,
                    width=level.width,
                    height=level.height,
                    points=tuple(extract(level, S.max_points, stride=S.stride, threshold=S.threshold)),
                )
            )
            _report(progress, 40.0 + 50.0 * (i + 1) / len(scales))

        return ImageDescriptor(
            width=work.width,
            height=work.height,
            points=tuple(points),
            scale=scale,
            tracking=tuple(tracking),
            cap=S.max_points,
        )

    def compile(self, image: np.ndarray, progress: Optional[ProgressCallback] = None) -> CompilationResult:
        raster = to_raster(image)
        descriptor = self.describe_raster(raster, progress)
        quality = evaluate_target(raster, descriptor.points, self.settings.max_points)
        artifact = export_descriptor(descriptor, allow_placeholder=self.settings.allow_placeholder)
        _report(progress, 100.0)
        low = len(descriptor.points) < int(self.settings.min_feature_points)
        warnings = []
        if low:
            warnings.append(
                f"low-texture target: {len(descriptor.points)} feature points "
                f"(< {self.settings.min_feature_points})"
            )
        if artifact.placeholder:
            warnings.append("placeholder artifact emitted; it contains no tracking data")
        return CompilationResult(
            artifact=artifact,
            strategy=self.name,
            descriptor=descriptor,
            low_texture=low,
            warnings=warnings,
            quality=quality,
        )


# -----------------------------
# Delegated (external library)
# -----------------------------

@dataclass(frozen=True)
class ExternalCompilerCapability:
    """
    A loaded compiled-tracking library.

    factory() must return an object exposing
        compile_image_targets(images: list, progress: Callable[[float], None]) -> Any
        export_data() -> bytes-like
    """
    name: str
    factory: Callable[[], Any]


def detect_external_compiler(module_name: Optional[str]) -> Optional[ExternalCompilerCapability]:
    """Import `module_name` and return its Compiler as a capability, or None if unavailable."""
    if not module_name:
        return None
    try:
        mod = importlib.import_module(module_name)
    except ImportError as e:
        log.info("External compiler not available", extra={"extra": {"module": module_name, "error": str(e)}})
        return None
    factory = getattr(mod, "Compiler", None)
    if not callable(factory):
        log.warning("External compiler module has no Compiler", extra={"extra": {"module": module_name}})
        return None
    return ExternalCompilerCapability(name=module_name, factory=factory)


class DelegatedCompiler:
    name = "delegated"

    def __init__(self, capability: ExternalCompilerCapability):
        self.capability = capability

    def compile(self, image: np.ndarray, progress: Optional[ProgressCallback] = None) -> CompilationResult:
        def _forward(pct: float) -> None:
            _report(progress, float(pct))

        try:
            compiler = self.capability.factory()
            compiler.compile_image_targets([image], _forward)
            data = compiler.export_data()
        except Exception as e:
            raise CompilationError(f"external compiler '{self.capability.name}' failed: {e}") from e
        if not data:
            raise CompilationError(f"external compiler '{self.capability.name}' exported no data")
        _report(progress, 100.0)
        artifact = CompiledArtifact(data=bytes(data), fmt="external", placeholder=False)
        return CompilationResult(artifact=artifact, strategy=self.name)


def select_compiler(
    settings: Optional[CompilerSettings] = None,
    capability: Optional[ExternalCompilerCapability] = None,
) -> TargetCompiler:
    if capability is not None:
        return DelegatedCompiler(capability)
    return NativeCompiler(settings)
