from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Optional

from common.config import CompilerSettings, load_params
from common.errors import CompilationError, InvalidParameter, WebARError
from common.logging_setup import get_logger, setup_logging
from common.utils import elapsed_ms
from target_compiler.preprocess import decode_image
from target_compiler.strategies import (
    CompilationResult,
    ExternalCompilerCapability,
    NativeCompiler,
    ProgressCallback,
    detect_external_compiler,
    select_compiler,
)


log = get_logger("target_compiler")


def compile_target(
    data: bytes,
    settings: Optional[CompilerSettings] = None,
    *,
    capability: Optional[ExternalCompilerCapability] = None,
    progress: Optional[ProgressCallback] = None,
) -> CompilationResult:
    """
    Encoded image bytes -> CompilationResult.

    Empty or undecodable input raises InvalidParameter before any work is done.
    When a delegated compiler is injected and fails, the native path is used
    instead. Low-texture images are flagged, not rejected. Every result
    carries a quality evaluation, whichever compiler produced the artifact.
    """
    settings = settings or CompilerSettings()
    if not data:
        raise InvalidParameter("empty image file")
    image = decode_image(data)
    H, W = image.shape[:2]

    t0 = time.perf_counter()
    compiler = select_compiler(settings, capability)
    try:
        result = compiler.compile(image, progress)
    except CompilationError as e:
        if compiler.name == "native":
            raise
        log.warning(
            "Delegated compilation failed; using native compiler",
            extra={"extra": {"error": str(e), "width": W, "height": H}},
        )
        result = NativeCompiler(settings).compile(image, progress)
        result.warnings.insert(0, f"external compiler failed: {e}")
    if result.quality is None:
        result.quality = NativeCompiler(settings).assess(image)

    log.info(
        "Target compiled",
        extra={"extra": {
            "strategy": result.strategy,
            "width": W,
            "height": H,
            "points": result.point_count,
            "low_texture": result.low_texture,
            "quality": result.quality.score,
            "latency_ms": elapsed_ms(t0),
            **result.artifact.to_meta(),
        }},
    )
    if result.low_texture:
        log.warning("Low-texture target image", extra={"extra": {"points": result.point_count}})
    return result


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(description="Compile a target image into a tracking descriptor (.mind)")
    ap.add_argument("image", help="Target image (JPEG/PNG/WebP)")
    ap.add_argument("--out", default=None, help="Output artifact path (default: <image>.mind)")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--external-module", default=None, help="Python module providing an external Compiler")
    ap.add_argument("--upload", action="store_true", help="Upload the artifact and print its public URL")
    args = ap.parse_args(argv)

    P = load_params(args.config)
    setup_logging(P.log_level)

    src = Path(args.image)
    out = Path(args.out) if args.out else src.with_suffix(".mind")

    capability = detect_external_compiler(args.external_module or P.compiler.external_module)

    def _progress(pct: float) -> None:
        log.debug("Compilation progress", extra={"extra": {"pct": round(pct, 2)}})

    try:
        result = compile_target(src.read_bytes(), P.compiler, capability=capability, progress=_progress)
    except (OSError, WebARError) as e:
        log.error("Compilation failed", extra={"extra": {"image": str(src), "error": str(e)}})
        return 1

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(result.artifact.data)
    for w in result.warnings:
        log.warning(w)

    if args.upload:
        from uploader.orchestrator import UploadOrchestrator

        try:
            url = UploadOrchestrator(P.upload).upload(
                result.artifact.data, out.name, result.artifact.content_type
            )
        except WebARError as e:
            log.error("Artifact upload failed", extra={"extra": {"error": str(e)}})
            return 2
        print(url)
    else:
        print(str(out))
    return 0


if __name__ == "__main__":
    sys.exit(main())
