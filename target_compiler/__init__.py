# FILE: target_compiler/__init__.py
"""
Target Compiler — image target -> tracking descriptor ("mind file")

This package provides:
- Deterministic bilinear resampling of luminance images
- Stride-grid contrast feature extraction (ranked, capped)
- Native JSON descriptor export / decode
- Target-image quality scoring (contrast, features, resolution, aspect)
- Native and delegated (external library) compiler strategies

Entry point:
    python -m target_compiler.pipeline target.jpg --out target.mind --config config/params.yaml
"""
from .pipeline import compile_target

__all__ = ["compile_target"]
