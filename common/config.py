from __future__ import annotations
"""
Configuration loading.

config/params.yaml is read with yaml.safe_load; any missing file, section or
key falls back to DEFAULTS. Sections are typed into small dataclasses so the
upload state machine and the compiler can be built with short, deterministic
values in tests.
"""

import copy
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


DEFAULT_CONFIG_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "logging": {"level": "INFO"},
    "compiler": {
        "stride": 10,
        "threshold": 30.0,
        "max_points": 200,
        "max_dimension": 1024,
        "tracking_sizes": [256, 128],
        "min_feature_points": 10,
        "external_module": None,
        "allow_placeholder": False,
    },
    "upload": {
        "api_base_url": "http://127.0.0.1:8000",
        "optimize_threshold_bytes": 150 * 1024 * 1024,
        "optimize_jpeg_quality": 85,
        "credential_timeout_s": 10.0,
        "transfer_timeout_s": 300.0,
        "fallback_timeout_s": 300.0,
        "max_attempts": 2,
        "retry_delay_s": 3.0,
        "server_fallback": True,
        "chunk_size": 1024 * 1024,
    },
    "storage": {
        "root": "data/objects",
        "public_base_url": "http://127.0.0.1:8000",
        "credential_ttl_s": 1800,
        "max_upload_bytes": 200 * 1024 * 1024,
        "signing_secret": None,
    },
}


@dataclass
class CompilerSettings:
    stride: int = 10
    threshold: float = 30.0
    max_points: int = 200
    max_dimension: Optional[int] = 1024   # None disables working-scale normalization
    tracking_sizes: Tuple[int, ...] = (256, 128)
    min_feature_points: int = 10
    external_module: Optional[str] = None
    allow_placeholder: bool = False

    def __post_init__(self) -> None:
        self.tracking_sizes = tuple(int(s) for s in (self.tracking_sizes or ()))


@dataclass
class UploadSettings:
    api_base_url: str = "http://127.0.0.1:8000"
    optimize_threshold_bytes: int = 150 * 1024 * 1024
    optimize_jpeg_quality: int = 85
    credential_timeout_s: float = 10.0
    transfer_timeout_s: float = 300.0
    fallback_timeout_s: float = 300.0
    max_attempts: int = 2
    retry_delay_s: float = 3.0
    server_fallback: bool = True
    chunk_size: int = 1024 * 1024

    def __post_init__(self) -> None:
        if int(self.max_attempts) < 1:
            raise ValueError("upload.max_attempts must be >= 1")
        if float(self.retry_delay_s) < 0:
            raise ValueError("upload.retry_delay_s must be >= 0")
        if int(self.chunk_size) < 1:
            raise ValueError("upload.chunk_size must be >= 1")
        self.api_base_url = self.api_base_url.rstrip("/")


@dataclass
class StorageSettings:
    root: str = "data/objects"
    public_base_url: str = "http://127.0.0.1:8000"
    credential_ttl_s: int = 1800
    max_upload_bytes: int = 200 * 1024 * 1024
    signing_secret: Optional[str] = field(default=None, repr=False)


@dataclass
class Params:
    log_level: str
    compiler: CompilerSettings
    upload: UploadSettings
    storage: StorageSettings


def _merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (over or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _build(cls, section: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in section.items() if k in known})


def load_yaml(path: str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Raw config dict merged over DEFAULTS; DEFAULTS alone if the file is missing."""
    if not Path(path).exists():
        return copy.deepcopy(DEFAULTS)
    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return _merge(DEFAULTS, loaded)


def load_params(path: str = DEFAULT_CONFIG_PATH) -> Params:
    P = load_yaml(path)
    storage = dict(P.get("storage", {}))
    # secrets come from the environment first
    storage["signing_secret"] = os.environ.get("STORAGE_SIGNING_SECRET") or storage.get("signing_secret")
    return Params(
        log_level=str(P.get("logging", {}).get("level", "INFO")),
        compiler=_build(CompilerSettings, P.get("compiler", {})),
        upload=_build(UploadSettings, P.get("upload", {})),
        storage=_build(StorageSettings, storage),
    )
