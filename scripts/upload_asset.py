#!/usr/bin/env python3
"""
Upload one asset (target image, model, video, compiled .mind) through the
presigned/direct/fallback pipeline and print its public URL.

Usage:
    python scripts/upload_asset.py path/to/model.glb --config config/params.yaml
    python scripts/upload_asset.py target.mind --content-type application/octet-stream
"""

import argparse
import mimetypes
import os
import signal
import sys
import threading
from pathlib import Path

# Add the project root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.config import load_params
from common.errors import AbortError, WebARError
from common.logging_setup import get_logger, setup_logging
from uploader.orchestrator import UploadOrchestrator


log = get_logger("upload_asset")

EXTRA_TYPES = {
    ".glb": "model/gltf-binary",
    ".gltf": "model/gltf+json",
    ".mind": "application/octet-stream",
}


def guess_content_type(path: Path) -> str:
    ext = path.suffix.lower()
    if ext in EXTRA_TYPES:
        return EXTRA_TYPES[ext]
    ct, _ = mimetypes.guess_type(path.name)
    return ct or "application/octet-stream"


def main() -> int:
    ap = argparse.ArgumentParser(description="Upload a file to WebAR storage")
    ap.add_argument("file")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--content-type", default=None)
    ap.add_argument("--api", default=None, help="Override upload.api_base_url")
    args = ap.parse_args()

    P = load_params(args.config)
    setup_logging(P.log_level)
    if args.api:
        P.upload.api_base_url = args.api.rstrip("/")

    path = Path(args.file)
    content_type = args.content_type or guess_content_type(path)

    cancel = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    try:
        url = UploadOrchestrator(P.upload).upload(path.read_bytes(), path.name, content_type, cancel=cancel)
    except AbortError as e:
        log.error("Upload aborted", extra={"extra": {"file": str(path), "error": str(e)}})
        return 130
    except (OSError, WebARError) as e:
        log.error("Upload failed", extra={"extra": {"file": str(path), "error": str(e)}})
        return 1
    print(url)
    return 0


if __name__ == "__main__":
    sys.exit(main())
