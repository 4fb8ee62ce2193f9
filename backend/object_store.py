from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Optional
from urllib.parse import quote, unquote, urlparse

from common.utils import iso_now_ms, key_timestamp, safe_file_name


MODEL_EXTS = {"glb", "gltf"}
VIDEO_EXTS = {"mp4", "webm", "mov"}
IMAGE_EXTS = {"jpg", "jpeg", "png", "webp"}

META_SUFFIX = ".meta.json"


def folder_for(content_type: str, file_name: str = "") -> str:
    """Storage folder by content type, falling back to the file extension."""
    ct = (content_type or "").lower()
    ext = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    if ct.startswith("model/") or ext in MODEL_EXTS:
        return "models"
    if ct.startswith("video/") or ext in VIDEO_EXTS:
        return "videos"
    if ct.startswith("image/") or ext in IMAGE_EXTS:
        return "images"
    return "misc"


@dataclass(frozen=True)
class StoredObject:
    key: str
    data: bytes
    content_type: str
    meta: Dict


class ObjectStore:
    """
    Filesystem-backed object store.

        root/
          └─ {folder}/
              ├─ {timestamp}-{nonce}-{name}            (object bytes)
              └─ {timestamp}-{nonce}-{name}.meta.json  (content type, original name, size)

    Objects are publicly readable at {public_base_url}/storage/{key}.
    Every new_key() is unique, so storing the same file twice gives two objects.
    """

    def __init__(self, root: str = "data/objects", public_base_url: str = "http://127.0.0.1:8000"):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    # -------- public API --------

    def new_key(self, file_name: str, folder: str = "uploads") -> str:
        folder = "/".join(p for p in str(folder).strip("/").split("/") if p not in ("", ".", ".."))
        name = f"{key_timestamp()}-{secrets.token_hex(4)}-{safe_file_name(file_name)}"
        return f"{folder or 'uploads'}/{name}"

    def put(self, key: str, data: bytes, content_type: str, original_name: Optional[str] = None) -> str:
        """Write bytes under `key`; returns the public URL."""
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)
        meta = {
            "key": key,
            "content_type": content_type or "application/octet-stream",
            "original_name": original_name or PurePosixPath(key).name,
            "size": len(data),
            "uploaded_at": iso_now_ms(),
        }
        self._meta_path(key).write_text(json.dumps(meta))
        return self.public_url(key)

    def get(self, key: str) -> StoredObject:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(key)
        meta_path = self._meta_path(key)
        meta = json.loads(meta_path.read_text()) if meta_path.exists() else {}
        return StoredObject(
            key=key,
            data=path.read_bytes(),
            content_type=meta.get("content_type", "application/octet-stream"),
            meta=meta,
        )

    def exists(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except ValueError:
            return False

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/storage/{quote(key, safe='/')}"

    def key_from_url(self, url: str) -> Optional[str]:
        """Inverse of public_url(); None if the URL does not point into this store."""
        path = urlparse(url).path
        marker = "/storage/"
        idx = path.find(marker)
        if idx < 0:
            return None
        key = unquote(path[idx + len(marker):])
        return key or None

    def stats(self) -> Dict[str, int]:
        files = [p for p in self.root.rglob("*") if p.is_file() and not p.name.endswith((META_SUFFIX, ".part"))]
        return {"objects": len(files), "bytes": sum(p.stat().st_size for p in files)}

    # -------- internals --------

    def _path(self, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or PurePosixPath(key).is_absolute() or any(p in ("..", ".") for p in parts):
            raise ValueError(f"invalid object key: {key!r}")
        if parts[-1].endswith(META_SUFFIX):
            raise ValueError(f"invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    def _meta_path(self, key: str) -> Path:
        p = self._path(key)
        return p.with_name(p.name + META_SUFFIX)
