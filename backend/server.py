from __future__ import annotations

import os
from pathlib import PurePosixPath
from typing import Optional

import uvicorn
from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from backend.credentials import CredentialSigner
from backend.object_store import ObjectStore, folder_for
from common.config import Params, load_params
from common.errors import InvalidParameter
from common.logging_setup import get_logger, setup_logging
from target_compiler.pipeline import compile_target
from target_compiler.preprocess import decode_image, make_preview
from target_compiler.strategies import CompilationResult, detect_external_compiler


log = get_logger("backend")


class PresignRequest(BaseModel):
    fileName: Optional[str] = None
    contentType: Optional[str] = None
    folder: Optional[str] = None


class GenerateRequest(BaseModel):
    targetImageUrl: Optional[str] = None


def _error(status: int, error: str, detail: str = "") -> JSONResponse:
    return JSONResponse({"error": error, "detail": detail}, status_code=status)


def create_app(P: Optional[Params] = None) -> FastAPI:
    """
    Storage + compilation backend.

    Routes:
      GET  /health
      POST /api/presigned-upload     -> single-use signed PUT credential
      PUT  /storage/{key}            <- direct transfer target (signed)
      GET  /storage/{key}            -> public object bytes
      POST /api/upload               <- multipart fallback (field "file")
      POST /api/compile-mind-file    <- multipart image -> stored descriptor URL
      POST /api/process-target-image <- multipart image -> target/descriptor/preview URLs
      POST /api/generate-mind-file   <- {targetImageUrl} of a stored image
    """
    P = P or load_params(os.environ.get("WEBAR_CONFIG", "config/params.yaml"))
    setup_logging(P.log_level)

    store = ObjectStore(P.storage.root, P.storage.public_base_url)
    signer = CredentialSigner(P.storage.signing_secret, P.storage.credential_ttl_s)
    max_bytes = int(P.storage.max_upload_bytes)
    # loaded once and injected into every compilation
    capability = detect_external_compiler(P.compiler.external_module)

    app = FastAPI(title="WebAR Target & Asset API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten as needed
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _compile_and_store(image_bytes: bytes, stem: str) -> tuple[CompilationResult, str]:
        result = compile_target(image_bytes, P.compiler, capability=capability)
        key = store.new_key(f"{stem}.mind", "mind-files")
        url = store.put(key, result.artifact.data, result.artifact.content_type)
        return result, url

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "storage": store.stats(),
            "compiler": {"external": capability.name if capability else None},
        }

    @app.post("/api/presigned-upload")
    def presigned_upload(req: PresignRequest):
        if not req.fileName or not req.contentType:
            return _error(400, "missing_fields", "fileName and contentType are required")
        folder = req.folder or folder_for(req.contentType, req.fileName)
        key = store.new_key(req.fileName, folder)
        signed = signer.sign(key, req.contentType)
        public_url = store.public_url(key)
        log.info("Issued upload credential", extra={"extra": {"key": key, "content_type": req.contentType}})
        return {
            "url": signer.url_for(P.storage.public_base_url, signed),
            "fields": {"Content-Type": req.contentType},
            "key": key,
            "publicUrl": public_url,
            "publicUrls": {"url": public_url},
            "expiresAt": signed.expires,
        }

    @app.put("/storage/{key:path}")
    async def storage_put(
        key: str,
        request: Request,
        expires: int = Query(...),
        nonce: str = Query(...),
        signature: str = Query(...),
    ):
        content_type = request.headers.get("content-type", "")
        refused = signer.check(key, content_type, expires, nonce, signature)
        if refused:
            log.warning("Rejected direct upload", extra={"extra": {"key": key, "reason": refused}})
            return _error(403, "invalid_credential", refused)

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > max_bytes:
            return _error(413, "too_large", f"limit is {max_bytes} bytes")
        chunks = []
        size = 0
        async for chunk in request.stream():
            size += len(chunk)
            if size > max_bytes:
                return _error(413, "too_large", f"limit is {max_bytes} bytes")
            chunks.append(chunk)
        data = b"".join(chunks)
        if not data:
            return _error(400, "empty_body")

        # the credential is used up only once the body has been accepted
        if not signer.consume(nonce):
            log.warning("Rejected direct upload", extra={"extra": {"key": key, "reason": "already_used"}})
            return _error(403, "invalid_credential", "already_used")
        try:
            url = store.put(key, data, content_type)
        except ValueError as e:
            return _error(400, "invalid_key", str(e))
        log.info("Stored object (direct)", extra={"extra": {"key": key, "bytes": len(data)}})
        return {"url": url, "key": key}

    @app.get("/storage/{key:path}")
    def storage_get(key: str):
        try:
            obj = store.get(key)
        except (FileNotFoundError, ValueError):
            return _error(404, "not_found", key)
        return Response(content=obj.data, media_type=obj.content_type, headers={"Cache-Control": "public, max-age=60"})

    @app.post("/api/upload")
    def upload(file: UploadFile = File(...)):
        data = file.file.read()
        if not data:
            return _error(400, "empty_file")
        if len(data) > max_bytes:
            return _error(413, "too_large", f"limit is {max_bytes} bytes")
        content_type = file.content_type or "application/octet-stream"
        name = file.filename or "file"
        key = store.new_key(name, folder_for(content_type, name))
        url = store.put(key, data, content_type, original_name=name)
        log.info("Stored object (server upload)", extra={"extra": {"key": key, "bytes": len(data)}})
        return {"url": url, "originalName": name, "contentType": content_type, "size": len(data)}

    @app.post("/api/compile-mind-file")
    def compile_mind_file(image: UploadFile = File(...)):
        name = image.filename or "target"
        try:
            result, url = _compile_and_store(image.file.read(), PurePosixPath(name).stem)
        except InvalidParameter as e:
            return _error(400, "invalid_image", str(e))
        return {
            "mindFileUrl": url,
            "points": result.point_count,
            "lowTexture": result.low_texture,
            "strategy": result.strategy,
            "warnings": result.warnings,
            "quality": result.quality.to_dict(),
            "message": "Mind file compiled successfully",
        }

    @app.post("/api/process-target-image")
    def process_target_image(file: UploadFile = File(...)):
        content_type = file.content_type or ""
        if not content_type.startswith("image/"):
            return _error(400, "invalid_file_type", "only image files are accepted as targets")
        name = file.filename or "target"
        data = file.file.read()
        try:
            bgr = decode_image(data)
            result, mind_url = _compile_and_store(data, PurePosixPath(name).stem)
        except InvalidParameter as e:
            return _error(400, "invalid_image", str(e))
        target_url = store.put(store.new_key(name, "targets"), data, content_type, original_name=name)
        preview_url = store.put(
            store.new_key(f"{PurePosixPath(name).stem}.png", "previews"), make_preview(bgr), "image/png"
        )
        return {
            "targetImageUrl": target_url,
            "mindFileUrl": mind_url,
            "previewImageUrl": preview_url,
            "lowTexture": result.low_texture,
            "quality": result.quality.to_dict(),
        }

    @app.post("/api/generate-mind-file")
    def generate_mind_file(req: GenerateRequest):
        if not req.targetImageUrl:
            return _error(400, "missing_fields", "targetImageUrl is required")
        key = store.key_from_url(req.targetImageUrl)
        if key is None or not store.exists(key):
            return _error(404, "target_not_found", req.targetImageUrl)
        obj = store.get(key)
        try:
            result, url = _compile_and_store(obj.data, PurePosixPath(key).stem)
        except InvalidParameter as e:
            return _error(400, "invalid_image", str(e))
        return {"mindFileUrl": url, "lowTexture": result.low_texture, "points": result.point_count}

    return app


app = create_app()


# -------- local dev entrypoint --------
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
