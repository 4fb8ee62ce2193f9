"""
Uploader — reliable asset transfer to object storage

- Presigned credential negotiation with the backend (/api/presigned-upload)
- Direct PUT to storage with long timeout and cancellation between chunks
- Fixed-backoff retry, then multipart fallback through the backend (/api/upload)
"""
from .orchestrator import UploadOrchestrator

__all__ = ["UploadOrchestrator"]
