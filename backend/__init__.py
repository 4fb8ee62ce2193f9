"""
Backend — storage + compilation service boundary

- Issues single-use signed PUT credentials (/api/presigned-upload)
- Filesystem object store served at /storage/{key}
- Multipart fallback upload (/api/upload)
- Server-side target compilation (/api/compile-mind-file, /api/process-target-image,
  /api/generate-mind-file)

Entry point:
    uvicorn backend.server:app --port 8000
"""
