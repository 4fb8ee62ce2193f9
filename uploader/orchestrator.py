from __future__ import annotations
"""
Reliable asset upload.

Per upload() call:
  1) OptimizeCheck   large images are re-encoded if that makes them smaller
  2) Credential      POST /api/presigned-upload -> UploadSession (short timeout)
  3) DirectTransfer  PUT bytes straight to object storage (long timeout)
  4) Retry           steps 2-3 up to max_attempts with a fixed backoff
  5) ServerFallback  multipart POST /api/upload through the backend, no retry

Execution model: upload() is synchronous and blocks the calling thread until
the bytes are stored or the attempt fails. Callers that must stay responsive
(UI loops, async servers) run it in a worker thread or executor and cancel it
through the threading.Event they pass in.

Cancellation and the transfer deadline raise AbortError right away: no
further attempts and no fallback. transfer_timeout_s bounds the whole direct
transfer (body upload plus response), not just each socket read. A URL is
only returned after a 2xx response from the step that stored the bytes.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple

import requests

from common.config import UploadSettings
from common.errors import AbortError, CredentialError, InvalidParameter, TransferError, UploadError
from common.types import UploadSession
from common.utils import elapsed_ms
from target_compiler.preprocess import reencode_jpeg


log = logging.getLogger(__name__)

_MB = 1024.0 * 1024.0
_POLL_S = 0.05
_DETAIL_BYTES = 200


def _detail(r: requests.Response) -> str:
    return (r.text or "")[:_DETAIL_BYTES]


def _ok(r: requests.Response) -> bool:
    return 200 <= int(r.status_code) < 300


def _check_abort(cancel: Optional[threading.Event], deadline: Optional[float], limit_s: float = 0.0) -> None:
    """Raise AbortError if the caller cancelled or the monotonic deadline has passed."""
    if cancel is not None and cancel.is_set():
        raise AbortError("upload cancelled during transfer")
    if deadline is not None and time.monotonic() >= deadline:
        raise AbortError(f"direct transfer exceeded {limit_s:g}s")


def _head_text(r: requests.Response, limit: int = _DETAIL_BYTES) -> str:
    """First `limit` bytes of a streamed response body, for error messages."""
    buf = b""
    for chunk in r.iter_content(64):
        buf += chunk
        if len(buf) >= limit:
            break
    return buf[:limit].decode("utf-8", "replace")


def _close_late(fut: Future) -> None:
    # response that arrived after the transfer was abandoned
    if fut.cancelled():
        return
    err = fut.exception()
    if err is not None:
        log.debug("Abandoned transfer ended with error", extra={"extra": {"error": str(err)}})
        return
    close = getattr(fut.result(), "close", None)
    if close is not None:
        close()


class _ChunkedBody:
    """
    Sized iterable request body. requests sends it with a Content-Length
    header (no chunked encoding); cancel and the transfer deadline are checked
    between chunks.
    """

    def __init__(
        self,
        data: bytes,
        chunk_size: int,
        cancel: Optional[threading.Event],
        deadline: Optional[float] = None,
        limit_s: float = 0.0,
    ):
        self.data = data
        self.chunk_size = max(1, int(chunk_size))
        self.cancel = cancel
        self.deadline = deadline
        self.limit_s = limit_s

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[bytes]:
        for off in range(0, len(self.data), self.chunk_size):
            _check_abort(self.cancel, self.deadline, self.limit_s)
            yield self.data[off : off + self.chunk_size]


class UploadOrchestrator:
    def __init__(
        self,
        settings: Optional[UploadSettings] = None,
        session: Optional[requests.Session] = None,
        *,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Params:
            settings: timeouts, retry bound, backoff, backend base URL
            session: optional requests.Session for connection reuse
            sleep: backoff sleeper when no cancel event is given (tests pass a no-op)
        """
        self.settings = settings or UploadSettings()
        self.session = session or requests.Session()
        self._sleep = sleep or time.sleep

    # ----------------------------
    # Public API
    # ----------------------------
    def upload(
        self,
        data: bytes,
        file_name: str,
        content_type: str,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """
        Store `data` and return its public URL.

        Raises:
            InvalidParameter: empty payload or file name
            AbortError: cancelled, or the direct transfer timed out
            UploadError: direct attempts and the server fallback all failed
        """
        if not data:
            raise InvalidParameter("refusing to upload an empty file")
        if not file_name:
            raise InvalidParameter("file name is required")
        content_type = content_type or "application/octet-stream"

        S = self.settings
        t0 = time.perf_counter()
        payload, file_name, content_type = self.optimize(data, file_name, content_type)
        log.info(
            "Upload started",
            extra={"extra": {"file": file_name, "content_type": content_type, "mb": round(len(payload) / _MB, 2)}},
        )

        last: Optional[UploadError] = None
        attempts = 0
        for attempt in range(1, int(S.max_attempts) + 1):
            attempts = attempt
            try:
                self._check_cancel(cancel)
                sess = self.request_credential(file_name, content_type)
                url = self.transfer(sess, payload, cancel)
                log.info(
                    "Upload finished (direct)",
                    extra={"extra": {"file": file_name, "attempt": attempt, "latency_ms": elapsed_ms(t0), "url": url}},
                )
                return url
            except AbortError as e:
                e.attempts = attempt
                log.error("Upload aborted", extra={"extra": {"file": file_name, "attempt": attempt, "error": str(e)}})
                raise
            except (CredentialError, TransferError) as e:
                last = e
                log.warning(
                    "Direct upload attempt failed",
                    extra={"extra": {
                        "file": file_name,
                        "attempt": attempt,
                        "max_attempts": S.max_attempts,
                        "stage": "credential" if isinstance(e, CredentialError) else "transfer",
                        "error": str(e),
                    }},
                )
                if attempt < int(S.max_attempts):
                    self._backoff(cancel)

        if not S.server_fallback:
            raise UploadError(f"direct upload of {file_name} failed", cause=last, attempts=attempts)

        self._check_cancel(cancel)
        log.warning("Direct upload exhausted; falling back to server upload", extra={"extra": {"file": file_name}})
        try:
            url = self.upload_via_server(payload, file_name, content_type)
        except UploadError as e:
            raise UploadError(
                f"upload of {file_name} failed (direct: {last}; server: {e})",
                cause=e.cause or e,
                attempts=attempts,
            ) from e
        log.info(
            "Upload finished (server fallback)",
            extra={"extra": {"file": file_name, "latency_ms": elapsed_ms(t0), "url": url}},
        )
        return url

    def optimize(self, data: bytes, file_name: str, content_type: str) -> Tuple[bytes, str, str]:
        """Size reduction for oversized images; everything else passes through."""
        S = self.settings
        if len(data) <= int(S.optimize_threshold_bytes):
            return data, file_name, content_type
        mb = round(len(data) / _MB, 2)
        if not content_type.startswith("image/"):
            log.warning("Large non-image payload; uploading unchanged", extra={"extra": {"file": file_name, "mb": mb}})
            return data, file_name, content_type
        smaller = reencode_jpeg(data, S.optimize_jpeg_quality)
        if smaller is not None and len(smaller) < len(data):
            new_name = Path(file_name).with_suffix(".jpg").name
            log.info(
                "Large image re-encoded",
                extra={"extra": {"file": file_name, "mb": mb, "new_mb": round(len(smaller) / _MB, 2)}},
            )
            return smaller, new_name, "image/jpeg"
        log.warning("Large image could not be reduced; uploading unchanged", extra={"extra": {"file": file_name, "mb": mb}})
        return data, file_name, content_type

    def request_credential(self, file_name: str, content_type: str) -> UploadSession:
        url = f"{self.settings.api_base_url}/api/presigned-upload"
        try:
            r = self.session.post(
                url,
                json={"fileName": file_name, "contentType": content_type},
                timeout=self.settings.credential_timeout_s,
            )
        except requests.Timeout as e:
            raise CredentialError("credential request timed out", cause=e) from e
        except requests.RequestException as e:
            raise CredentialError("credential request failed", cause=e) from e
        if not _ok(r):
            raise CredentialError(f"backend refused credential: HTTP {r.status_code} {_detail(r)}".strip())
        try:
            payload = r.json()
        except ValueError as e:
            raise CredentialError("credential response is not JSON", cause=e) from e
        return UploadSession.from_response(file_name, content_type, payload)

    def transfer(self, sess: UploadSession, payload: bytes, cancel: Optional[threading.Event] = None) -> str:
        """
        PUT payload with a fresh credential; returns the credential's public URL on 2xx.

        The request runs on a helper thread while this thread watches `cancel`
        and the transfer deadline, so a peer that trickles its response cannot
        hold the upload past transfer_timeout_s.
        """
        sess.consume()
        limit = float(self.settings.transfer_timeout_s)
        deadline = time.monotonic() + limit
        headers = {"Content-Type": sess.content_type}
        headers.update(sess.fields)
        body = _ChunkedBody(payload, self.settings.chunk_size, cancel, deadline, limit)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="upload-transfer")
        try:
            fut = pool.submit(self.session.put, sess.url, data=body, headers=headers, timeout=limit, stream=True)
            try:
                r = self._await(fut, cancel, deadline, limit)
            except requests.Timeout as e:
                raise AbortError(f"direct transfer timed out after {limit:g}s", cause=e) from e
            except requests.RequestException as e:
                raise TransferError("direct transfer failed", cause=e) from e

            try:
                if not _ok(r):
                    detail = self._await(pool.submit(_head_text, r), cancel, deadline, limit)
                    raise TransferError(
                        f"storage rejected upload: HTTP {r.status_code} {detail}".strip(), status=int(r.status_code)
                    )
            except requests.RequestException as e:
                raise TransferError(f"storage rejected upload: HTTP {r.status_code}", status=int(r.status_code), cause=e) from e
            finally:
                r.close()
        finally:
            pool.shutdown(wait=False)
        return sess.public_url

    def upload_via_server(self, payload: bytes, file_name: str, content_type: str) -> str:
        url = f"{self.settings.api_base_url}/api/upload"
        try:
            r = self.session.post(
                url,
                files={"file": (file_name, payload, content_type)},
                timeout=self.settings.fallback_timeout_s,
            )
        except requests.RequestException as e:
            raise UploadError("server upload failed", cause=e) from e
        if not _ok(r):
            raise UploadError(f"server upload rejected: HTTP {r.status_code} {_detail(r)}".strip())
        try:
            public_url = r.json().get("url")
        except (ValueError, AttributeError) as e:
            raise UploadError("server upload response is not JSON", cause=e) from e
        if not public_url:
            raise UploadError("server upload response has no url")
        return str(public_url)

    # ----------------------------
    # internals
    # ----------------------------
    @staticmethod
    def _await(fut: Future, cancel: Optional[threading.Event], deadline: float, limit_s: float):
        """Result of `fut`, polling cancel and the deadline while it runs."""
        while True:
            try:
                return fut.result(timeout=_POLL_S)
            except FutureTimeout:
                if fut.done():
                    raise
                try:
                    _check_abort(cancel, deadline, limit_s)
                except AbortError:
                    fut.add_done_callback(_close_late)
                    raise

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise AbortError("upload cancelled")

    def _backoff(self, cancel: Optional[threading.Event]) -> None:
        delay = float(self.settings.retry_delay_s)
        log.info("Waiting before retry", extra={"extra": {"delay_s": delay}})
        if cancel is not None:
            if cancel.wait(delay):
                raise AbortError("upload cancelled during retry backoff")
        elif delay > 0:
            self._sleep(delay)
