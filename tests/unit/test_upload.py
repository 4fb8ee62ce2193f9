"""
Unit tests for the upload orchestrator
"""

import pytest
import os
import socket
import sys
import threading
import time
import requests
from unittest.mock import Mock

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.config import UploadSettings
from common.errors import AbortError, CredentialError, InvalidParameter, TransferError, UploadError
from common.types import UploadSession
from uploader.orchestrator import UploadOrchestrator

API = "http://api.test"
PUBLIC = "http://cdn.test/storage/models/x-scene.glb"
FALLBACK_URL = "http://api.test/storage/models/fallback-scene.glb"


def _resp(status=200, payload=None, text=""):
    r = Mock()
    r.status_code = status
    r.text = text
    r.iter_content.return_value = [text.encode("utf-8")] if text else []
    r.json.return_value = payload if payload is not None else {}
    return r


def _credential(expires=None):
    payload = {
        "url": "http://cdn.test/storage/models/x-scene.glb?sig=1",
        "fields": {"Content-Type": "model/gltf-binary"},
        "publicUrl": PUBLIC,
        "key": "models/x-scene.glb",
    }
    if expires is not None:
        payload["expiresAt"] = expires
    return _resp(200, payload)


def _settings(**kw):
    base = dict(api_base_url=API, retry_delay_s=0, max_attempts=2, chunk_size=4)
    base.update(kw)
    return UploadSettings(**base)


def _session(credential=None, put=None, fallback=None):
    """
    Mock requests.Session. `credential`, `put` and `fallback` are lists of
    responses/exceptions consumed in order.
    """
    session = Mock()
    cred_iter = iter(credential or [])
    fb_iter = iter(fallback or [])

    def post(url, **kw):
        src = cred_iter if url.endswith("/api/presigned-upload") else fb_iter
        item = next(src)
        if isinstance(item, BaseException):
            raise item
        return item

    session.post.side_effect = post
    session.put.side_effect = put or []
    return session


def _fallback_calls(session):
    return [c for c in session.post.call_args_list if c.args[0].endswith("/api/upload")]


DATA = b"glTF" + b"\x00" * 60


class TestHappyPath:
    """Test cases for direct uploads that succeed"""

    def test_direct_upload_returns_public_url(self):
        """Credential + PUT success returns the credential's public URL"""
        session = _session(credential=[_credential()], put=[_resp(200)])
        url = UploadOrchestrator(_settings(), session).upload(DATA, "scene.glb", "model/gltf-binary")
        assert url == PUBLIC
        assert session.put.call_count == 1
        assert _fallback_calls(session) == []

    def test_credential_request_shape(self):
        """Credential is requested with file name, content type and a short timeout"""
        session = _session(credential=[_credential()], put=[_resp(200)])
        UploadOrchestrator(_settings(credential_timeout_s=10), session).upload(DATA, "scene.glb", "model/gltf-binary")
        call = session.post.call_args_list[0]
        assert call.args[0] == f"{API}/api/presigned-upload"
        assert call.kwargs["json"] == {"fileName": "scene.glb", "contentType": "model/gltf-binary"}
        assert call.kwargs["timeout"] == 10

    def test_put_sends_full_body_with_headers(self):
        """The transfer carries the content type and every byte of the payload"""
        seen = {}

        def put(url, data=None, headers=None, timeout=None, **kw):
            seen["len"] = len(data)
            seen["body"] = b"".join(data)
            seen["headers"] = headers
            seen["timeout"] = timeout
            seen["stream"] = kw.get("stream")
            return _resp(200)

        session = _session(credential=[_credential()], put=put)
        UploadOrchestrator(_settings(transfer_timeout_s=300), session).upload(DATA, "scene.glb", "model/gltf-binary")
        assert seen["body"] == DATA
        assert seen["len"] == len(DATA)
        assert seen["headers"]["Content-Type"] == "model/gltf-binary"
        assert seen["timeout"] == 300
        assert seen["stream"] is True

    def test_legacy_public_urls_shape(self):
        """publicUrls.url is accepted when publicUrl is absent"""
        cred = _resp(200, {"url": "http://cdn.test/put", "publicUrls": {"url": PUBLIC}})
        session = _session(credential=[cred], put=[_resp(204)])
        assert UploadOrchestrator(_settings(), session).upload(DATA, "scene.glb", "model/gltf-binary") == PUBLIC

    def test_empty_payload_rejected(self):
        """Empty files never reach the network"""
        session = _session()
        with pytest.raises(InvalidParameter):
            UploadOrchestrator(_settings(), session).upload(b"", "scene.glb", "model/gltf-binary")
        session.post.assert_not_called()


class TestRetry:
    """Test cases for bounded retry and backoff"""

    def test_credential_fails_then_succeeds(self):
        """A failed credential request is retried with a fresh credential"""
        session = _session(
            credential=[_resp(500, text="boom"), _credential()],
            put=[_resp(200)],
        )
        sleep = Mock()
        url = UploadOrchestrator(_settings(retry_delay_s=3), session, sleep=sleep).upload(
            DATA, "scene.glb", "model/gltf-binary"
        )
        assert url == PUBLIC
        sleep.assert_called_once_with(3.0)

    def test_credential_timeout_is_retried(self):
        """A credential timeout counts as a retryable credential failure"""
        session = _session(credential=[requests.Timeout("slow"), _credential()], put=[_resp(200)])
        url = UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")
        assert url == PUBLIC

    def test_http_500_twice_then_fallback(self):
        """Two rejected transfers fall through to the server upload"""
        session = _session(
            credential=[_credential(), _credential()],
            put=[_resp(500), _resp(500)],
            fallback=[_resp(200, {"url": FALLBACK_URL})],
        )
        url = UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")
        assert url == FALLBACK_URL
        assert session.put.call_count == 2
        fb = _fallback_calls(session)
        assert len(fb) == 1
        name, payload, ct = fb[0].kwargs["files"]["file"]
        assert (name, payload, ct) == ("scene.glb", DATA, "model/gltf-binary")

    def test_attempts_bounded(self):
        """Never more than max_attempts credentials or transfers"""
        session = _session(
            credential=[_credential() for _ in range(3)],
            put=[_resp(503) for _ in range(3)],
            fallback=[_resp(200, {"url": FALLBACK_URL})],
        )
        UploadOrchestrator(_settings(max_attempts=3), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")
        assert session.put.call_count == 3
        assert len(session.post.call_args_list) == 4

    def test_no_fallback_raises_upload_error(self):
        """Exhausted direct attempts without fallback raise, returning no URL"""
        session = _session(credential=[_credential(), _credential()], put=[_resp(500), _resp(500)])
        with pytest.raises(UploadError) as exc:
            UploadOrchestrator(_settings(server_fallback=False), session, sleep=Mock()).upload(
                DATA, "scene.glb", "model/gltf-binary"
            )
        assert exc.value.attempts == 2
        assert isinstance(exc.value.cause, TransferError)
        assert exc.value.cause.status == 500
        assert _fallback_calls(session) == []

    def test_fallback_failure_raises(self):
        """If the fallback also fails the error says so and no URL is returned"""
        session = _session(
            credential=[_resp(502), _resp(502)],
            fallback=[_resp(500, text="disk full")],
        )
        with pytest.raises(UploadError) as exc:
            UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")
        assert "disk full" in str(exc.value)
        assert exc.value.attempts == 2
        session.put.assert_not_called()

    def test_fallback_without_url(self):
        """A 2xx fallback response without a url is still a failure"""
        session = _session(credential=[_resp(500), _resp(500)], fallback=[_resp(200, {})])
        with pytest.raises(UploadError):
            UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")

    def test_bad_credential_payload(self):
        """A credential without url/publicUrl is a credential failure"""
        session = _session(credential=[_resp(200, {"nope": 1}), _credential()], put=[_resp(200)])
        assert UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "a.glb", "model/gltf-binary") == PUBLIC


class TestAbort:
    """Test cases for cancellation and transfer timeouts"""

    def test_cancel_mid_transfer(self):
        """Cancelling during the PUT aborts without retry or fallback"""
        cancel = threading.Event()

        def put(url, data=None, headers=None, timeout=None, **kw):
            it = iter(data)
            next(it)
            cancel.set()
            for _ in it:
                pass
            return _resp(200)

        session = _session(credential=[_credential()], put=put, fallback=[_resp(200, {"url": FALLBACK_URL})])
        with pytest.raises(AbortError) as exc:
            UploadOrchestrator(_settings(), session, sleep=Mock()).upload(
                DATA, "scene.glb", "model/gltf-binary", cancel=cancel
            )
        assert exc.value.attempts == 1
        assert session.put.call_count == 1
        assert _fallback_calls(session) == []

    def test_cancel_before_start(self):
        """An already-cancelled upload never requests a credential"""
        cancel = threading.Event()
        cancel.set()
        session = _session()
        with pytest.raises(AbortError):
            UploadOrchestrator(_settings(), session).upload(DATA, "scene.glb", "model/gltf-binary", cancel=cancel)
        session.post.assert_not_called()

    def test_transfer_timeout_aborts(self):
        """A transfer timeout is terminal: no second attempt, no fallback"""
        session = _session(
            credential=[_credential(), _credential()],
            put=[requests.Timeout("read timed out"), _resp(200)],
            fallback=[_resp(200, {"url": FALLBACK_URL})],
        )
        with pytest.raises(AbortError) as exc:
            UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")
        assert isinstance(exc.value.cause, requests.Timeout)
        assert session.put.call_count == 1
        assert _fallback_calls(session) == []

    def test_abort_is_upload_error(self):
        """Callers catching UploadError also see aborts"""
        assert issubclass(AbortError, UploadError)
        assert issubclass(CredentialError, UploadError)

    def test_cancel_during_backoff(self):
        """Cancelling while waiting between attempts aborts"""
        cancel = threading.Event()
        session = _session(credential=[_resp(500)])
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        t0 = time.monotonic()
        with pytest.raises(AbortError):
            UploadOrchestrator(_settings(retry_delay_s=5), session).upload(
                DATA, "scene.glb", "model/gltf-binary", cancel=cancel
            )
        timer.cancel()
        assert time.monotonic() - t0 < 4


def _trickle_server(delay=0.05):
    """
    One-shot HTTP server on localhost: reads the whole PUT body, then sends
    its response one byte every `delay` seconds.
    """
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(1)
    port = srv.getsockname()[1]

    def serve():
        conn, _ = srv.accept()
        with conn:
            buf = b""
            while b"\r\n\r\n" not in buf:
                buf += conn.recv(4096)
            head, body = buf.split(b"\r\n\r\n", 1)
            length = 0
            for line in head.split(b"\r\n"):
                if line.lower().startswith(b"content-length:"):
                    length = int(line.split(b":", 1)[1])
            while len(body) < length:
                body += conn.recv(4096)
            reply = b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\nConnection: close\r\n\r\nok"
            try:
                for i in range(len(reply)):
                    conn.sendall(reply[i : i + 1])
                    time.sleep(delay)
            except OSError:
                return
        srv.close()

    threading.Thread(target=serve, daemon=True).start()
    return f"http://127.0.0.1:{port}/obj"


class TestTransferDeadline:
    """Test cases for the overall direct-transfer time limit"""

    def test_slow_response_aborts(self):
        """A peer that answers slower than transfer_timeout_s aborts the upload"""

        def put(url, data=None, headers=None, timeout=None, **kw):
            b"".join(data)
            time.sleep(1.5)
            return _resp(200)

        session = _session(credential=[_credential()], put=put, fallback=[_resp(200, {"url": FALLBACK_URL})])
        t0 = time.monotonic()
        with pytest.raises(AbortError, match="exceeded"):
            UploadOrchestrator(_settings(transfer_timeout_s=0.2), session, sleep=Mock()).upload(
                DATA, "scene.glb", "model/gltf-binary"
            )
        assert time.monotonic() - t0 < 1.0
        assert session.put.call_count == 1
        assert _fallback_calls(session) == []

    def test_trickled_status_line_aborts(self):
        """Byte-by-byte response headers cannot stretch the transfer past its limit"""
        url = _trickle_server(delay=0.08)
        sess = UploadSession(
            file_name="scene.glb",
            content_type="model/gltf-binary",
            url=url,
            fields={},
            public_url="http://x/obj",
        )
        orch = UploadOrchestrator(_settings(transfer_timeout_s=1.0), requests.Session())
        t0 = time.monotonic()
        with pytest.raises(AbortError):
            orch.transfer(sess, DATA)
        assert time.monotonic() - t0 < 2.0

    def test_cancel_after_body_sent(self):
        """Cancelling while waiting for the response still aborts"""
        cancel = threading.Event()
        release = threading.Event()

        def put(url, data=None, headers=None, timeout=None, **kw):
            b"".join(data)
            release.wait(2.0)
            return _resp(200)

        session = _session(credential=[_credential()], put=put)
        timer = threading.Timer(0.1, cancel.set)
        timer.start()
        try:
            with pytest.raises(AbortError, match="cancelled"):
                UploadOrchestrator(_settings(), session).upload(DATA, "scene.glb", "model/gltf-binary", cancel=cancel)
        finally:
            release.set()
            timer.cancel()

    def test_body_chunks_stop_after_deadline(self):
        """Body iteration itself refuses to continue past the deadline"""

        def put(url, data=None, headers=None, timeout=None, **kw):
            for _ in data:
                time.sleep(0.1)
            return _resp(200)

        session = _session(credential=[_credential()], put=put)
        with pytest.raises(AbortError):
            UploadOrchestrator(_settings(transfer_timeout_s=0.15, chunk_size=1), session).upload(
                DATA, "scene.glb", "model/gltf-binary"
            )

    def test_rejection_detail_read_from_stream(self):
        """Error text of a rejected transfer comes from the streamed body"""
        session = _session(credential=[_credential()], put=[_resp(403, text="SignatureDoesNotMatch")])
        with pytest.raises(UploadError) as exc:
            UploadOrchestrator(_settings(max_attempts=1, server_fallback=False), session).upload(
                DATA, "scene.glb", "model/gltf-binary"
            )
        assert "SignatureDoesNotMatch" in str(exc.value)
        assert exc.value.cause.status == 403


class TestUploadSession:
    """Test cases for single-use credentials"""

    def test_consumed_once(self):
        """A credential can only be used for one transfer"""
        sess = UploadSession.from_response("a.glb", "model/gltf-binary", _credential().json())
        sess.consume()
        assert sess.consumed
        with pytest.raises(CredentialError):
            sess.consume()

    def test_expired_credential(self):
        """An expired credential is refused before any transfer"""
        sess = UploadSession.from_response("a.glb", "model/gltf-binary", _credential(expires=time.time() - 1).json())
        with pytest.raises(CredentialError):
            sess.consume()

    def test_each_attempt_uses_fresh_credential(self):
        """Retries request a new credential for every transfer"""
        session = _session(credential=[_credential(), _credential()], put=[_resp(500), _resp(200)])
        UploadOrchestrator(_settings(), session, sleep=Mock()).upload(DATA, "scene.glb", "model/gltf-binary")
        creds = [c for c in session.post.call_args_list if c.args[0].endswith("/api/presigned-upload")]
        assert len(creds) == 2


class TestOptimize:
    """Test cases for the large-image optimize step"""

    def test_small_files_untouched(self):
        orch = UploadOrchestrator(_settings(), _session())
        assert orch.optimize(DATA, "scene.glb", "model/gltf-binary") == (DATA, "scene.glb", "model/gltf-binary")

    def test_large_non_image_untouched(self):
        orch = UploadOrchestrator(_settings(optimize_threshold_bytes=10), _session())
        assert orch.optimize(DATA, "scene.glb", "model/gltf-binary")[0] == DATA

    def test_large_image_reencoded_when_smaller(self):
        """Oversized images are re-encoded as JPEG if that shrinks them"""
        import cv2
        import numpy as np

        yy, xx = np.mgrid[0:256, 0:256]
        smooth = ((xx + yy) // 2).astype(np.uint8)
        ok, buf = cv2.imencode(".bmp", smooth)
        assert ok
        data = buf.tobytes()
        orch = UploadOrchestrator(_settings(optimize_threshold_bytes=1024), _session())
        out, name, ct = orch.optimize(data, "photo.bmp", "image/bmp")
        assert len(out) < len(data)
        assert (name, ct) == ("photo.jpg", "image/jpeg")
