from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Optional, Set
from urllib.parse import quote


@dataclass(frozen=True)
class SignedPut:
    key: str
    expires: int
    nonce: str
    signature: str

    def query(self) -> str:
        return f"expires={self.expires}&nonce={self.nonce}&signature={self.signature}"


class CredentialSigner:
    """
    Issues and verifies single-use, time-bounded PUT credentials.

    A credential is an HMAC-SHA256 over (key, content type, expiry, nonce).
    verify() records the nonce, so replaying the same credential fails even
    before it expires.
    """

    def __init__(self, secret: Optional[str] = None, ttl_s: int = 1800):
        self._secret = (secret or secrets.token_hex(32)).encode("utf-8")
        self.ttl_s = int(ttl_s)
        self._used: Set[str] = set()
        self._lock = threading.Lock()

    def _mac(self, key: str, content_type: str, expires: int, nonce: str) -> str:
        msg = "\n".join([key, content_type, str(expires), nonce]).encode("utf-8")
        return hmac.new(self._secret, msg, hashlib.sha256).hexdigest()

    def sign(self, key: str, content_type: str, now: Optional[float] = None) -> SignedPut:
        expires = int((now if now is not None else time.time()) + self.ttl_s)
        nonce = secrets.token_hex(12)
        return SignedPut(key=key, expires=expires, nonce=nonce, signature=self._mac(key, content_type, expires, nonce))

    def url_for(self, base_url: str, signed: SignedPut) -> str:
        return f"{base_url.rstrip('/')}/storage/{quote(signed.key, safe='/')}?{signed.query()}"

    def check(
        self,
        key: str,
        content_type: str,
        expires: int,
        nonce: str,
        signature: str,
        now: Optional[float] = None,
    ) -> Optional[str]:
        """
        Returns None if the credential is currently valid, otherwise the reason
        it is refused. Does not use the credential up; see consume().
        """
        expected = self._mac(key, content_type, int(expires), nonce)
        if not hmac.compare_digest(expected, str(signature)):
            return "bad_signature"
        if (now if now is not None else time.time()) >= int(expires):
            return "expired"
        with self._lock:
            if nonce in self._used:
                return "already_used"
        return None

    def consume(self, nonce: str) -> bool:
        """Mark a checked credential as used. False if someone else used it first."""
        with self._lock:
            if nonce in self._used:
                return False
            self._used.add(nonce)
        return True

    def verify(
        self,
        key: str,
        content_type: str,
        expires: int,
        nonce: str,
        signature: str,
        now: Optional[float] = None,
    ) -> Optional[str]:
        """check() and consume() in one step."""
        refused = self.check(key, content_type, expires, nonce, signature, now)
        if refused:
            return refused
        return None if self.consume(nonce) else "already_used"
