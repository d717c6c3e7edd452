from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from itsdangerous import BadData, BadPayload, BadSignature, SignatureExpired
from itsdangerous.encoding import base64_decode, base64_encode
from itsdangerous.signer import HMACAlgorithm
from passlib.context import CryptContext

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = 60 * 60  # 1 hour
TOKEN_HEADER = {"alg": "HS256", "typ": "JWT"}
MEDIA_TOKEN_COOKIES = ("token", "auth", "t")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class InvalidSignature(BadSignature):
    """The token signature does not match its signing input."""


class MalformedToken(BadPayload):
    """The token is structurally broken or lacks required claims."""


class Expired(SignatureExpired):
    """The token was valid once but its exp claim is in the past."""


@dataclass
class Caller:
    """Identity attached to a request; subject is None for anonymous callers."""

    subject: Optional[str] = None
    token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.subject)


ANONYMOUS = Caller()


class TokenService:
    """Issues and verifies compact HMAC-SHA256 bearer tokens.

    Format: ``base64url(header).base64url(payload).hex(signature)`` where the
    signature covers the first two segments joined by a dot.
    """

    def __init__(
        self,
        secret: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self.key = secret.encode("utf-8")
        self.algorithm = HMACAlgorithm(hashlib.sha256)
        self.clock = clock

    def _sign(self, signing_input: str) -> str:
        return self.algorithm.get_signature(
            self.key, signing_input.encode("ascii")
        ).hex()

    @staticmethod
    def _encode_segment(value: Dict[str, Any]) -> str:
        raw = json.dumps(value, separators=(",", ":")).encode("utf-8")
        return base64_encode(raw).decode("ascii")

    def issue(self, subject: str, ttl_seconds: int = DEFAULT_TOKEN_TTL) -> str:
        """Return a signed token for subject that expires ttl_seconds from now."""
        issued_at = int(self.clock())
        payload = {"sub": subject, "iat": issued_at, "exp": issued_at + ttl_seconds}
        signing_input = (
            f"{self._encode_segment(TOKEN_HEADER)}.{self._encode_segment(payload)}"
        )
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> str:
        """Return the subject of a valid token.

        Raises InvalidSignature, MalformedToken or Expired, all of which are
        itsdangerous BadData subclasses.
        """
        signing_input, sep, signature = (token or "").rpartition(".")
        if not sep:
            raise InvalidSignature("token has no signature segment")
        try:
            signature_bytes = bytes.fromhex(signature)
        except ValueError:
            raise InvalidSignature("signature is not hex encoded") from None
        if not self.algorithm.verify_signature(
            self.key, signing_input.encode("ascii", "replace"), signature_bytes
        ):
            raise InvalidSignature("signature does not match")
        _, sep, payload_segment = signing_input.partition(".")
        if not sep:
            raise MalformedToken("token has no payload segment")
        try:
            payload = json.loads(base64_decode(payload_segment))
        except (BadData, ValueError) as exc:
            raise MalformedToken("payload is not base64url JSON", original_error=exc)
        if not isinstance(payload, dict) or "sub" not in payload or "exp" not in payload:
            raise MalformedToken("payload must carry sub and exp")
        try:
            expires_at = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise MalformedToken("exp must be an integer", original_error=exc)
        if self.clock() > expires_at:
            raise Expired("token expired", payload=payload)
        return str(payload["sub"])

    def subject_or_none(self, token: Optional[str]) -> Optional[str]:
        """Collapse every verification failure into None for the HTTP boundary."""
        if not token:
            return None
        try:
            return self.verify(token)
        except BadData as exc:
            logger.info("token rejected reason=%s", type(exc).__name__)
            return None


def hash_password(plain: str) -> str:
    """Wrap passlib's password hash generator."""
    return pwd_context.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Compare a plaintext password against the stored hash."""
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # Unknown or corrupt hash formats never authenticate.
        return False


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def cookie_value(cookie_header: Optional[str], name: str) -> Optional[str]:
    """Extract a single cookie value from a raw Cookie header."""
    if not cookie_header:
        return None
    for chunk in cookie_header.split(";"):
        key, sep, value = chunk.strip().partition("=")
        if not sep:
            continue
        if key.strip() == name:
            return value
    return None


def resolve_caller(tokens: TokenService, authorization: Optional[str]) -> Caller:
    """Identify the caller from the Authorization header only."""
    token = bearer_token(authorization)
    subject = tokens.subject_or_none(token)
    if subject is None:
        return ANONYMOUS
    return Caller(subject=subject, token=token)


def resolve_media_caller(
    tokens: TokenService,
    *,
    authorization: Optional[str],
    query_token: Optional[str],
    cookie_header: Optional[str],
    allow_query_token: bool = True,
) -> Caller:
    """Weak auth for image tags, which cannot send an Authorization header.

    The first token found wins, in order: header, ``?t=`` query parameter
    (only when allow_query_token is set), then the token/auth/t cookies.
    Query tokens end up in access logs and referrers.
    """
    token = bearer_token(authorization)
    if token is None and allow_query_token and query_token:
        token = query_token
    if token is None:
        for name in MEDIA_TOKEN_COOKIES:
            token = cookie_value(cookie_header, name)
            if token:
                break
    subject = tokens.subject_or_none(token)
    if subject is None:
        return ANONYMOUS
    return Caller(subject=subject, token=token)
