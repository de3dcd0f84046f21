"""
Request signature verification.

Every request the scheduler delivers carries an ``Upstash-Signature``
header: an HS256 JWT signed with the current signing key (or, during key
rotation, the next one). The claims bind the token to the destination URL
and to the SHA-256 of the raw body, and limit its lifetime.

Usage:
    receiver = Receiver.from_env()
    receiver.verify(signature, body, url="https://example.com/api/workflow")
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from datetime import datetime, timezone
from typing import Any

import jwt
from uuid_extensions import uuid7

from pyresume.core.clock import Clock, SystemClock
from pyresume.core.errors import SignatureError

logger = logging.getLogger(__name__)

ISSUER = "Upstash"
DEFAULT_TTL_SECONDS = 300


def body_hash(body: bytes) -> str:
    """Base64url SHA-256 of the raw body, without padding."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode("ascii").rstrip("=")


def sign(
    key: str,
    body: bytes,
    url: str | None = None,
    now: datetime | None = None,
    ttl: int = DEFAULT_TTL_SECONDS,
) -> str:
    """
    Produce a signature token for ``body`` sent to ``url``.

    Used by the in-memory scheduler and by tests. A real scheduler signs
    its deliveries itself.
    """
    issued = int((now or datetime.now(timezone.utc)).timestamp())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "iat": issued,
        "nbf": issued,
        "exp": issued + ttl,
        "jti": str(uuid7()),
        "body": body_hash(body),
    }
    if url is not None:
        claims["sub"] = url
    return jwt.encode(claims, key, algorithm="HS256")


class _WrongKey(SignatureError):
    """The token was not signed with this key."""


class Receiver:
    """Verifies scheduler signatures with the current and next signing keys."""

    def __init__(
        self,
        current_signing_key: str,
        next_signing_key: str | None = None,
        clock: Clock | None = None,
        leeway_seconds: int = 0,
    ):
        if not current_signing_key:
            raise ValueError("current_signing_key must not be empty")
        self._keys = [current_signing_key]
        if next_signing_key:
            self._keys.append(next_signing_key)
        self._clock = clock or SystemClock()
        self._leeway = leeway_seconds

    @classmethod
    def from_env(cls, clock: Clock | None = None) -> Receiver:
        """
        Build a receiver from WORKFLOW_CURRENT_SIGNING_KEY and WORKFLOW_NEXT_SIGNING_KEY.

        Raises:
            ValueError: If WORKFLOW_CURRENT_SIGNING_KEY is not set
        """
        current = os.getenv("WORKFLOW_CURRENT_SIGNING_KEY")
        if not current:
            raise ValueError("WORKFLOW_CURRENT_SIGNING_KEY is not set")
        return cls(current, os.getenv("WORKFLOW_NEXT_SIGNING_KEY") or None, clock=clock)

    def verify(self, signature: str | None, body: bytes, url: str | None = None) -> dict[str, Any]:
        """
        Verify a signature token against the raw body and optional URL.

        Returns:
            The verified claims

        Raises:
            SignatureError: If the token is missing, malformed, signed with an
                unknown key, expired, not yet valid, or bound to another body or URL
        """
        if not signature:
            raise SignatureError("Missing request signature")

        error: SignatureError | None = None
        for key in self._keys:
            try:
                return self._verify_with_key(key, signature, body, url)
            except _WrongKey as e:
                error = error or e
            except SignatureError as e:
                # signed with this key, the claims are wrong
                error = e
                break
        logger.warning(f"Rejected request signature: {error}")
        raise SignatureError(str(error)) from error

    def _verify_with_key(
        self, key: str, token: str, body: bytes, url: str | None
    ) -> dict[str, Any]:
        # lifetime is checked against the injected clock below
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["HS256"],
                issuer=ISSUER,
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_sub": False,
                    "require": ["iss", "exp", "body"],
                },
            )
        except jwt.InvalidSignatureError as e:
            raise _WrongKey("Invalid signature") from e
        except jwt.InvalidIssuerError as e:
            raise SignatureError(f"Invalid issuer: {e}") from e
        except jwt.InvalidTokenError as e:
            raise SignatureError(f"Malformed signature: {e}") from e

        now = int(self._clock.now().timestamp())
        if url is not None and "sub" in claims and claims["sub"] != url:
            raise SignatureError(f"Signature is for {claims['sub']!r}, not {url!r}")
        if now > int(claims["exp"]) + self._leeway:
            raise SignatureError("Signature expired")
        if "nbf" in claims and now < int(claims["nbf"]) - self._leeway:
            raise SignatureError("Signature not yet valid")
        if str(claims["body"]).rstrip("=") != body_hash(body):
            raise SignatureError("Body hash does not match")
        return claims
