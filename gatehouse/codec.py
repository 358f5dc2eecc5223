"""Token codec: opaque, authenticated, expiring token strings.

Defines the TokenCodec contract consumed by the checks subsystem and
the session managers, plus the default implementation backed by
authlib's JWE support (``dir`` + ``A256GCM``) with an HKDF-derived key.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import base64
import binascii
import logging
import time
import uuid

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .exceptions import ConfigurationError, TokenDecodeError


logger = logging.getLogger("gatehouse.codec")

DEFAULT_MAX_AGE = 30 * 24 * 60 * 60
CLOCK_TOLERANCE = 15
KEY_INFO = b"Gatehouse Generated Encryption Key"


class TokenCodec(ABC):
    """Abstract contract for encoding payloads into opaque tokens.

    All methods are async so that implementations backed by remote key
    services fit the same interface.
    """

    @abstractmethod
    async def encode(self, payload: Any, secret: str, max_age: int = DEFAULT_MAX_AGE) -> str:
        """Encode ``payload`` into a token valid for ``max_age`` seconds.

        Parameters
        ----------
        payload : Any
            JSON-serializable payload.
        secret : str
            Secret the token is bound to.
        max_age : int
            Lifetime in seconds.

        Returns
        -------
        str
            The opaque token.
        """

    @abstractmethod
    async def decode(self, token: str | None, secret: str) -> Any | None:
        """Decode a token produced by ``encode``.

        Never raises on malformed, tampered, or expired input.

        Parameters
        ----------
        token : str or None
            The token, or None when the cookie was absent.
        secret : str
            Secret the token was bound to.

        Returns
        -------
        Any or None
            The original payload, or None if the token is invalid.
        """

    async def decode_or_raise(self, token: str | None, secret: str) -> Any:
        """Decode a token, raising instead of returning None.

        Raises
        ------
        TokenDecodeError
            If the token is missing or invalid.
        """
        payload = await self.decode(token, secret)
        if payload is None:
            msg = "Token is missing, expired, or invalid"
            raise TokenDecodeError(msg)
        return payload


@lru_cache(maxsize=16)
def derive_encryption_key(secret: str) -> bytes:
    """Derive the 256-bit content encryption key for ``secret`` (HKDF-SHA256)."""
    if not secret:
        msg = "A non-empty secret is required to encode or decode tokens"
        raise ConfigurationError(msg)
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=KEY_INFO)
    return hkdf.derive(secret.encode("utf-8"))


def is_canonical_segment(segment: str) -> bool:
    """Whether ``segment`` is the one unpadded base64url spelling of its bytes.

    Base64 leaves unused low bits in the last character, so several
    strings decode to the same bytes. Only the spelling with those bits
    cleared is accepted.
    """
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return False
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") == segment


class JWETokenCodec(TokenCodec):
    """Default codec: compact JWE with direct AES-256-GCM encryption.

    The payload is stored under a ``data`` claim next to ``iat``, ``exp``
    and ``jti``, so any JSON value round-trips unchanged.

    Parameters
    ----------
    clock_tolerance : int
        Seconds of leeway when checking expiry (default ``15``).
    """

    _header = {"alg": "dir", "enc": "A256GCM"}

    def __init__(self, clock_tolerance: int = CLOCK_TOLERANCE) -> None:
        """Initialize the codec."""
        self.clock_tolerance = clock_tolerance
        self._jwt = JsonWebToken(["dir", "A256GCM"])

    async def encode(self, payload: Any, secret: str, max_age: int = DEFAULT_MAX_AGE) -> str:
        """Encrypt ``payload`` into a compact JWE string."""
        key = derive_encryption_key(secret)
        now = int(time.time())
        claims = {
            "data": payload,
            "iat": now,
            "exp": now + int(max_age),
            "jti": uuid.uuid4().hex,
        }
        token = self._jwt.encode(dict(self._header), claims, key, check=False)
        return token.decode("ascii") if isinstance(token, bytes) else token

    async def decode(self, token: str | None, secret: str) -> Any | None:
        """Decrypt and validate a compact JWE string."""
        if not token:
            return None
        segments = token.split(".")
        if len(segments) != 5 or not all(is_canonical_segment(s) for s in segments):
            logger.debug("Token rejected: not a canonical compact JWE")
            return None
        key = derive_encryption_key(secret)
        try:
            claims = self._jwt.decode(token, key)
            claims.validate(leeway=self.clock_tolerance)
        except (JoseError, InvalidTag, ValueError, TypeError, KeyError) as exc:
            logger.debug("Token rejected: %s", exc.__class__.__name__)
            return None
        if "data" not in claims:
            return None
        return claims["data"]
