"""Single-use anti-forgery checks: state, PKCE, and nonce.

Each check is created during login, carried to the callback in its own
short-lived encrypted cookie, and consumed exactly once. The functions
here are pure over their inputs: they read the request they are given
and return the cookie instructions the caller must attach.

PKCE follows RFC 7636 with the S256 challenge method (SHA-256 hash of
the code verifier).
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .cookies import clear_cookie, set_cookie
from .exceptions import ValidationError
from .types import CheckKind, Cookie


if TYPE_CHECKING:
    from .codec import TokenCodec
    from .cookies import CookieSpec, CookiesOptions
    from .types import CanonicalRequest


logger = logging.getLogger("gatehouse.checks")

DEFAULT_CHECK_MAX_AGE = 15 * 60


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 64) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of random bytes for the verifier (default 64).
            RFC 7636 requires a 43 to 128 character verifier.

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        return cls.from_verifier(secrets.token_urlsafe(length))

    @classmethod
    def from_verifier(cls, verifier: str) -> PKCEChallenge:
        """Rebuild the pair from a stored verifier."""
        return cls(verifier=verifier, challenge=_s256(verifier))

    def matches(self, challenge: str) -> bool:
        """Whether ``challenge`` is the S256 challenge of this verifier."""
        return hmac.compare_digest(self.challenge, challenge)


@dataclass(frozen=True)
class CheckOptions:
    """Everything a check needs, passed explicitly.

    Attributes
    ----------
    codec : TokenCodec
        Codec used to protect the cookie value.
    secret : str
        Secret the cookie value is bound to.
    cookies : CookiesOptions
        Cookie policy providing names and attributes.
    max_age : int
        Lifetime of the check cookie in seconds.
    provider : str or None
        Provider id, for error context only.
    """

    codec: TokenCodec
    secret: str
    cookies: CookiesOptions
    max_age: int = DEFAULT_CHECK_MAX_AGE
    provider: str | None = None


class Check:
    """One check kind bound to its cookie.

    ``create`` returns the value to place in the authorization request
    and the cookie to set; ``use`` returns the stored value and the
    clearing cookie. ``use`` always produces the clearing cookie, also
    when it fails, so a check cookie never outlives one callback.
    """

    def __init__(self, kind: CheckKind) -> None:
        """Initialize the check."""
        self.kind = kind

    def __repr__(self) -> str:
        """Show the check kind."""
        return f"Check({self.kind.value!r})"

    def _spec(self, options: CheckOptions) -> CookieSpec:
        return getattr(options.cookies, self.kind.value)

    def _generate(self) -> tuple[str, str]:
        """Return ``(public value, stored value)``."""
        value = secrets.token_urlsafe(32)
        return value, value

    async def create(self, options: CheckOptions) -> tuple[str, Cookie]:
        """Create a new check value and the cookie that stores it.

        Parameters
        ----------
        options : CheckOptions
            Codec, secret, cookie policy, and TTL.

        Returns
        -------
        tuple[str, Cookie]
            The value for the authorization request and the cookie to set.
        """
        public, stored = self._generate()
        token = await options.codec.encode(
            {"value": stored}, options.secret, max_age=options.max_age
        )
        cookie = set_cookie(self._spec(options), token, options.max_age)
        logger.debug("Created %s check for provider %s", self.kind.value, options.provider)
        return public, cookie

    async def use(self, request: CanonicalRequest, options: CheckOptions) -> tuple[str, Cookie]:
        """Read, decode, and consume the check cookie.

        Parameters
        ----------
        request : CanonicalRequest
            The callback request carrying the cookie.
        options : CheckOptions
            Codec, secret, cookie policy, and TTL.

        Returns
        -------
        tuple[str, Cookie]
            The stored value and the clearing cookie.

        Raises
        ------
        ValidationError
            If the cookie is missing, expired, or tampered with. The
            clearing cookie is attached to the error.
        """
        spec = self._spec(options)
        clearing = clear_cookie(spec)
        raw = request.cookies.get(spec.name)
        if not raw:
            msg = f"{self.kind.value} cookie was missing"
            raise ValidationError(
                msg, check=self.kind.value, provider=options.provider, cookies=[clearing]
            )

        payload = await options.codec.decode(raw, options.secret)
        value = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value:
            msg = f"{self.kind.value} value could not be parsed"
            raise ValidationError(
                msg, check=self.kind.value, provider=options.provider, cookies=[clearing]
            )
        return value, clearing


class _PKCECheck(Check):
    """PKCE: the challenge goes out, the verifier stays in the cookie."""

    def _generate(self) -> tuple[str, str]:
        pair = PKCEChallenge.generate()
        return pair.challenge, pair.verifier


state = Check(CheckKind.STATE)
pkce = _PKCECheck(CheckKind.PKCE)
nonce = Check(CheckKind.NONCE)

CHECKS: dict[str, Check] = {c.kind.value: c for c in (state, pkce, nonce)}


def verify_state(expected: str | None, received: str | None) -> bool:
    """Compare the stored and returned state values in constant time."""
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())
