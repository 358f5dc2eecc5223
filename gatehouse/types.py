"""Canonical request/response model and shared value types.

Host frameworks are translated to and from these types by the
integration adapters; the core never sees framework objects.
"""

from __future__ import annotations

import time

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal
from urllib.parse import parse_qs, urlsplit


SameSite = Literal["lax", "strict", "none"]


class FlowState(str, Enum):
    """States of a single login attempt."""

    NOT_STARTED = "not_started"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CALLBACK_VALIDATED = "callback_validated"
    TOKEN_EXCHANGED = "token_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    SESSION_READY = "session_ready"
    FAILED = "failed"


class CheckKind(str, Enum):
    """Anti-forgery check kinds."""

    STATE = "state"
    PKCE = "pkce"
    NONCE = "nonce"


@dataclass(frozen=True)
class CookieOptions:
    """Attributes of a cookie-set instruction.

    Attributes
    ----------
    path : str
        Cookie path (default ``"/"``).
    domain : str or None
        Cookie domain, host-only when None.
    max_age : int or None
        Lifetime in seconds; ``0`` clears the cookie, None makes it a
        browser-session cookie.
    secure : bool
        Only send over HTTPS.
    http_only : bool
        Hide from client-side scripts.
    same_site : str
        ``"lax"``, ``"strict"`` or ``"none"``.
    """

    path: str = "/"
    domain: str | None = None
    max_age: int | None = None
    secure: bool = False
    http_only: bool = True
    same_site: SameSite = "lax"


@dataclass(frozen=True)
class Cookie:
    """A single cookie-set instruction."""

    name: str
    value: str
    options: CookieOptions = field(default_factory=CookieOptions)

    @property
    def is_clear(self) -> bool:
        """Whether this instruction removes the cookie."""
        return self.options.max_age == 0


def parse_cookie_header(header: str | None) -> dict[str, str]:
    """Parse a ``Cookie`` request header into a name/value map.

    The first occurrence of a name wins; malformed pairs are skipped.
    """
    cookies: dict[str, str] = {}
    for chunk in (header or "").split(";"):
        name, sep, value = chunk.strip().partition("=")
        if not sep or not name:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        cookies.setdefault(name.strip(), value)
    return cookies


@dataclass(frozen=True)
class CanonicalRequest:
    """Framework-independent view of an inbound request.

    Attributes
    ----------
    method : str
        HTTP method, upper-cased.
    url : str
        Absolute request URL including the query string.
    cookies : Mapping[str, str]
        Request cookies by name.
    headers : Mapping[str, str]
        Request headers with lower-cased names.
    body : bytes or None
        Raw request body, if it was read.
    """

    method: str
    url: str
    cookies: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None

    def __post_init__(self) -> None:
        """Normalize and freeze the mappings."""
        headers = {str(k).lower(): str(v) for k, v in self.headers.items()}
        cookies = dict(self.cookies)
        if not cookies and "cookie" in headers:
            cookies = parse_cookie_header(headers["cookie"])
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "headers", MappingProxyType(headers))
        object.__setattr__(self, "cookies", MappingProxyType(cookies))

    @property
    def path(self) -> str:
        """URL path component (``"/"`` when empty)."""
        return urlsplit(self.url).path or "/"

    @property
    def origin(self) -> str:
        """``scheme://host[:port]`` of the request URL."""
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def query(self) -> dict[str, str]:
        """Query parameters, first value per name."""
        parsed = parse_qs(urlsplit(self.url).query, keep_blank_values=True)
        return {k: v[0] for k, v in parsed.items()}


@dataclass
class CanonicalResponse:
    """Framework-independent outbound response, built incrementally.

    Nothing is applied to the transport until an adapter converts the
    finished response.

    Attributes
    ----------
    status : int or None
        HTTP status code, if the response is terminal.
    headers : dict[str, str]
        Extra response headers.
    body : Any
        Response body (JSON-serializable or text).
    redirect : str or None
        Redirect target.
    cookies : list[Cookie]
        Ordered cookie-set instructions.
    user : Any
        Authenticated application-level user, consumed by the session
        strategy to mint session cookies.
    session : Any
        Session payload associated with the response.
    error : Exception or None
        The failure that produced this response, if any.
    """

    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    redirect: str | None = None
    cookies: list[Cookie] = field(default_factory=list)
    user: Any = None
    session: Any = None
    error: Exception | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the response should short-circuit the host application."""
        return self.status is not None or self.redirect is not None or self.body is not None

    def merge(self, other: CanonicalResponse | None) -> CanonicalResponse:
        """Append ``other``'s cookies and fill in fields still unset here.

        Returns
        -------
        CanonicalResponse
            ``self``, for chaining.
        """
        if other is None:
            return self
        self.cookies.extend(other.cookies)
        for name, value in other.headers.items():
            self.headers.setdefault(name, value)
        for attr in ("status", "body", "redirect", "user", "session", "error"):
            if getattr(self, attr) is None and getattr(other, attr) is not None:
                setattr(self, attr, getattr(other, attr))
        return self


@dataclass
class TokenSet:
    """OAuth2 token endpoint response.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Optional refresh token.
    expires_in : int or None
        Token lifetime in seconds from issuance.
    id_token : str or None
        Optional OIDC ID token (JWT).
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the provider.
    issued_at : float
        Unix timestamp when the token was issued.
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_response(cls, raw: Mapping[str, Any]) -> TokenSet:
        """Build a token set from a decoded token endpoint body."""
        expires_in = raw.get("expires_in")
        return cls(
            access_token=str(raw["access_token"]),
            token_type=str(raw.get("token_type") or "Bearer"),
            refresh_token=raw.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            id_token=raw.get("id_token"),
            scope=str(raw.get("scope") or ""),
            raw=dict(raw),
        )

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        if self.expires_in is None:
            return False
        return time.time() > (self.issued_at + self.expires_in)

    @property
    def expires_at(self) -> float | None:
        """Get the expiry timestamp, or None if no expiry."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in


@dataclass(frozen=True)
class NewSession:
    """Access/refresh payload pair produced by the application.

    ``access_token`` is always present when a session exists; a
    ``refresh_token`` means the session can be rotated.
    """

    access_token: Any
    refresh_token: Any = None

    @classmethod
    def coerce(cls, value: Any) -> NewSession | None:
        """Accept a NewSession, a mapping, or None from application callbacks.

        Mappings may use ``access_token``/``refresh_token`` or the
        camel-case ``accessToken``/``refreshToken`` keys.
        """
        if value is None or isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            access = value.get("access_token", value.get("accessToken"))
            refresh = value.get("refresh_token", value.get("refreshToken"))
            return cls(access_token=access, refresh_token=refresh)
        msg = (
            "Session callbacks must return a NewSession, a mapping or None, "
            f"got {type(value).__name__}"
        )
        raise TypeError(msg)
