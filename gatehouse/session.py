"""Session strategies: stateless token sessions and opaque session ids.

``TokenSessionManager`` keeps the whole session client-side in two
encrypted cookies (access and refresh) and rotates both when only the
refresh cookie is left. ``OpaqueSessionManager`` keeps a single
encrypted session-id cookie and leaves storage to the application.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol, TypedDict, runtime_checkable

from .codec import JWETokenCodec
from .cookies import clear_cookie, create_cookies_options, set_cookie
from .providers.base import ProviderKind, maybe_await
from .types import CanonicalResponse, NewSession


if TYPE_CHECKING:
    from .codec import TokenCodec
    from .cookies import CookieSpec, CookiesOptions
    from .types import CanonicalRequest, Cookie


logger = logging.getLogger("gatehouse.session")

DEFAULT_ACCESS_TOKEN_MAX_AGE = 60 * 60
DEFAULT_REFRESH_TOKEN_MAX_AGE = 60 * 60 * 24 * 7
DEFAULT_SESSION_MAX_AGE = 60 * 60 * 24 * 30


@runtime_checkable
class SessionStrategy(Protocol):
    """What ``Auth`` needs from a session strategy."""

    kind: ProviderKind

    def with_options(self, **changes: Any) -> SessionStrategy:
        """Return a copy with ``changes`` applied."""
        ...

    async def handle_request(self, request: CanonicalRequest) -> CanonicalResponse:
        """Pre-process every request (e.g. refresh an expired session)."""
        ...

    async def handle_response(self, response: CanonicalResponse) -> CanonicalResponse:
        """Persist the user carried by a successful callback response."""
        ...

    async def logout(self, request: CanonicalRequest) -> CanonicalResponse:
        """End the session; always clears the session cookies."""
        ...

    async def get_user(self, request: CanonicalRequest) -> Any:
        """Return the current session payload, or None."""
        ...


class _CookieSession:
    """Shared plumbing: secret, cookie policy, codec, and rebinding."""

    kind = ProviderKind.TOKEN_SESSION

    def __init__(
        self,
        secret: str = "",
        cookies: CookiesOptions | None = None,
        codec: TokenCodec | None = None,
    ) -> None:
        self.secret = secret
        self.cookies: CookiesOptions = cookies or create_cookies_options()
        self.codec: TokenCodec = codec or JWETokenCodec()
        self._explicit = {
            "secret": bool(secret),
            "cookies": cookies is not None,
            "codec": codec is not None,
        }

    def _options(self) -> dict[str, Any]:
        return {"secret": self.secret, "cookies": self.cookies, "codec": self.codec}

    def is_explicit(self, name: str) -> bool:
        """Whether ``name`` was set at construction rather than defaulted."""
        return self._explicit.get(name, False)

    def with_options(self, **changes: Any) -> Any:
        """Return a new manager of the same type with ``changes`` applied."""
        options = self._options()
        for name in ("cookies", "codec"):
            if not self.is_explicit(name):
                options[name] = None
        options.update(changes)
        return type(self)(**options)

    async def _decode(self, request: CanonicalRequest, spec: CookieSpec) -> Any:
        """Decode one cookie; any failure means "no value"."""
        raw = request.cookies.get(spec.name)
        if not raw:
            return None
        try:
            return await self.codec.decode(raw, self.secret)
        except Exception:  # noqa: BLE001
            logger.debug("Could not decode cookie %s", spec.name, exc_info=True)
            return None


class TokenSessionManager(_CookieSession):
    """Stateless session strategy over access/refresh cookies.

    Parameters
    ----------
    create_session : callable
        ``create_session(user)`` returning a ``NewSession`` (or mapping
        with ``access_token``/``refresh_token``) or None. Sync or async.
    refresh_session : callable, optional
        ``refresh_session(refresh_payload)`` returning the rotated
        session or None.
    invalidate_session : callable, optional
        ``invalidate_session(session, refresh_payload)`` called on logout;
        may return a ``CanonicalResponse`` used as the logout response.
    secret : str
        Secret the cookies are bound to (injected by ``Auth`` if empty).
    cookies : CookiesOptions, optional
        Cookie policy.
    codec : TokenCodec, optional
        Token codec (default ``JWETokenCodec``).
    access_token_max_age : int
        Access cookie lifetime in seconds (default one hour).
    refresh_token_max_age : int
        Refresh cookie lifetime in seconds (default seven days).
    """

    def __init__(
        self,
        create_session: Callable[[Any], Any],
        refresh_session: Callable[[Any], Any] | None = None,
        invalidate_session: Callable[[Any, Any], Any] | None = None,
        *,
        secret: str = "",
        cookies: CookiesOptions | None = None,
        codec: TokenCodec | None = None,
        access_token_max_age: int = DEFAULT_ACCESS_TOKEN_MAX_AGE,
        refresh_token_max_age: int = DEFAULT_REFRESH_TOKEN_MAX_AGE,
    ) -> None:
        """Initialize the session manager."""
        super().__init__(secret=secret, cookies=cookies, codec=codec)
        self.create_session = create_session
        self.refresh_session = refresh_session
        self.invalidate_session = invalidate_session
        self.access_token_max_age = access_token_max_age
        self.refresh_token_max_age = refresh_token_max_age

    def _options(self) -> dict[str, Any]:
        return {
            **super()._options(),
            "create_session": self.create_session,
            "refresh_session": self.refresh_session,
            "invalidate_session": self.invalidate_session,
            "access_token_max_age": self.access_token_max_age,
            "refresh_token_max_age": self.refresh_token_max_age,
        }

    async def issue(self, session: NewSession | Mapping[str, Any] | None) -> list[Cookie]:
        """Encode ``session`` into access/refresh cookie instructions.

        Returns
        -------
        list[Cookie]
            An access cookie when the session has an access token, a
            refresh cookie when it has a refresh token; nothing for None.
        """
        new_session = NewSession.coerce(session)
        if new_session is None:
            return []

        cookies: list[Cookie] = []
        if new_session.access_token is not None:
            token = await self.codec.encode(
                new_session.access_token, self.secret, max_age=self.access_token_max_age
            )
            cookies.append(set_cookie(self.cookies.access_token, token, self.access_token_max_age))
        if new_session.refresh_token is not None:
            token = await self.codec.encode(
                new_session.refresh_token, self.secret, max_age=self.refresh_token_max_age
            )
            cookies.append(
                set_cookie(self.cookies.refresh_token, token, self.refresh_token_max_age)
            )
        return cookies

    async def handle_request(self, request: CanonicalRequest) -> CanonicalResponse:
        """Rotate the session when only a valid refresh cookie is present.

        The session-creation callback is never called here.
        """
        response = CanonicalResponse()
        if request.cookies.get(self.cookies.access_token.name):
            return response
        if not request.cookies.get(self.cookies.refresh_token.name):
            return response
        if self.refresh_session is None:
            return response

        refresh = await self._decode(request, self.cookies.refresh_token)
        if refresh is None:
            logger.debug("Refresh cookie rejected; treating request as unauthenticated")
            return response

        try:
            new_session = NewSession.coerce(await maybe_await(self.refresh_session(refresh)))
        except Exception:
            logger.exception("Session refresh callback failed")
            return response

        if new_session is None:
            return response
        response.cookies.extend(await self.issue(new_session))
        response.session = new_session.access_token
        logger.debug("Session refreshed")
        return response

    async def handle_response(self, response: CanonicalResponse) -> CanonicalResponse:
        """Create the session for an authenticated user and append its cookies."""
        if response.user is None:
            return response
        new_session = NewSession.coerce(await maybe_await(self.create_session(response.user)))
        response.cookies.extend(await self.issue(new_session))
        if new_session is not None:
            response.session = new_session.access_token
        return response

    async def logout(self, request: CanonicalRequest) -> CanonicalResponse:
        """Invalidate the session and clear both cookies.

        The clearing cookies are always appended, whatever the
        invalidation hook does.
        """
        session = await self._decode(request, self.cookies.access_token)
        refresh = await self._decode(request, self.cookies.refresh_token)

        response = None
        if self.invalidate_session is not None and session is not None:
            try:
                response = await maybe_await(self.invalidate_session(session, refresh))
            except Exception:
                logger.exception("Session invalidation hook failed")
                response = None
        if not isinstance(response, CanonicalResponse):
            response = CanonicalResponse()

        response.cookies.append(clear_cookie(self.cookies.access_token))
        response.cookies.append(clear_cookie(self.cookies.refresh_token))
        return response

    async def get_user(self, request: CanonicalRequest) -> Any:
        """Decode the access cookie; None when absent or invalid."""
        return await self._decode(request, self.cookies.access_token)


class SessionRecord(TypedDict, total=False):
    """Default shape of an opaque session."""

    id: str
    user_id: str
    expires: int


class OpaqueSessionManager(_CookieSession, ABC):
    """Session strategy backed by an application-owned session store.

    Only an encrypted session record travels in the ``sid`` cookie.
    Subclasses implement creation and invalidation against their store.

    Parameters
    ----------
    secret : str
        Secret the cookie is bound to (injected by ``Auth`` if empty).
    cookies : CookiesOptions, optional
        Cookie policy.
    codec : TokenCodec, optional
        Token codec (default ``JWETokenCodec``).
    max_age : int
        Session cookie lifetime in seconds (default 30 days).
    """

    def __init__(
        self,
        *,
        secret: str = "",
        cookies: CookiesOptions | None = None,
        codec: TokenCodec | None = None,
        max_age: int = DEFAULT_SESSION_MAX_AGE,
    ) -> None:
        """Initialize the session manager."""
        super().__init__(secret=secret, cookies=cookies, codec=codec)
        self.max_age = max_age

    def _options(self) -> dict[str, Any]:
        return {**super()._options(), "max_age": self.max_age}

    @abstractmethod
    async def create_session(self, user: Any) -> SessionRecord | Mapping[str, Any] | None:
        """Persist a new session for ``user`` and return it."""

    @abstractmethod
    async def invalidate_session(self, session_id: str) -> None:
        """Log the user out of one session."""

    @abstractmethod
    async def invalidate_user_sessions(self, user_id: str) -> None:
        """Log the user out of every session."""

    def get_session_token(self, request: CanonicalRequest) -> str | None:
        """Raw session cookie value, or None."""
        return request.cookies.get(self.cookies.session_id.name) or None

    async def create_session_token(self, session: Mapping[str, Any]) -> str:
        """Encode ``session`` into the session cookie value."""
        return await self.codec.encode(dict(session), self.secret, max_age=self.max_age)

    async def handle_request(self, request: CanonicalRequest) -> CanonicalResponse:  # noqa: ARG002
        """Nothing to refresh for opaque sessions."""
        return CanonicalResponse()

    async def handle_response(self, response: CanonicalResponse) -> CanonicalResponse:
        """Create the session for an authenticated user and set the sid cookie."""
        if response.user is None:
            return response
        session = await self.create_session(response.user)
        if session is None:
            return response
        token = await self.create_session_token(session)
        response.cookies.append(set_cookie(self.cookies.session_id, token, self.max_age))
        response.session = dict(session)
        return response

    async def logout(self, request: CanonicalRequest) -> CanonicalResponse:
        """Invalidate the current session and clear the sid cookie."""
        session = await self.get_user(request)
        session_id = session.get("id") if isinstance(session, Mapping) else None
        if session_id:
            try:
                await self.invalidate_session(str(session_id))
            except Exception:
                logger.exception("Session invalidation failed for %s", session_id)
        response = CanonicalResponse()
        response.cookies.append(clear_cookie(self.cookies.session_id))
        return response

    async def get_user(self, request: CanonicalRequest) -> Any:
        """Decoded session record; None when absent or invalid."""
        return await self._decode(request, self.cookies.session_id)
