"""Request dispatch across providers and the session strategy.

``Auth`` is built once at startup. It re-binds every provider with the
shared secret, cookie policy, codec and base path, then serves each
request with a single ``handle`` call over canonical types.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from collections.abc import Iterable
from types import MappingProxyType
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from .checks import DEFAULT_CHECK_MAX_AGE
from .client import HttpxAuthorizationServerClient
from .codec import JWETokenCodec
from .config import create_provider_from_settings, get_settings
from .cookies import create_cookies_options
from .exceptions import AuthenticationError, ConfigurationError
from .log import redact_url, set_level
from .providers.oauth import OAuthProvider
from .session import TokenSessionManager
from .types import CanonicalResponse


if TYPE_CHECKING:
    from .client import AuthorizationServerClient
    from .codec import TokenCodec
    from .config import GatehouseSettings
    from .cookies import CookiesOptions
    from .providers import Provider
    from .session import SessionStrategy
    from .types import CanonicalRequest


logger = logging.getLogger("gatehouse.auth")

ACTIONS = ("login", "callback", "logout")


class Auth:
    """Authentication entry point.

    Parameters
    ----------
    providers : Iterable[Provider]
        Login providers; ids must be unique.
    session : SessionStrategy, optional
        Session strategy turning authenticated users into cookies.
    secret : str
        Secret all cookies are bound to.
    base_path : str
        Base path of the auth pages (default ``/auth``).
    use_secure_cookies : bool
        Use ``Secure`` cookies with the ``__Secure-`` prefix.
    check_max_age : int
        Lifetime of check cookies in seconds (default 15 minutes).
    cookies : CookiesOptions, optional
        Full cookie policy; overrides ``use_secure_cookies``.
    codec : TokenCodec, optional
        Token codec shared by checks and sessions.
    client : AuthorizationServerClient, optional
        Authorization-server client shared by OAuth providers.
    error_page : str, optional
        Redirect failed logins here with ``?error=<code>`` instead of
        answering with a JSON error body.
    logout_redirect : str or None
        Where logout redirects when neither the provider nor the session
        strategy produced a response (default ``/``).

    Raises
    ------
    ConfigurationError
        On a missing secret, duplicate provider ids, or an unusable
        provider.
    """

    def __init__(
        self,
        providers: Iterable[Provider],
        session: SessionStrategy | None = None,
        *,
        secret: str,
        base_path: str = "/auth",
        use_secure_cookies: bool = False,
        check_max_age: int = DEFAULT_CHECK_MAX_AGE,
        cookies: CookiesOptions | None = None,
        codec: TokenCodec | None = None,
        client: AuthorizationServerClient | None = None,
        error_page: str | None = None,
        logout_redirect: str | None = "/",
    ) -> None:
        """Initialize and bind all providers."""
        if not secret:
            msg = "Auth requires a non-empty secret"
            raise ConfigurationError(msg)
        self.secret = secret
        self.base_path = "/" + base_path.strip("/") if base_path.strip("/") else ""
        self.check_max_age = check_max_age
        self.cookies = cookies or create_cookies_options(use_secure_cookies)
        self.codec = codec or JWETokenCodec()
        self.client = client or HttpxAuthorizationServerClient()
        self.error_page = error_page
        self.logout_redirect = logout_redirect

        bound: dict[str, Provider] = {}
        for provider in providers:
            if provider.id in bound:
                msg = f"Duplicate provider id '{provider.id}'"
                raise ConfigurationError(msg, provider=provider.id)
            bound[provider.id] = self._bind(provider)
        self.providers = MappingProxyType(bound)
        self.session = self._bind_session(session) if session is not None else None

        logger.debug(
            "Auth ready at %s with providers %s",
            self.base_path or "/",
            ", ".join(self.providers) or "-",
        )

    @classmethod
    def from_settings(
        cls,
        settings: GatehouseSettings | None = None,
        session: SessionStrategy | None = None,
        **overrides: Any,
    ) -> Auth:
        """Build an ``Auth`` from layered settings.

        Parameters
        ----------
        settings : GatehouseSettings, optional
            Settings to use; the cached global settings by default.
        session : SessionStrategy, optional
            Session strategy. A ``TokenSessionManager`` picks up the
            configured cookie lifetimes.
        **overrides : Any
            Constructor arguments taking precedence over the settings.
        """
        settings = settings or get_settings()
        set_level(settings.log.level)

        if isinstance(session, TokenSessionManager):
            session = session.with_options(
                access_token_max_age=settings.session.access_token_max_age,
                refresh_token_max_age=settings.session.refresh_token_max_age,
            )

        options: dict[str, Any] = {
            "secret": settings.session.secret,
            "base_path": settings.base_path,
            "check_max_age": settings.session.check_max_age,
            "cookies": settings.cookies.to_options(),
            "error_page": settings.error_page,
        }
        providers = overrides.pop("providers", None)
        options.update(overrides)
        if providers is None:
            providers = [create_provider_from_settings(p) for p in settings.providers]
        return cls(providers, session, **options)

    def _bind(self, provider: Provider) -> Provider:
        """Fill in the shared options the provider left unset."""
        config = provider.config
        changes: dict[str, Any] = {}
        if not config.secret:
            changes["secret"] = self.secret
        if config.cookies is None:
            changes["cookies"] = self.cookies
        if config.codec is None:
            changes["codec"] = self.codec
        if config.check_max_age is None:
            changes["check_max_age"] = self.check_max_age
        if config.base_path is None:
            changes["base_path"] = self.base_path
        if isinstance(provider, OAuthProvider) and provider.config.client is None:
            changes["client"] = self.client
        bound = provider.with_options(**changes) if changes else provider
        bound.validate()
        return bound

    def _bind_session(self, session: SessionStrategy) -> SessionStrategy:
        changes: dict[str, Any] = {}
        if not getattr(session, "secret", ""):
            changes["secret"] = self.secret
        is_explicit = getattr(session, "is_explicit", None)
        if is_explicit is not None:
            if not is_explicit("cookies"):
                changes["cookies"] = self.cookies
            if not is_explicit("codec"):
                changes["codec"] = self.codec
        return session.with_options(**changes) if changes else session

    def is_auth_page(self, path: str) -> bool:
        """Whether ``path`` is one of the login, callback, or logout pages."""
        return self._route(path) is not None

    def _route(self, path: str) -> tuple[str, str | None] | None:
        """Split ``<base>/<action>[/<provider id>]``; None for other paths."""
        prefix = f"{self.base_path}/"
        if not path.startswith(prefix):
            return None
        parts = [p for p in path[len(prefix):].split("/") if p]
        if not parts or parts[0] not in ACTIONS or len(parts) > 2:
            return None
        return parts[0], parts[1] if len(parts) == 2 else None

    async def handle(self, request: CanonicalRequest) -> CanonicalResponse:
        """Serve one request.

        Auth pages produce terminal responses. Every other path yields a
        non-terminal response carrying the current user and any cookies
        from a session refresh.

        Raises
        ------
        ConfigurationError
            Never converted into a response.
        """
        route = self._route(request.path)
        action, provider_id = route if route else (None, None)

        prior = CanonicalResponse()
        if self.session is not None and action != "logout":
            prior = await self.session.handle_request(request)

        if action is None:
            response = CanonicalResponse(cookies=list(prior.cookies))
            response.session = prior.session
            if prior.session is not None:
                response.user = prior.session
            else:
                response.user = await self.get_user(request)
            return response

        try:
            response = await self._dispatch(request, action, provider_id)
        except AuthenticationError as exc:
            logger.debug("Failed %s request %s", action, redact_url(request.url))
            response = self._error_response(exc)

        response.cookies[:0] = prior.cookies
        return response

    async def _dispatch(
        self, request: CanonicalRequest, action: str, provider_id: str | None
    ) -> CanonicalResponse:
        if action == "logout" and provider_id is None:
            return await self._logout(request, None)

        provider = self.providers.get(provider_id) if provider_id else None
        if provider is None:
            logger.debug("No provider for %s", request.path)
            return CanonicalResponse(
                status=404,
                body={
                    "error": "not_found",
                    "error_description": f"Unknown provider '{provider_id}'",
                },
            )

        if action == "login":
            return await provider.login(request)
        if action == "callback":
            response = await provider.callback(request)
            if self.session is not None:
                response = await self.session.handle_response(response)
            return response
        return await self._logout(request, provider)

    async def _logout(
        self, request: CanonicalRequest, provider: Provider | None
    ) -> CanonicalResponse:
        response = await provider.logout(request) if provider is not None else CanonicalResponse()
        if self.session is not None:
            response.merge(await self.session.logout(request))
        if not response.is_terminal and self.logout_redirect:
            response.status = 302
            response.redirect = self.logout_redirect
        return response

    def _error_response(self, exc: AuthenticationError) -> CanonicalResponse:
        """Convert a request-time failure into a response."""
        error = getattr(exc, "error", None) or exc.error_code
        logger.warning(
            "Authentication failed (provider=%s, flow=%s): %s",
            exc.provider,
            exc.flow_id,
            exc.message,
        )
        if self.error_page:
            separator = "&" if "?" in self.error_page else "?"
            return CanonicalResponse(
                status=302,
                redirect=f"{self.error_page}{separator}{urlencode({'error': error})}",
                cookies=list(exc.cookies),
                error=exc,
            )
        return CanonicalResponse(
            status=exc.status_code,
            body={"error": error, "error_description": exc.message},
            cookies=list(exc.cookies),
            error=exc,
        )

    async def get_user(self, request: CanonicalRequest) -> Any:
        """Current session payload, or None."""
        if self.session is None:
            return None
        return await self.session.get_user(request)

    async def close(self) -> None:
        """Close the shared authorization-server client."""
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
