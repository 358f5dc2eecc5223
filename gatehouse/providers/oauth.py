"""OAuth2 authorization-code flow engine.

``login`` redirects to the authorization endpoint with the enabled
checks attached; ``callback`` walks the login state machine::

    AUTHORIZATION_REQUESTED -> CALLBACK_VALIDATED -> TOKEN_EXCHANGED
        -> PROFILE_FETCHED -> SESSION_READY

Any failure moves the flow to FAILED. The raised error carries the
clearing cookies of every check consumed so far.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlsplit

from .. import checks as _checks
from ..client import (
    AuthorizationServer,
    AuthorizationServerClient,
    ClientCredentials,
    HttpxAuthorizationServerClient,
    TokenConformer,
)
from ..exceptions import AuthenticationError, ConfigurationError, ProtocolError
from ..log import redact_url
from ..types import CanonicalResponse, FlowState
from .base import (
    LoginFlow,
    Provider,
    ProviderConfig,
    ProviderKind,
    default_profile,
    maybe_await,
)


if TYPE_CHECKING:
    from ..types import CanonicalRequest, Cookie, TokenSet


logger = logging.getLogger("gatehouse.auth")

ProfileNormalizer = Callable[[Mapping[str, Any]], Any]
OnAuth = Callable[
    [Any, "TokenSet"], "CanonicalResponse | None | Awaitable[CanonicalResponse | None]"
]


@dataclass(frozen=True)
class UserinfoContext:
    """Inputs handed to a custom userinfo request function."""

    provider: OAuthProvider
    server: AuthorizationServer
    tokens: TokenSet
    client: AuthorizationServerClient


@dataclass(frozen=True)
class Endpoint:
    """Endpoint descriptor.

    Attributes
    ----------
    url : str
        Endpoint URL; may be empty when resolved through discovery.
    params : Mapping[str, str]
        Static parameters (authorization endpoint only).
    request : callable, optional
        Replaces the default call (userinfo endpoint only). Receives a
        ``UserinfoContext`` and returns the raw profile, sync or async.
    conform : callable, optional
        Reshapes the raw token response before it is processed (token
        endpoint only).
    """

    url: str = ""
    params: Mapping[str, str] = field(default_factory=dict)
    request: Callable[[UserinfoContext], Any] | None = None
    conform: TokenConformer | None = None


@dataclass(frozen=True, kw_only=True)
class OAuthConfig(ProviderConfig):
    """OAuth2 provider configuration.

    Attributes
    ----------
    client_id : str
        OAuth2 client id.
    client_secret : str
        OAuth2 client secret (empty for public clients).
    authorization, token, userinfo : Endpoint
        Endpoint descriptors.
    issuer : str
        Expected ``iss`` callback parameter (RFC 9207); OIDC discovery base.
    checks : tuple[str, ...]
        Enabled checks among ``state``, ``pkce`` and ``nonce``.
    scopes : tuple[str, ...]
        Requested scopes, unless ``scope`` is a static parameter.
    redirect_to : str
        Target of the default post-login redirect.
    on_auth : callable, optional
        ``on_auth(profile, tokens)`` returning the callback response. The
        default redirects to ``redirect_to`` with ``user=profile``.
    profile : callable
        Normalizes the raw profile before ``on_auth`` sees it.
    client : AuthorizationServerClient, optional
        Authorization-server client; httpx-backed by default.
    logout_token : callable, optional
        ``logout_token(request)`` returning the provider access token to
        revoke on ``<base>/logout/<id>``, sync or async. Typically reads
        the token the application kept in its session payload.
    """

    client_id: str
    client_secret: str = ""
    authorization: Endpoint = field(default_factory=Endpoint)
    token: Endpoint = field(default_factory=Endpoint)
    userinfo: Endpoint = field(default_factory=Endpoint)
    issuer: str = ""
    checks: tuple[str, ...] = ("pkce",)
    scopes: tuple[str, ...] = ()
    redirect_to: str = "/"
    on_auth: OnAuth | None = None
    profile: ProfileNormalizer = default_profile
    client: AuthorizationServerClient | None = None
    logout_token: Callable[[CanonicalRequest], Any] | None = None


class OAuthProvider(Provider):
    """Generic OAuth2 authorization-code provider.

    Parameters
    ----------
    config : OAuthConfig
        Provider configuration.
    """

    kind = ProviderKind.OAUTH2
    config: OAuthConfig

    def _setup(self, config: OAuthConfig) -> None:  # type: ignore[override]
        super()._setup(config)
        unknown = set(config.checks) - set(_checks.CHECKS)
        if unknown:
            msg = f"Unknown checks for provider '{config.id}': {sorted(unknown)}"
            raise ConfigurationError(msg, provider=config.id)
        self.client: AuthorizationServerClient = (
            config.client or HttpxAuthorizationServerClient()
        )
        self.credentials = ClientCredentials(config.client_id, config.client_secret)
        self._validate_endpoints()

    def _validate_endpoints(self) -> None:
        if not self.config.authorization.url:
            msg = f"Provider '{self.id}' has no authorization endpoint"
            raise ConfigurationError(msg, provider=self.id)
        if not self.config.token.url:
            msg = f"Provider '{self.id}' has no token endpoint"
            raise ConfigurationError(msg, provider=self.id)

    def validate(self) -> None:
        """Require a secret whenever checks are enabled."""
        if self.config.checks:
            _ = self.check_options

    async def authorization_server(self) -> AuthorizationServer:
        """Endpoints used by this provider."""
        return AuthorizationServer(
            issuer=self.config.issuer,
            authorization_endpoint=self.config.authorization.url,
            token_endpoint=self.config.token.url,
            userinfo_endpoint=self.config.userinfo.url,
        )

    async def enabled_checks(self) -> tuple[str, ...]:
        """Checks applied to each login of this provider."""
        return tuple(self.config.checks)

    def redirect_uri(self, request: CanonicalRequest) -> str:
        """Callback URL sent to the authorization server."""
        configured = self.config.authorization.params.get("redirect_uri")
        if configured:
            return configured
        return f"{request.origin}{self.pages.callback}"

    def _default_params(self) -> dict[str, str]:
        params = {"response_type": "code", "client_id": self.config.client_id}
        if self.config.scopes:
            params["scope"] = " ".join(self.config.scopes)
        return params

    async def login(self, request: CanonicalRequest) -> CanonicalResponse:
        """Redirect to the authorization endpoint.

        Returns
        -------
        CanonicalResponse
            A 302 response carrying one cookie per enabled check.
        """
        server = await self.authorization_server()
        enabled = await self.enabled_checks()

        params = self._default_params()
        params.update(self.config.authorization.params)
        cookies: list[Cookie] = []
        if enabled:
            options = self.check_options
            if "state" in enabled:
                params["state"], cookie = await _checks.state.create(options)
                cookies.append(cookie)
            if "pkce" in enabled:
                params["code_challenge"], cookie = await _checks.pkce.create(options)
                params["code_challenge_method"] = "S256"
                cookies.append(cookie)
            if "nonce" in enabled:
                params["nonce"], cookie = await _checks.nonce.create(options)
                cookies.append(cookie)

        existing = dict(parse_qsl(urlsplit(server.authorization_endpoint).query))
        if "redirect_uri" not in params and "redirect_uri" not in existing:
            params["redirect_uri"] = self.redirect_uri(request)

        url = self.client.build_authorization_url(server.authorization_endpoint, params)
        logger.debug(
            "Login for provider %s with checks %s: %s", self.id, list(enabled), redact_url(url)
        )
        return CanonicalResponse(status=302, redirect=url, cookies=cookies)

    async def callback(self, request: CanonicalRequest) -> CanonicalResponse:
        """Complete the authorization-code flow.

        Raises
        ------
        ValidationError
            If a check cookie is missing or does not match.
        ProtocolError
            If the authorization server reported an error.
        """
        flow = LoginFlow(self.id, state=FlowState.AUTHORIZATION_REQUESTED)
        cookies: list[Cookie] = []
        try:
            server = await self.authorization_server()
            enabled = await self.enabled_checks()
            options = self.check_options if enabled else None

            expected_state = None
            if "state" in enabled:
                expected_state, cookie = await _checks.state.use(request, options)
                cookies.append(cookie)
            code = self.client.validate_callback(server, request.query, expected_state)
            flow.advance(FlowState.CALLBACK_VALIDATED)

            verifier = None
            if "pkce" in enabled:
                verifier, cookie = await _checks.pkce.use(request, options)
                cookies.append(cookie)
            tokens = await self.client.exchange_code(
                server,
                self.credentials,
                code,
                self.redirect_uri(request),
                code_verifier=verifier,
                conform=self.config.token.conform,
            )
            flow.advance(FlowState.TOKEN_EXCHANGED)

            nonce = None
            if "nonce" in enabled:
                nonce, cookie = await _checks.nonce.use(request, options)
                cookies.append(cookie)
            raw_profile = await self.fetch_profile(server, tokens, nonce)
            flow.advance(FlowState.PROFILE_FETCHED)

            response = await self._on_auth(self.config.profile(raw_profile), tokens)
            flow.advance(FlowState.SESSION_READY)
        except AuthenticationError as exc:
            flow.fail(exc, cookies)
            raise
        except ConfigurationError:
            raise
        except Exception as exc:
            msg = f"Login callback failed: {exc}"
            raise flow.fail(AuthenticationError(msg), cookies) from exc

        response.cookies.extend(cookies)
        logger.info("Login completed for provider %s (flow %s)", self.id, flow.flow_id)
        return response

    async def fetch_profile(
        self,
        server: AuthorizationServer,
        tokens: TokenSet,
        nonce: str | None,  # noqa: ARG002
    ) -> Any:
        """Fetch the raw user profile.

        Uses the configured userinfo request function when there is one,
        otherwise the userinfo endpoint with the access token. ``nonce``
        is only meaningful to ID-token based providers.
        """
        request_fn = self.config.userinfo.request
        if request_fn is not None:
            context = UserinfoContext(
                provider=self, server=server, tokens=tokens, client=self.client
            )
            profile = await maybe_await(request_fn(context))
        else:
            profile = await self.client.fetch_userinfo(server, tokens.access_token)
        if not isinstance(profile, Mapping):
            msg = "User profile response is not an object"
            raise ProtocolError(msg, error="server_error")
        return profile

    async def _on_auth(self, profile: Any, tokens: TokenSet) -> CanonicalResponse:
        response = None
        if self.config.on_auth is not None:
            response = await maybe_await(self.config.on_auth(profile, tokens))
        if response is None:
            return CanonicalResponse(status=302, redirect=self.config.redirect_to, user=profile)
        if not isinstance(response, CanonicalResponse):
            msg = f"on_auth must return a CanonicalResponse or None, got {type(response).__name__}"
            raise TypeError(msg)
        return response

    async def logout(self, request: CanonicalRequest) -> CanonicalResponse:
        """Revoke the token named by ``logout_token``, then hand over to the session.

        Revocation is best effort; the response is always empty so the
        session logout decides where the user lands.
        """
        if self.config.logout_token is not None:
            token = await maybe_await(self.config.logout_token(request))
            if token:
                await self.revoke(token)
        return CanonicalResponse()

    async def _revoke(self, token: str) -> bool:
        server = await self.authorization_server()
        return await self.client.revoke_token(server, self.credentials, token)

    async def revoke(self, token: str) -> bool:
        """Revoke ``token`` at the authorization server, best effort."""
        try:
            revoked = await self._revoke(token)
        except AuthenticationError as exc:
            logger.warning("Token revocation failed for provider %s: %s", self.id, exc)
            return False
        logger.debug("Token revocation for provider %s: %s", self.id, revoked)
        return revoked
