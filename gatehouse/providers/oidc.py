"""OpenID Connect flow engine.

Specializes the OAuth2 engine with one-time discovery and ID-token
based profiles. Discovery runs on first use and is cached for the
provider's lifetime; concurrent first requests share one fetch.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from ..client import AuthorizationServer
from ..exceptions import ConfigurationError, ProtocolError
from .base import Memoized, ProviderKind
from .oauth import OAuthConfig, OAuthProvider


if TYPE_CHECKING:
    from ..types import TokenSet


logger = logging.getLogger("gatehouse.auth")


@dataclass(frozen=True, kw_only=True)
class OIDCConfig(OAuthConfig):
    """OpenID Connect provider configuration.

    Attributes
    ----------
    jwks_url : str
        JWKS URL; required when no issuer is configured.
    code_challenge_methods : tuple[str, ...] or None
        PKCE methods the server supports, for manually configured
        servers. Discovered servers advertise their own.
    """

    scopes: tuple[str, ...] = ("openid", "profile", "email")
    jwks_url: str = ""
    code_challenge_methods: tuple[str, ...] | None = None


@dataclass(frozen=True)
class _Initialized:
    server: AuthorizationServer
    checks: tuple[str, ...]


class OIDCProvider(OAuthProvider):
    """Generic OpenID Connect provider.

    With an ``issuer`` the endpoints are resolved from
    ``<issuer>/.well-known/openid-configuration``; explicitly configured
    endpoints take precedence over discovered ones. Without an issuer
    the authorization, token and JWKS endpoints must all be configured.

    If the server does not advertise S256 PKCE, ``pkce`` is dropped for
    this provider and ``nonce`` is enforced in its place.
    """

    kind = ProviderKind.OIDC
    config: OIDCConfig

    def _setup(self, config: OIDCConfig) -> None:  # type: ignore[override]
        super()._setup(config)
        self._initialized: Memoized[_Initialized] = Memoized(self._initialize)

    def _validate_endpoints(self) -> None:
        if self.config.issuer:
            return
        missing = [
            name
            for name, url in (
                ("authorization", self.config.authorization.url),
                ("token", self.config.token.url),
                ("jwks", self.config.jwks_url),
            )
            if not url
        ]
        if missing:
            msg = (
                f"Provider '{self.id}' has no issuer, so its endpoints must be "
                f"configured; missing: {', '.join(missing)}"
            )
            raise ConfigurationError(msg, provider=self.id)

    @property
    def initialized(self) -> bool:
        """Whether discovery has completed."""
        return self._initialized.done

    async def _initialize(self) -> _Initialized:
        config = self.config
        if config.issuer:
            discovered = await self.client.discover(config.issuer)
            server = replace(
                discovered,
                authorization_endpoint=config.authorization.url
                or discovered.authorization_endpoint,
                token_endpoint=config.token.url or discovered.token_endpoint,
                userinfo_endpoint=config.userinfo.url or discovered.userinfo_endpoint,
                jwks_uri=config.jwks_url or discovered.jwks_uri,
            )
        else:
            server = AuthorizationServer(
                authorization_endpoint=config.authorization.url,
                token_endpoint=config.token.url,
                userinfo_endpoint=config.userinfo.url,
                jwks_uri=config.jwks_url,
                code_challenge_methods_supported=config.code_challenge_methods,
            )

        if not server.authorization_endpoint or not server.token_endpoint:
            msg = (
                f"Discovery for provider '{self.id}' did not yield "
                "authorization and token endpoints"
            )
            raise ConfigurationError(msg, provider=self.id)

        checks = tuple(config.checks)
        if "pkce" in checks and not server.supports_s256:
            checks = tuple(c for c in checks if c != "pkce")
            if "nonce" not in checks:
                checks = (*checks, "nonce")
            logger.warning(
                "Provider %s does not advertise S256 PKCE; relying on %s instead",
                self.id,
                ", ".join(checks),
            )

        logger.info("Initialized OIDC provider %s (issuer %s)", self.id, server.issuer or "-")
        return _Initialized(server=server, checks=checks)

    async def initialize(self) -> AuthorizationServer:
        """Run discovery if needed and return the resolved server metadata."""
        return (await self._initialized.get()).server

    async def authorization_server(self) -> AuthorizationServer:
        """Discovered (or configured) endpoints."""
        return await self.initialize()

    async def enabled_checks(self) -> tuple[str, ...]:
        """Configured checks after the PKCE fallback."""
        return (await self._initialized.get()).checks

    async def fetch_profile(
        self, server: AuthorizationServer, tokens: TokenSet, nonce: str | None
    ) -> Any:
        """Validate the ID token and return its claims."""
        if not tokens.id_token:
            msg = "Token response is missing id_token"
            raise ProtocolError(msg, error="invalid_token")
        return await self.client.validate_id_token(server, self.credentials, tokens.id_token, nonce)
