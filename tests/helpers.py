"""Shared test helpers."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

from gatehouse.client import AuthorizationServer, AuthorizationServerClient
from gatehouse.types import CanonicalRequest, Cookie, TokenSet


SECRET = "test-secret-key-for-testing"


class FakeAuthorizationServerClient(AuthorizationServerClient):
    """Authorization-server client whose network calls are AsyncMocks.

    URL building and callback validation keep their real behaviour.
    """

    def __init__(self) -> None:
        self.discover = AsyncMock(  # type: ignore[method-assign]
            return_value=AuthorizationServer(
                issuer="https://idp.example.com",
                authorization_endpoint="https://idp.example.com/authorize",
                token_endpoint="https://idp.example.com/token",
                userinfo_endpoint="https://idp.example.com/userinfo",
                jwks_uri="https://idp.example.com/jwks",
                code_challenge_methods_supported=("S256",),
            )
        )
        self.exchange_code = AsyncMock(  # type: ignore[method-assign]
            return_value=TokenSet(
                access_token="at_test",
                refresh_token="rt_test",
                expires_in=3600,
                id_token="id_token_test",
            )
        )
        self.fetch_userinfo = AsyncMock(  # type: ignore[method-assign]
            return_value={
                "sub": "user-1",
                "name": "Ada Lovelace",
                "email": "ada@example.com",
                "picture": "https://img.example.com/ada.png",
            }
        )
        self.validate_id_token = AsyncMock(  # type: ignore[method-assign]
            return_value={
                "iss": "https://idp.example.com",
                "sub": "oidc-user",
                "aud": "client-id",
                "name": "Grace Hopper",
                "email": "grace@example.com",
            }
        )
        self.revoke_token = AsyncMock(return_value=True)  # type: ignore[method-assign]
        self.delete_grant = AsyncMock(return_value=True)  # type: ignore[method-assign]

    async def discover(self, issuer: str) -> AuthorizationServer:  # pragma: no cover
        raise NotImplementedError

    async def exchange_code(self, *args: Any, **kwargs: Any) -> TokenSet:  # pragma: no cover
        raise NotImplementedError

    async def fetch_userinfo(self, *args: Any, **kwargs: Any) -> Any:  # pragma: no cover
        raise NotImplementedError

    async def validate_id_token(  # pragma: no cover
        self, *args: Any, **kwargs: Any
    ) -> dict[str, Any]:
        raise NotImplementedError


def cookie_jar(*cookie_lists: list[Cookie], jar: dict[str, str] | None = None) -> dict[str, str]:
    """Apply cookie instructions in order, the way a browser would."""
    jar = dict(jar or {})
    for cookies in cookie_lists:
        for cookie in cookies:
            if cookie.is_clear:
                jar.pop(cookie.name, None)
            else:
                jar[cookie.name] = cookie.value
    return jar


def make_request(
    url: str = "https://app.example.com/",
    cookies: dict[str, str] | None = None,
    method: str = "GET",
    **kwargs: Any,
) -> CanonicalRequest:
    """Build a canonical request."""
    return CanonicalRequest(method=method, url=url, cookies=cookies or {}, **kwargs)
