"""Authorization-server client: the OAuth2/OIDC wire protocol.

Defines the AuthorizationServerClient contract used by the flow engines
and the default implementation on top of ``httpx`` (transport) and
``authlib`` (JWKS / ID token validation). Timeouts and transport errors
are handled here, never in the flow engines.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError

from .checks import verify_state
from .exceptions import NetworkError, ProtocolError, ValidationError
from .log import redact_sensitive_data
from .types import TokenSet


logger = logging.getLogger("gatehouse.client")

DISCOVERY_PATH = "/.well-known/openid-configuration"

ID_TOKEN_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512", "PS256"]

TokenConformer = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class AuthorizationServer:
    """Authorization-server metadata (RFC 8414 / OIDC discovery subset).

    Attributes
    ----------
    issuer : str
        Issuer identifier.
    authorization_endpoint : str
        Authorization endpoint URL.
    token_endpoint : str
        Token endpoint URL.
    userinfo_endpoint : str
        Userinfo endpoint URL (may be empty).
    jwks_uri : str
        JWKS URL used to verify ID tokens (may be empty).
    revocation_endpoint : str
        RFC 7009 revocation endpoint (may be empty).
    code_challenge_methods_supported : tuple[str, ...] or None
        Advertised PKCE methods; None when the server did not say.
    """

    issuer: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    userinfo_endpoint: str = ""
    jwks_uri: str = ""
    revocation_endpoint: str = ""
    code_challenge_methods_supported: tuple[str, ...] | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_metadata(cls, data: Mapping[str, Any]) -> AuthorizationServer:
        """Build from a decoded discovery document."""
        methods = data.get("code_challenge_methods_supported")
        return cls(
            issuer=str(data.get("issuer") or ""),
            authorization_endpoint=str(data.get("authorization_endpoint") or ""),
            token_endpoint=str(data.get("token_endpoint") or ""),
            userinfo_endpoint=str(data.get("userinfo_endpoint") or ""),
            jwks_uri=str(data.get("jwks_uri") or ""),
            revocation_endpoint=str(data.get("revocation_endpoint") or ""),
            code_challenge_methods_supported=tuple(methods) if methods is not None else None,
            raw=dict(data),
        )

    @property
    def supports_s256(self) -> bool:
        """Whether the server advertises the S256 PKCE method."""
        return "S256" in (self.code_challenge_methods_supported or ())


@dataclass(frozen=True)
class ClientCredentials:
    """OAuth2 client registration."""

    client_id: str
    client_secret: str = ""


class AuthorizationServerClient(ABC):
    """Abstract contract for talking to an authorization server."""

    @abstractmethod
    async def discover(self, issuer: str) -> AuthorizationServer:
        """Resolve server metadata from the issuer's discovery document.

        Raises
        ------
        ProtocolError
            If the document cannot be fetched or names another issuer.
        """

    def build_authorization_url(self, endpoint: str, params: Mapping[str, str]) -> str:
        """Merge ``params`` into the query string of ``endpoint``.

        Parameters already present on ``endpoint`` are overridden.
        """
        parts = urlsplit(endpoint)
        query = dict(parse_qsl(parts.query, keep_blank_values=True))
        query.update({k: v for k, v in params.items() if v is not None})
        return urlunsplit(parts._replace(query=urlencode(query)))

    def validate_callback(
        self,
        server: AuthorizationServer,
        query: Mapping[str, str],
        expected_state: str | None,
    ) -> str:
        """Validate the callback query and return the authorization code.

        Parameters
        ----------
        server : AuthorizationServer
            Metadata of the server that issued the redirect.
        query : Mapping[str, str]
            Callback query parameters.
        expected_state : str or None
            The state stored at login, or None when the state check is
            disabled for this provider.

        Raises
        ------
        ProtocolError
            If the server returned an ``error`` or no ``code``.
        ValidationError
            If the returned ``state`` does not match ``expected_state``.
        """
        if query.get("error"):
            error = query["error"]
            description = query.get("error_description") or error
            msg = f"Authorization server returned error: {description}"
            raise ProtocolError(msg, error=error, error_description=description)

        if expected_state is not None and not verify_state(expected_state, query.get("state")):
            msg = "State parameter mismatch (possible CSRF attack)"
            raise ValidationError(msg, check="state")
        if expected_state is None and query.get("state"):
            msg = "Unexpected state parameter in callback"
            raise ValidationError(msg, check="state")

        iss = query.get("iss")
        if iss and server.issuer and iss.rstrip("/") != server.issuer.rstrip("/"):
            msg = f"Callback issuer mismatch: expected '{server.issuer}', got '{iss}'"
            raise ProtocolError(msg, error="invalid_request")

        code = query.get("code")
        if not code:
            msg = "No authorization code in callback"
            raise ProtocolError(msg, error="invalid_request")
        return code

    @abstractmethod
    async def exchange_code(
        self,
        server: AuthorizationServer,
        client: ClientCredentials,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
        conform: TokenConformer | None = None,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        server : AuthorizationServer
            Metadata with the token endpoint.
        client : ClientCredentials
            Client registration.
        code : str
            The authorization code from the callback.
        redirect_uri : str
            The redirect URI used in the authorization request.
        code_verifier : str, optional
            PKCE code verifier.
        conform : callable, optional
            Hook applied to the raw JSON body before it is processed.

        Raises
        ------
        ProtocolError
            On an OAuth2 error body, an authentication challenge, or a
            malformed response.
        NetworkError
            On transport failures.
        """

    @abstractmethod
    async def fetch_userinfo(self, server: AuthorizationServer, access_token: str) -> Any:
        """Fetch the decoded body of the userinfo endpoint."""

    @abstractmethod
    async def validate_id_token(
        self,
        server: AuthorizationServer,
        client: ClientCredentials,
        id_token: str,
        nonce: str | None,
    ) -> dict[str, Any]:
        """Verify an ID token and return its claims.

        Checks signature, issuer, audience, expiry, and nonce.
        """

    async def revoke_token(
        self, server: AuthorizationServer, client: ClientCredentials, token: str
    ) -> bool:
        """Revoke a token (RFC 7009). Returns False when unsupported."""
        return False

    async def delete_grant(
        self,
        url: str,
        client: ClientCredentials,
        token: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Delete the application grant behind ``token``.

        Used by providers without RFC 7009 revocation that expose a
        ``DELETE`` grant endpoint authenticated with the client
        credentials (GitHub). Returns False when unsupported.
        """
        return False


def _token_kid(token: str) -> str | None:
    """Key id from a compact JWS header; None when absent or unreadable."""
    try:
        header = json_loads(urlsafe_b64decode(to_bytes(token.split(".", 1)[0])))
    except (ValueError, TypeError):
        return None
    kid = header.get("kid") if isinstance(header, dict) else None
    return kid if isinstance(kid, str) else None


def _key_ids(jwks: Mapping[str, Any]) -> set[str]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        return set()
    return {key["kid"] for key in keys if isinstance(key, dict) and "kid" in key}


class HttpxAuthorizationServerClient(AuthorizationServerClient):
    """AuthorizationServerClient backed by a shared ``httpx.AsyncClient``.

    Parameters
    ----------
    timeout : float
        Default request timeout in seconds (default ``30``).
    transport : httpx.AsyncBaseTransport, optional
        Custom transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client."""
        self.timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._jwks_cache: dict[str, dict[str, Any]] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client. Call from app shutdown lifecycle."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_json(self, url: str, headers: dict[str, str] | None = None) -> Any:
        try:
            client = await self._get_client()
            resp = await client.get(url, headers=headers, timeout=10.0)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            msg = f"GET {url} failed: {exc.response.status_code}"
            raise ProtocolError(msg, error="server_error") from exc
        except httpx.HTTPError as exc:
            msg = f"GET {url} request failed: {exc}"
            raise NetworkError(msg) from exc
        except ValueError as exc:
            msg = f"GET {url} returned invalid JSON"
            raise ProtocolError(msg, error="server_error") from exc

    async def discover(self, issuer: str) -> AuthorizationServer:
        """Fetch and verify ``<issuer>/.well-known/openid-configuration``."""
        url = f"{issuer.rstrip('/')}{DISCOVERY_PATH}"
        config = await self._get_json(url)
        if not isinstance(config, dict):
            msg = "Invalid OIDC discovery document"
            raise ProtocolError(msg, error="server_error")

        # Issuer must exactly match the configured issuer
        discovered_issuer = str(config.get("issuer") or "")
        expected = issuer.rstrip("/")
        if discovered_issuer.rstrip("/") != expected:
            msg = f"OIDC issuer mismatch: expected '{expected}', got '{discovered_issuer}'"
            raise ProtocolError(msg, error="invalid_issuer")

        logger.debug("Discovered authorization server %s", discovered_issuer)
        return AuthorizationServer.from_metadata(config)

    async def exchange_code(
        self,
        server: AuthorizationServer,
        client: ClientCredentials,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
        conform: TokenConformer | None = None,
    ) -> TokenSet:
        """Exchange the code at the token endpoint."""
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client.client_id,
        }
        if client.client_secret:
            data["client_secret"] = client.client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            http = await self._get_client()
            resp = await http.post(
                server.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Token exchange request failed: {exc}"
            raise NetworkError(msg) from exc

        challenge = resp.headers.get("www-authenticate")
        if challenge:
            msg = f"Token endpoint returned an authentication challenge: {challenge}"
            raise ProtocolError(msg, error="invalid_client")

        try:
            raw = resp.json()
        except ValueError:
            raw = dict(parse_qsl(resp.text))

        if not isinstance(raw, dict):
            msg = "Token endpoint returned a non-object body"
            raise ProtocolError(msg, error="server_error")

        if conform is not None:
            raw = conform(raw)

        if "error" in raw:
            description = raw.get("error_description") or raw["error"]
            msg = f"Token endpoint error: {description}"
            raise ProtocolError(msg, error=raw["error"], error_description=description)

        if resp.is_error:
            msg = f"Token exchange failed: {resp.status_code}"
            raise ProtocolError(msg, error="server_error")

        if not raw.get("access_token"):
            logger.debug("Token response without access token: %s", redact_sensitive_data(raw))
            msg = "Token endpoint response is missing access_token"
            raise ProtocolError(msg, error="server_error")

        return TokenSet.from_response(raw)

    async def fetch_userinfo(self, server: AuthorizationServer, access_token: str) -> Any:
        """GET the userinfo endpoint with the access token."""
        if not server.userinfo_endpoint:
            msg = "No userinfo endpoint configured"
            raise ProtocolError(msg, error="server_error")
        return await self._get_json(
            server.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

    async def _fetch_jwks(self, jwks_uri: str, *, refresh: bool = False) -> dict[str, Any]:
        """Fetch the JWKS key set from the provider.

        Key sets are cached per URI; ``refresh`` bypasses and replaces the
        cached copy.
        """
        cached = self._jwks_cache.get(jwks_uri)
        if cached is not None and not refresh:
            return cached
        data = await self._get_json(jwks_uri)
        if not isinstance(data, dict):
            msg = "Invalid JWKS"
            raise ProtocolError(msg, error="server_error")
        self._jwks_cache[jwks_uri] = data
        return data

    async def validate_id_token(
        self,
        server: AuthorizationServer,
        client: ClientCredentials,
        id_token: str,
        nonce: str | None,
    ) -> dict[str, Any]:
        """Validate an OIDC ID token against the server's JWKS."""
        if not server.jwks_uri:
            msg = "JWKS URI not available (run discovery first)"
            raise ProtocolError(msg, error="server_error")
        jwks_data = await self._fetch_jwks(server.jwks_uri)
        kid = _token_kid(id_token)
        if kid is not None and kid not in _key_ids(jwks_data):
            # signing key rotated since the set was cached
            logger.debug("Unknown ID token kid %s; refetching %s", kid, server.jwks_uri)
            jwks_data = await self._fetch_jwks(server.jwks_uri, refresh=True)

        jwt = JsonWebToken(ID_TOKEN_ALGORITHMS)
        claims_options: dict[str, Any] = {
            "aud": {"essential": True, "value": client.client_id},
            "exp": {"essential": True},
        }
        if server.issuer:
            claims_options["iss"] = {"essential": True, "value": server.issuer}
        if nonce:
            claims_options["nonce"] = {"essential": True, "value": nonce}

        try:
            key_set = JsonWebKey.import_key_set(jwks_data)
            claims = jwt.decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except (JoseError, ValueError) as exc:
            msg = f"ID token validation failed: {exc}"
            raise ProtocolError(msg, error="invalid_token") from exc

        return dict(claims)

    async def revoke_token(
        self, server: AuthorizationServer, client: ClientCredentials, token: str
    ) -> bool:
        """POST to the revocation endpoint if one is configured."""
        if not server.revocation_endpoint:
            return False
        data = {"token": token, "client_id": client.client_id}
        if client.client_secret:
            data["client_secret"] = client.client_secret
        try:
            http = await self._get_client()
            resp = await http.post(server.revocation_endpoint, data=data, timeout=10.0)
        except httpx.HTTPError:
            return False
        return resp.is_success

    async def delete_grant(
        self,
        url: str,
        client: ClientCredentials,
        token: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """DELETE the grant at ``url`` with HTTP Basic client authentication."""
        try:
            http = await self._get_client()
            resp = await http.request(
                "DELETE",
                url,
                json={"access_token": token},
                auth=(client.client_id, client.client_secret),
                headers={"Accept": "application/json", **(headers or {})},
                timeout=10.0,
            )
        except httpx.HTTPError:
            return False
        if not resp.is_success:
            logger.debug("Grant deletion at %s answered %s", url, resp.status_code)
        return resp.is_success
