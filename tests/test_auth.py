"""Tests for request dispatch in Auth."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock
from urllib.parse import parse_qsl, urlsplit

import pytest

from helpers import SECRET, FakeAuthorizationServerClient, cookie_jar, make_request

from gatehouse import (
    Auth,
    AuthorizationServer,
    ConfigurationError,
    CredentialsConfig,
    CredentialsProvider,
    GatehouseSettings,
    GitHubProvider,
    HttpxAuthorizationServerClient,
    NewSession,
    OIDCConfig,
    OIDCProvider,
    ProtocolError,
    TokenSessionManager,
)
from gatehouse.cookies import create_cookies_options


APP = "https://app.example.com"
ACCESS = "gatehouse.access-token"
REFRESH = "gatehouse.refresh-token"


def _session(**kwargs: Any) -> TokenSessionManager:
    kwargs.setdefault("create_session", lambda user: NewSession(user, {"id": user["id"]}))
    return TokenSessionManager(**kwargs)


def _auth(client: FakeAuthorizationServerClient, *providers: Any, **kwargs: Any) -> Auth:
    kwargs.setdefault("secret", SECRET)
    return Auth(providers or [GitHubProvider("gh-id", "gh-secret")], client=client, **kwargs)


def _query(url: str | None) -> dict[str, str]:
    return dict(parse_qsl(urlsplit(url or "").query))


async def _login(auth: Auth, provider_id: str = "github") -> tuple[dict[str, str], str]:
    response = await auth.handle(make_request(f"{APP}/auth/login/{provider_id}"))
    return cookie_jar(response.cookies), _query(response.redirect)["state"]


class TestConstruction:
    """Startup validation and provider binding."""

    def test_secret_required(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Auth cannot run without a secret."""
        with pytest.raises(ConfigurationError, match="secret"):
            _auth(fake_client, secret="")

    def test_duplicate_ids(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Provider ids must be unique."""
        with pytest.raises(ConfigurationError, match="Duplicate provider id 'github'"):
            _auth(fake_client, GitHubProvider("a"), GitHubProvider("b"))

    def test_binding(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Unset provider options are filled from Auth."""
        auth = _auth(fake_client, base_path="/api/auth/", check_max_age=120)
        provider = auth.providers["github"]
        assert provider.config.secret == SECRET
        assert provider.client is fake_client
        assert provider.check_max_age == 120
        assert provider.pages.callback == "/api/auth/callback/github"
        assert auth.base_path == "/api/auth"

    def test_provider_options_win(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Options set on the provider are kept."""
        own_client = FakeAuthorizationServerClient()
        github = GitHubProvider("gh-id", secret="own-secret", client=own_client, base_path="/gh")
        auth = _auth(fake_client, github)
        provider = auth.providers["github"]
        assert provider.config.secret == "own-secret"
        assert provider.client is own_client
        assert provider.pages.login == "/gh/login/github"

    def test_providers_are_read_only(self, fake_client: FakeAuthorizationServerClient) -> None:
        """The provider table cannot be changed after startup."""
        auth = _auth(fake_client)
        with pytest.raises(TypeError):
            auth.providers["other"] = auth.providers["github"]  # type: ignore[index]

    def test_session_binding(self, fake_client: FakeAuthorizationServerClient) -> None:
        """The session strategy inherits the secret and cookie policy."""
        secure = create_cookies_options(use_secure_cookies=True)
        auth = _auth(fake_client, session=_session(), cookies=secure)
        assert auth.session is not None
        assert auth.session.secret == SECRET
        assert auth.session.cookies is secure
        assert auth.providers["github"].cookies is secure


class TestRouting:
    """Path parsing."""

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/auth/login/github", ("login", "github")),
            ("/auth/callback/github", ("callback", "github")),
            ("/auth/logout", ("logout", None)),
            ("/auth/logout/github", ("logout", "github")),
            ("/auth/login", ("login", None)),
            ("/auth/session", None),
            ("/auth/login/github/extra", None),
            ("/other/login/github", None),
            ("/auth", None),
        ],
    )
    def test_route(
        self, fake_client: FakeAuthorizationServerClient, path: str, expected: Any
    ) -> None:
        """Only <base>/<action>[/<id>] paths are auth pages."""
        assert _auth(fake_client)._route(path) == expected


class TestLoginAndCallback:
    """The login round trip through Auth."""

    @pytest.mark.asyncio
    async def test_login_redirect(self, fake_client: FakeAuthorizationServerClient) -> None:
        """GET /auth/login/github redirects with state and sets the state cookie."""
        auth = _auth(fake_client, session=_session())
        response = await auth.handle(make_request(f"{APP}/auth/login/github"))

        assert response.status == 302
        query = _query(response.redirect)
        assert query["client_id"] == "gh-id"
        assert query["state"]
        assert [c.name for c in response.cookies] == ["gatehouse.state"]

    @pytest.mark.asyncio
    async def test_callback_sets_session(self, fake_client: FakeAuthorizationServerClient) -> None:
        """A valid callback redirects with session cookies and clears the state cookie."""
        create = MagicMock(side_effect=lambda user: NewSession(user, {"id": user["id"]}))
        auth = _auth(fake_client, session=_session(create_session=create))
        jar, state = await _login(auth)

        response = await auth.handle(
            make_request(f"{APP}/auth/callback/github?code=X&state={state}", cookies=jar)
        )

        assert response.status == 302
        assert response.redirect == "/"
        assert [(c.name, c.is_clear) for c in response.cookies] == [
            ("gatehouse.state", True),
            (ACCESS, False),
            (REFRESH, False),
        ]
        create.assert_called_once()
        new_jar = cookie_jar(response.cookies, jar=jar)
        user = await auth.get_user(make_request(cookies=new_jar))
        assert user["email"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_callback_without_state_cookie(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """A missing state cookie answers 400 without exchanging the code."""
        auth = _auth(fake_client, session=_session())

        response = await auth.handle(make_request(f"{APP}/auth/callback/github?code=X&state=S"))

        assert response.status == 400
        assert response.body["error"] == "invalid_request"
        assert "state cookie was missing" in response.body["error_description"]
        assert [c.name for c in response.cookies] == ["gatehouse.state"]
        assert response.cookies[0].is_clear
        assert isinstance(response.error, Exception)
        fake_client.exchange_code.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_protocol_error(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Token endpoint errors answer 401 with the OAuth2 error code."""
        fake_client.exchange_code.side_effect = ProtocolError(
            "Token endpoint error: expired", error="invalid_grant"
        )
        auth = _auth(fake_client, session=_session())
        jar, state = await _login(auth)

        response = await auth.handle(
            make_request(f"{APP}/auth/callback/github?code=X&state={state}", cookies=jar)
        )

        assert response.status == 401
        assert response.body == {
            "error": "invalid_grant",
            "error_description": "Token endpoint error: expired",
        }
        assert all(c.is_clear for c in response.cookies)

    @pytest.mark.asyncio
    async def test_error_page(self, fake_client: FakeAuthorizationServerClient) -> None:
        """With an error page, failures redirect there."""
        auth = _auth(fake_client, error_page="/login?next=/")

        response = await auth.handle(make_request(f"{APP}/auth/callback/github?code=X"))

        assert response.status == 302
        assert response.redirect == "/login?next=/&error=invalid_request"
        assert response.body is None

    @pytest.mark.asyncio
    async def test_unknown_provider(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Unknown provider ids answer 404."""
        auth = _auth(fake_client)
        response = await auth.handle(make_request(f"{APP}/auth/login/gitlab"))
        assert response.status == 404
        assert response.body["error"] == "not_found"

        missing_id = await auth.handle(make_request(f"{APP}/auth/callback"))
        assert missing_id.status == 404

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """Configuration problems are not turned into responses."""
        fake_client.discover.return_value = AuthorizationServer(issuer="https://idp.example.com")
        oidc = OIDCProvider(
            OIDCConfig(id="corp", client_id="corp-id", issuer="https://idp.example.com")
        )
        auth = _auth(fake_client, oidc)

        with pytest.raises(ConfigurationError):
            await auth.handle(make_request(f"{APP}/auth/login/corp"))


class TestCredentials:
    """The credentials provider behind Auth."""

    @pytest.mark.asyncio
    async def test_authorize(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Accepted credentials produce session cookies."""

        def authorize(request: Any) -> Any:
            if request.query.get("password") == "hunter2":
                return {"id": "u-1", "name": "Ada"}
            return None

        provider = CredentialsProvider(CredentialsConfig(authorize=authorize))
        auth = _auth(fake_client, provider, session=_session())

        ok = await auth.handle(make_request(f"{APP}/auth/callback/credentials?password=hunter2"))
        assert [c.name for c in ok.cookies] == [ACCESS, REFRESH]
        assert ok.session == {"id": "u-1", "name": "Ada"}

        rejected = await auth.handle(make_request(f"{APP}/auth/callback/credentials?password=x"))
        assert rejected.status == 401
        assert rejected.body["error"] == "authentication_failed"
        assert rejected.cookies == []

    @pytest.mark.asyncio
    async def test_defaults(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Without hooks every page is an empty response."""
        provider = CredentialsProvider()
        request = make_request(f"{APP}/auth/login/credentials")
        assert not (await provider.login(request)).is_terminal
        assert not (await provider.callback(request)).is_terminal
        assert not (await provider.logout(request)).is_terminal

    @pytest.mark.asyncio
    async def test_redirect_after_authorize(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """A configured redirect makes the callback terminal."""

        async def authorize(request: Any) -> Any:
            return {"id": "u-1"}

        provider = CredentialsProvider(CredentialsConfig(authorize=authorize, redirect_to="/app"))
        response = await provider.callback(make_request())
        assert response.redirect == "/app"
        assert response.user == {"id": "u-1"}


class TestLogout:
    """Logout through Auth."""

    @pytest.mark.asyncio
    async def test_logout_clears_and_redirects(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """Logout clears both session cookies and redirects home."""
        invalidate = MagicMock(return_value=None)
        auth = _auth(fake_client, session=_session(invalidate_session=invalidate))
        jar = cookie_jar(await auth.session.issue(NewSession({"id": "u"}, {"id": "u"})))

        response = await auth.handle(make_request(f"{APP}/auth/logout", cookies=jar))

        invalidate.assert_called_once_with({"id": "u"}, {"id": "u"})
        assert response.status == 302
        assert response.redirect == "/"
        assert [(c.name, c.is_clear) for c in response.cookies] == [
            (ACCESS, True),
            (REFRESH, True),
        ]

    @pytest.mark.asyncio
    async def test_logout_skips_refresh(self, fake_client: FakeAuthorizationServerClient) -> None:
        """A refresh cookie is not rotated on the way out."""
        refresh = MagicMock()
        auth = _auth(fake_client, session=_session(refresh_session=refresh))
        jar = cookie_jar(await auth.session.issue(NewSession(None, {"id": "u"})))

        response = await auth.handle(make_request(f"{APP}/auth/logout/github", cookies=jar))

        refresh.assert_not_called()
        assert all(c.is_clear for c in response.cookies)

    @pytest.mark.asyncio
    async def test_provider_logout_revokes_session_token(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """The provider token kept in the session is revoked before the cookies are cleared."""

        async def logout_token(request: Any) -> Any:
            user = await auth.get_user(request)
            return user.get("provider_token") if user else None

        provider = GitHubProvider("gh-id", "gh-secret", logout_token=logout_token)
        auth = _auth(fake_client, provider, session=_session())
        session = {"id": "u", "provider_token": "gho_token"}
        jar = cookie_jar(await auth.session.issue(NewSession(session, {"id": "u"})))

        response = await auth.handle(make_request(f"{APP}/auth/logout/github", cookies=jar))

        fake_client.delete_grant.assert_awaited_once()
        assert fake_client.delete_grant.await_args.args[2] == "gho_token"
        assert response.redirect == "/"
        assert [(c.name, c.is_clear) for c in response.cookies] == [
            (ACCESS, True),
            (REFRESH, True),
        ]

    @pytest.mark.asyncio
    async def test_logout_without_redirect(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """Without a logout redirect the response only carries cookies."""
        auth = _auth(fake_client, session=_session(), logout_redirect=None)
        response = await auth.handle(make_request(f"{APP}/auth/logout"))
        assert not response.is_terminal
        assert len(response.cookies) == 2

    @pytest.mark.asyncio
    async def test_unknown_provider_logout(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """Logging out of an unknown provider is a 404."""
        auth = _auth(fake_client, session=_session())
        response = await auth.handle(make_request(f"{APP}/auth/logout/gitlab"))
        assert response.status == 404


class TestOtherPaths:
    """Non-auth paths pass through with the current user."""

    @pytest.mark.asyncio
    async def test_anonymous(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Requests without cookies have no user."""
        auth = _auth(fake_client, session=_session())
        response = await auth.handle(make_request(f"{APP}/dashboard"))
        assert not response.is_terminal
        assert response.user is None
        assert response.cookies == []

    @pytest.mark.asyncio
    async def test_current_user(self, fake_client: FakeAuthorizationServerClient) -> None:
        """The access payload is exposed as the user."""
        auth = _auth(fake_client, session=_session())
        jar = cookie_jar(await auth.session.issue(NewSession({"id": "u"})))
        response = await auth.handle(make_request(f"{APP}/dashboard", cookies=jar))
        assert response.user == {"id": "u"}
        assert response.cookies == []

    @pytest.mark.asyncio
    async def test_refresh(self, fake_client: FakeAuthorizationServerClient) -> None:
        """An expired access cookie is refreshed transparently."""
        def rotate(payload: Any) -> NewSession:
            return NewSession({"id": payload["id"]}, payload)

        auth = _auth(fake_client, session=_session(refresh_session=rotate))
        jar = cookie_jar(await auth.session.issue(NewSession(None, {"id": "u"})))

        response = await auth.handle(make_request(f"{APP}/dashboard", cookies=jar))

        assert not response.is_terminal
        assert response.user == {"id": "u"}
        assert [c.name for c in response.cookies] == [ACCESS, REFRESH]

    @pytest.mark.asyncio
    async def test_without_session_strategy(
        self, fake_client: FakeAuthorizationServerClient
    ) -> None:
        """Without a session strategy there is never a user."""
        auth = _auth(fake_client)
        assert (await auth.handle(make_request(f"{APP}/"))).user is None


class TestFromSettings:
    """Building Auth from settings."""

    def test_from_settings(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Settings provide the secret, cookies, lifetimes, and providers."""
        settings = GatehouseSettings(
            base_path="/sso",
            cookies={"use_secure_cookies": True},
            session={"secret": SECRET, "access_token_max_age": 300, "check_max_age": 60},
            providers=[{"id": "github", "kind": "github", "client_id": "gh-id"}],
        )

        auth = Auth.from_settings(settings, session=_session(), client=fake_client)

        provider = auth.providers["github"]
        assert provider.pages.login == "/sso/login/github"
        assert provider.check_max_age == 60
        assert provider.cookies.state.name == "__Secure-gatehouse.state"
        assert auth.session.access_token_max_age == 300
        assert auth.session.secret == SECRET

    def test_explicit_providers(self, fake_client: FakeAuthorizationServerClient) -> None:
        """Providers passed as overrides replace the configured ones."""
        settings = GatehouseSettings(
            session={"secret": SECRET},
            providers=[{"id": "github", "kind": "github", "client_id": "gh-id"}],
        )
        auth = Auth.from_settings(
            settings, providers=[CredentialsProvider()], client=fake_client
        )
        assert list(auth.providers) == ["credentials"]

    def test_missing_secret(self) -> None:
        """Settings without a secret cannot build an Auth."""
        with pytest.raises(ConfigurationError):
            Auth.from_settings(GatehouseSettings())


class TestClose:
    """Shutdown."""

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        """Closing an unused default client is a no-op."""
        auth = Auth([], secret=SECRET)
        assert isinstance(auth.client, HttpxAuthorizationServerClient)
        await auth.close()
