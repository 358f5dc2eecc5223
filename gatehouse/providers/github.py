"""GitHub OAuth2 preset."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from .oauth import Endpoint, OAuthConfig, OAuthProvider, UserinfoContext


GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"  # noqa: S105
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"
GITHUB_GRANT_URL = "https://api.github.com/applications/{client_id}/grant"
GITHUB_API_ACCEPT = "application/vnd.github+json"


async def fetch_github_profile(context: UserinfoContext) -> dict[str, Any]:
    """Fetch ``/user``, filling a private email from ``/user/emails``."""
    profile = dict(
        await context.client.fetch_userinfo(context.server, context.tokens.access_token)
    )
    if profile.get("email") is None:
        emails_server = replace(context.server, userinfo_endpoint=GITHUB_EMAILS_URL)
        emails = await context.client.fetch_userinfo(emails_server, context.tokens.access_token)
        if isinstance(emails, list) and emails:
            primary = next((e for e in emails if e.get("primary")), emails[0])
            profile["email"] = primary.get("email")
    return profile


class GitHubProvider(OAuthProvider):
    """GitHub OAuth2 provider.

    GitHub is plain OAuth2 (no OIDC); the profile comes from the REST
    API. Users with a private email get their primary address filled
    in from ``/user/emails``.

    Revoking a token, including on logout when ``logout_token`` is set,
    deletes the app grant through the applications API.

    Parameters
    ----------
    client_id : str
        GitHub OAuth2 client ID.
    client_secret : str
        GitHub OAuth2 client secret.
    scopes : tuple[str, ...], optional
        Requested scopes (defaults to ``("read:user", "user:email")``).
    **options : Any
        Further ``OAuthConfig`` fields (``on_auth``, ``checks``, ...).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        scopes: tuple[str, ...] | None = None,
        **options: Any,
    ) -> None:
        """Initialize GitHub provider."""
        options.setdefault("id", "github")
        options.setdefault("checks", ("state",))
        super().__init__(
            OAuthConfig(
                client_id=client_id,
                client_secret=client_secret,
                scopes=scopes or ("read:user", "user:email"),
                authorization=Endpoint(url=GITHUB_AUTHORIZE_URL),
                token=Endpoint(url=GITHUB_TOKEN_URL),
                userinfo=Endpoint(url=GITHUB_USER_URL, request=fetch_github_profile),
                **options,
            )
        )

    async def _revoke(self, token: str) -> bool:
        """Delete the user's grant for this OAuth app.

        GitHub has no RFC 7009 endpoint; removing the grant revokes every
        token the user issued to the app.
        """
        url = GITHUB_GRANT_URL.format(client_id=self.config.client_id)
        return await self.client.delete_grant(
            url, self.credentials, token, headers={"Accept": GITHUB_API_ACCEPT}
        )
