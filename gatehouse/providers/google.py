"""Google OpenID Connect preset."""

from __future__ import annotations

from typing import Any

from .oauth import Endpoint
from .oidc import OIDCConfig, OIDCProvider


GOOGLE_ISSUER = "https://accounts.google.com"


class GoogleProvider(OIDCProvider):
    """Google provider with discovery from ``accounts.google.com``.

    Requests offline access so Google returns a refresh token.

    Parameters
    ----------
    client_id : str
        Google OAuth2 client ID.
    client_secret : str
        Google OAuth2 client secret.
    scopes : tuple[str, ...], optional
        Requested scopes (defaults to openid, profile, email).
    **options : Any
        Further ``OIDCConfig`` fields.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        scopes: tuple[str, ...] | None = None,
        **options: Any,
    ) -> None:
        """Initialize Google provider."""
        options.setdefault("id", "google")
        options.setdefault("checks", ("state", "pkce"))
        options.setdefault(
            "authorization", Endpoint(params={"access_type": "offline", "prompt": "consent"})
        )
        super().__init__(
            OIDCConfig(
                client_id=client_id,
                client_secret=client_secret,
                issuer=GOOGLE_ISSUER,
                scopes=scopes or ("openid", "profile", "email"),
                **options,
            )
        )
