"""Login providers.

- ``OAuthProvider``: generic OAuth2 authorization-code flow
- ``OIDCProvider``: OpenID Connect with discovery and ID tokens
- ``CredentialsProvider``: application-owned credential checks
- ``GitHubProvider`` / ``GoogleProvider``: presets
"""

from __future__ import annotations

from .base import (
    LoginFlow,
    Memoized,
    Pages,
    Provider,
    ProviderConfig,
    ProviderKind,
    default_profile,
)
from .credentials import CredentialsConfig, CredentialsProvider
from .github import GitHubProvider
from .google import GoogleProvider
from .oauth import Endpoint, OAuthConfig, OAuthProvider, UserinfoContext
from .oidc import OIDCConfig, OIDCProvider


__all__ = [
    "CredentialsConfig",
    "CredentialsProvider",
    "Endpoint",
    "GitHubProvider",
    "GoogleProvider",
    "LoginFlow",
    "Memoized",
    "OAuthConfig",
    "OAuthProvider",
    "OIDCConfig",
    "OIDCProvider",
    "Pages",
    "Provider",
    "ProviderConfig",
    "ProviderKind",
    "UserinfoContext",
    "default_profile",
]
