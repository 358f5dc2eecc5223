"""Gatehouse - authentication orchestration for Python web services.

OAuth2 and OpenID Connect login flows with state/PKCE/nonce checks,
stateless encrypted cookie sessions with refresh-token rotation, and a
single ``Auth.handle`` entry point over framework-independent request
and response types.
"""

from .auth import Auth
from .checks import PKCEChallenge
from .client import (
    AuthorizationServer,
    AuthorizationServerClient,
    ClientCredentials,
    HttpxAuthorizationServerClient,
)
from .codec import JWETokenCodec, TokenCodec
from .config import (
    CookieSettings,
    GatehouseSettings,
    LogSettings,
    ProviderSettings,
    SessionSettings,
    clear_settings,
    get_settings,
    reload_settings,
)
from .cookies import CookiesOptions, create_cookies_options
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    GatehouseException,
    NetworkError,
    ProtocolError,
    TokenDecodeError,
    ValidationError,
)
from .log import enable_debug, get_logger, set_level
from .providers import (
    CredentialsConfig,
    CredentialsProvider,
    Endpoint,
    GitHubProvider,
    GoogleProvider,
    OAuthConfig,
    OAuthProvider,
    OIDCConfig,
    OIDCProvider,
    Pages,
    Provider,
    ProviderKind,
)
from .session import OpaqueSessionManager, SessionStrategy, TokenSessionManager
from .types import (
    CanonicalRequest,
    CanonicalResponse,
    Cookie,
    CookieOptions,
    FlowState,
    NewSession,
    TokenSet,
)


__version__ = "0.1.0"

__all__ = [
    "Auth",
    "AuthenticationError",
    "AuthorizationServer",
    "AuthorizationServerClient",
    "CanonicalRequest",
    "CanonicalResponse",
    "ClientCredentials",
    "ConfigurationError",
    "Cookie",
    "CookieOptions",
    "CookieSettings",
    "CookiesOptions",
    "CredentialsConfig",
    "CredentialsProvider",
    "Endpoint",
    "FlowState",
    "GatehouseException",
    "GatehouseSettings",
    "GitHubProvider",
    "GoogleProvider",
    "HttpxAuthorizationServerClient",
    "JWETokenCodec",
    "LogSettings",
    "NetworkError",
    "NewSession",
    "OAuthConfig",
    "OAuthProvider",
    "OIDCConfig",
    "OIDCProvider",
    "OpaqueSessionManager",
    "PKCEChallenge",
    "Pages",
    "ProtocolError",
    "Provider",
    "ProviderKind",
    "ProviderSettings",
    "SessionSettings",
    "SessionStrategy",
    "TokenCodec",
    "TokenDecodeError",
    "TokenSessionManager",
    "TokenSet",
    "ValidationError",
    "__version__",
    "clear_settings",
    "create_cookies_options",
    "enable_debug",
    "get_logger",
    "get_settings",
    "reload_settings",
    "set_level",
]
