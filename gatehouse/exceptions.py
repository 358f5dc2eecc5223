"""Gatehouse exception hierarchy.

All Gatehouse-specific exceptions inherit from GatehouseException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .types import Cookie


class GatehouseException(Exception):
    """Base exception for all Gatehouse errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize Gatehouse exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (provider, flow_id, check, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(GatehouseException):
    """Invalid or incomplete configuration.

    Raised at construction or initialization time, e.g. when a provider
    is missing a required endpoint or no secret is available. Never
    converted into a failed response.
    """


class AuthenticationError(GatehouseException):
    """Base exception for all request-time authentication failures.

    Carries the cookie instructions that must still reach the client
    (typically the clearing cookies of already consumed checks).
    """

    status_code = 401
    error_code = "authentication_failed"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        cookies: list[Cookie] | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The provider id (e.g., "google", "github").
        flow_id : str, optional
            The unique identifier of the login flow that failed.
        cookies : list[Cookie], optional
            Cookie instructions to attach to the failed response.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id
        self.cookies: list[Cookie] = list(cookies or [])

    def add_cookies(self, cookies: list[Cookie]) -> None:
        """Attach cookie instructions not already carried by this error."""
        for cookie in cookies:
            if cookie not in self.cookies:
                self.cookies.append(cookie)


class ValidationError(AuthenticationError):
    """A check token is missing, expired, or does not match.

    Raised when the state, PKCE, or nonce check of a callback cannot be
    verified. No token exchange is attempted afterwards.
    """

    status_code = 400
    error_code = "invalid_request"

    def __init__(
        self,
        message: str,
        check: str | None = None,
        provider: str | None = None,
        flow_id: str | None = None,
        cookies: list[Cookie] | None = None,
        **context: Any,
    ) -> None:
        """Initialize validation error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        check : str, optional
            The check kind that failed ("state", "pkce", "nonce").
        provider : str, optional
            The provider id.
        flow_id : str, optional
            The login flow id.
        cookies : list[Cookie], optional
            Clearing cookies of the consumed checks.
        **context : Any
            Additional context.
        """
        super().__init__(
            message, provider=provider, flow_id=flow_id, cookies=cookies, check=check, **context
        )
        self.check = check


class ProtocolError(AuthenticationError):
    """The authorization server answered with an error.

    Covers OAuth2 error responses on the callback or token endpoint,
    unexpected ``WWW-Authenticate`` challenges, and malformed responses.
    """

    error_code = "server_error"

    def __init__(
        self,
        message: str,
        error: str | None = None,
        error_description: str | None = None,
        provider: str | None = None,
        flow_id: str | None = None,
        cookies: list[Cookie] | None = None,
        **context: Any,
    ) -> None:
        """Initialize protocol error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str, optional
            The OAuth2 ``error`` code returned by the server.
        error_description : str, optional
            The OAuth2 ``error_description`` returned by the server.
        provider : str, optional
            The provider id.
        flow_id : str, optional
            The login flow id.
        cookies : list[Cookie], optional
            Clearing cookies of the consumed checks.
        **context : Any
            Additional context.
        """
        super().__init__(
            message, provider=provider, flow_id=flow_id, cookies=cookies, error=error, **context
        )
        self.error = error
        self.error_description = error_description


class NetworkError(ProtocolError):
    """Transport failure while talking to the authorization server."""

    error_code = "temporarily_unavailable"


class TokenDecodeError(AuthenticationError):
    """A session or check token could not be decoded.

    The token was tampered with, has expired, or is malformed. Only
    raised by ``TokenCodec.decode_or_raise``; the regular decode path
    degrades to "no session" instead.
    """

    error_code = "invalid_token"
