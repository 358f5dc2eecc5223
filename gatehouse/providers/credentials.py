"""Credentials provider: an application-owned login extension point.

No redirect flow and no checks. ``login`` and ``logout`` return empty
responses; ``callback`` delegates to the optional ``authorize`` hook.
Subclass it to plug in custom verification logic.
"""

from __future__ import annotations

import logging

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..exceptions import AuthenticationError
from ..types import CanonicalResponse
from .base import Provider, ProviderConfig, ProviderKind, maybe_await


if TYPE_CHECKING:
    from ..types import CanonicalRequest


logger = logging.getLogger("gatehouse.auth")


@dataclass(frozen=True, kw_only=True)
class CredentialsConfig(ProviderConfig):
    """Credentials provider configuration.

    Attributes
    ----------
    authorize : callable, optional
        ``authorize(request)`` returning the authenticated user, or None
        to reject the credentials. May be sync or async.
    redirect_to : str, optional
        Redirect target after a successful ``callback``.
    """

    id: str = "credentials"
    authorize: Callable[[CanonicalRequest], Any] | None = None
    redirect_to: str | None = None


class CredentialsProvider(Provider):
    """Pass-through provider for custom credential checks."""

    kind = ProviderKind.CREDENTIALS
    config: CredentialsConfig

    def __init__(self, config: CredentialsConfig | None = None) -> None:
        """Initialize the provider."""
        super().__init__(config or CredentialsConfig())

    async def login(self, request: CanonicalRequest) -> CanonicalResponse:  # noqa: ARG002
        """Nothing to start; the application renders its own form."""
        return CanonicalResponse()

    async def callback(self, request: CanonicalRequest) -> CanonicalResponse:
        """Verify the submitted credentials with ``authorize``.

        Raises
        ------
        AuthenticationError
            If ``authorize`` rejects the request.
        """
        if self.config.authorize is None:
            return CanonicalResponse()
        user = await maybe_await(self.config.authorize(request))
        if user is None:
            msg = "Invalid credentials"
            raise AuthenticationError(msg, provider=self.id)
        logger.debug("Credentials accepted for provider %s", self.id)
        if self.config.redirect_to:
            return CanonicalResponse(status=302, redirect=self.config.redirect_to, user=user)
        return CanonicalResponse(user=user)
