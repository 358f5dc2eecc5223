"""Provider abstraction shared by every login variant.

A provider is immutable once constructed. ``Auth`` re-binds each
provider a single time at startup (``with_options``) to inject the
shared secret, cookie policy, codec, and page base path.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from ..checks import DEFAULT_CHECK_MAX_AGE, CheckOptions
from ..codec import JWETokenCodec
from ..cookies import create_cookies_options
from ..exceptions import ConfigurationError
from ..types import CanonicalResponse, FlowState


if TYPE_CHECKING:
    from ..codec import TokenCodec
    from ..cookies import CookiesOptions
    from ..exceptions import AuthenticationError
    from ..types import CanonicalRequest, Cookie


logger = logging.getLogger("gatehouse.auth")

T = TypeVar("T")
P = TypeVar("P", bound="Provider")

DEFAULT_BASE_PATH = "/auth"


class ProviderKind(str, Enum):
    """Closed set of provider variants."""

    OAUTH2 = "oauth2"
    OIDC = "oidc"
    CREDENTIALS = "credentials"
    TOKEN_SESSION = "token-session"


async def maybe_await(value: T | Awaitable[T]) -> T:
    """Await ``value`` if the application callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class Pages:
    """Per-provider page paths."""

    login: str
    callback: str
    logout: str

    @classmethod
    def for_provider(cls, provider_id: str, base_path: str = DEFAULT_BASE_PATH) -> Pages:
        """Derive ``<base>/login/<id>``, ``<base>/callback/<id>``, ``<base>/logout/<id>``."""
        base = "/" + base_path.strip("/") if base_path.strip("/") else ""
        return cls(
            login=f"{base}/login/{provider_id}",
            callback=f"{base}/callback/{provider_id}",
            logout=f"{base}/logout/{provider_id}",
        )


@dataclass(frozen=True, kw_only=True)
class ProviderConfig:
    """Options every provider variant accepts.

    Fields left unset (empty secret, None) are filled in by ``Auth``
    from its shared configuration.

    Attributes
    ----------
    id : str
        Unique provider id, used in page paths.
    secret : str
        Secret binding check cookies to this deployment.
    cookies : CookiesOptions or None
        Cookie policy; defaults to non-secure cookies.
    codec : TokenCodec or None
        Codec for check cookies; defaults to ``JWETokenCodec``.
    check_max_age : int or None
        Check cookie lifetime in seconds; defaults to 15 minutes.
    base_path : str or None
        Base path for page derivation; defaults to ``/auth``.
    pages : Pages or None
        Explicit page paths, overriding derivation.
    """

    id: str
    secret: str = ""
    cookies: CookiesOptions | None = None
    codec: TokenCodec | None = None
    check_max_age: int | None = None
    base_path: str | None = None
    pages: Pages | None = None


class Provider(ABC):
    """Abstract base class for login providers.

    Every variant exposes ``login``, ``callback`` and ``logout`` over the
    canonical request/response types.
    """

    kind: ProviderKind

    def __init__(self, config: ProviderConfig) -> None:
        """Initialize the provider from its configuration."""
        self._setup(config)

    def _setup(self, config: ProviderConfig) -> None:
        """Resolve defaults and validate ``config``."""
        if not config.id:
            msg = "Provider id must not be empty"
            raise ConfigurationError(msg)
        self.config = config
        self.cookies: CookiesOptions = config.cookies or create_cookies_options()
        self.codec: TokenCodec = config.codec or JWETokenCodec()
        self.check_max_age: int = config.check_max_age or DEFAULT_CHECK_MAX_AGE
        self.pages: Pages = config.pages or Pages.for_provider(
            config.id, config.base_path if config.base_path is not None else DEFAULT_BASE_PATH
        )

    @property
    def id(self) -> str:
        """Provider id."""
        return self.config.id

    @property
    def check_options(self) -> CheckOptions:
        """Inputs for the check subsystem."""
        if not self.config.secret:
            msg = f"Provider '{self.id}' has no secret for its check cookies"
            raise ConfigurationError(msg, provider=self.id)
        return CheckOptions(
            codec=self.codec,
            secret=self.config.secret,
            cookies=self.cookies,
            max_age=self.check_max_age,
            provider=self.id,
        )

    def with_options(self: P, **changes: Any) -> P:
        """Return a new provider of the same type with ``changes`` applied."""
        clone = object.__new__(type(self))
        clone._setup(replace(self.config, **changes))
        return clone

    def validate(self) -> None:
        """Raise ConfigurationError if the provider cannot serve requests."""

    @abstractmethod
    async def login(self, request: CanonicalRequest) -> CanonicalResponse:
        """Start a login."""

    @abstractmethod
    async def callback(self, request: CanonicalRequest) -> CanonicalResponse:
        """Complete a login."""

    async def logout(self, request: CanonicalRequest) -> CanonicalResponse:  # noqa: ARG002
        """Provider-specific logout; nothing to do by default."""
        return CanonicalResponse()

    def __repr__(self) -> str:
        """Show variant and id."""
        return f"{type(self).__name__}(id={self.id!r})"


@dataclass
class LoginFlow:
    """Tracks one callback through the login state machine.

    Attributes
    ----------
    provider_id : str
        The provider handling the flow.
    flow_id : str
        Random id used to correlate log lines and errors.
    state : FlowState
        The last state reached.
    """

    provider_id: str
    flow_id: str = field(default_factory=lambda: secrets.token_urlsafe(8))
    state: FlowState = FlowState.NOT_STARTED

    def advance(self, state: FlowState) -> None:
        """Move to ``state``."""
        logger.debug(
            "Flow %s (%s): %s -> %s",
            self.flow_id,
            self.provider_id,
            self.state.value,
            state.value,
        )
        self.state = state

    def fail(self, exc: AuthenticationError, cookies: list[Cookie]) -> AuthenticationError:
        """Move to FAILED and tag ``exc`` with the flow and pending cookies.

        Returns
        -------
        AuthenticationError
            ``exc``, ready to be re-raised.
        """
        exc.provider = exc.provider or self.provider_id
        exc.flow_id = exc.flow_id or self.flow_id
        exc.context.update(
            provider=exc.provider, flow_id=exc.flow_id, flow_state=self.state.value
        )
        exc.add_cookies(cookies)
        logger.warning(
            "Flow %s (%s) failed after %s: %s",
            self.flow_id,
            self.provider_id,
            self.state.value,
            exc.message,
        )
        self.state = FlowState.FAILED
        return exc


class Memoized(Generic[T]):
    """One-shot lazily computed value, safe under concurrent first access.

    The first caller runs ``factory``; concurrent callers wait for it and
    observe the same published value. A failed computation is not cached.
    """

    def __init__(self, factory: Callable[[], Awaitable[T]]) -> None:
        """Initialize with the coroutine factory."""
        self._factory = factory
        self._value: T | None = None
        self._done = False
        self._lock: asyncio.Lock | None = None

    @property
    def done(self) -> bool:
        """Whether the value has been computed."""
        return self._done

    async def get(self) -> T:
        """Return the value, computing it on first use."""
        if self._done:
            return self._value  # type: ignore[return-value]
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not self._done:
                self._value = await self._factory()
                self._done = True
        return self._value  # type: ignore[return-value]


def default_profile(profile: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a provider profile into ``{id, name, email, image}``."""
    user_id = profile.get("sub") or profile.get("id")
    return {
        "id": str(user_id) if user_id is not None else None,
        "name": profile.get("name")
        or profile.get("nickname")
        or profile.get("preferred_username")
        or profile.get("login"),
        "email": profile.get("email"),
        "image": profile.get("picture") or profile.get("avatar_url"),
    }
