"""Starlette/FastAPI integration.

Translates between Starlette requests/responses and the canonical
types, and exposes ``Auth`` as ASGI middleware or as a FastAPI router.
Requires the ``fastapi`` extra.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import collections
import logging
import threading
import time

from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.datastructures import MutableHeaders

from ..types import CanonicalRequest


if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..auth import Auth
    from ..types import CanonicalResponse, Cookie


logger = logging.getLogger("gatehouse.integrations")


async def to_canonical_request(request: Request, *, read_body: bool = False) -> CanonicalRequest:
    """Convert a Starlette request.

    Parameters
    ----------
    request : Request
        The incoming request.
    read_body : bool
        Read the request body (form posts to a credentials callback).
    """
    body = await request.body() if read_body else None
    return CanonicalRequest(
        method=request.method,
        url=str(request.url),
        cookies=dict(request.cookies),
        headers=dict(request.headers),
        body=body,
    )


def apply_cookies(response: Response, cookies: Iterable[Cookie]) -> Response:
    """Append ``Set-Cookie`` headers for each instruction, in order."""
    for cookie in cookies:
        options = cookie.options
        if cookie.is_clear:
            response.delete_cookie(
                key=cookie.name,
                path=options.path,
                domain=options.domain,
                secure=options.secure,
                httponly=options.http_only,
                samesite=options.same_site,
            )
        else:
            response.set_cookie(
                key=cookie.name,
                value=cookie.value,
                max_age=options.max_age,
                path=options.path,
                domain=options.domain,
                secure=options.secure,
                httponly=options.http_only,
                samesite=options.same_site,
            )
    return response


def to_starlette_response(canonical: CanonicalResponse) -> Response:
    """Convert a canonical response (redirect, JSON, text, or empty)."""
    response: Response
    if canonical.redirect is not None:
        response = RedirectResponse(url=canonical.redirect, status_code=canonical.status or 302)
    elif isinstance(canonical.body, (dict, list)):
        response = JSONResponse(content=canonical.body, status_code=canonical.status or 200)
    elif isinstance(canonical.body, str):
        response = PlainTextResponse(canonical.body, status_code=canonical.status or 200)
    elif isinstance(canonical.body, bytes):
        response = Response(content=canonical.body, status_code=canonical.status or 200)
    else:
        response = Response(status_code=canonical.status or 204)

    for name, value in canonical.headers.items():
        response.headers[name] = value
    return apply_cookies(response, canonical.cookies)


def _set_cookie_headers(cookies: Iterable[Cookie]) -> list[str]:
    """Render cookie instructions as ``Set-Cookie`` header values."""
    carrier = apply_cookies(Response(), cookies)
    return [
        value.decode("latin-1")
        for name, value in carrier.raw_headers
        if name.lower() == b"set-cookie"
    ]


def _replay_body(body: bytes, receive: Any) -> Any:
    """Wrap ``receive`` so the first message replays an already-read body."""
    replayed = False

    async def replay() -> dict[str, Any]:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class AuthMiddleware:
    """ASGI middleware running ``Auth.handle`` on every HTTP request.

    Terminal responses (auth pages, failed logins) are sent directly.
    Otherwise the current user is stored on ``request.state.user`` and
    any session-refresh cookies are added to the downstream response.

    Pass ``serve_pages=False`` when the auth pages are mounted with
    ``create_auth_router``, so its rate limiting and origin checks apply.
    """

    def __init__(self, app: Any, auth: Auth, *, serve_pages: bool = True) -> None:
        """Initialize the middleware.

        Parameters
        ----------
        app : ASGI application
            The wrapped application.
        auth : Auth
            The configured entry point.
        serve_pages : bool
            Answer the login, callback, and logout pages here.
        """
        self.app = app
        self.auth = auth
        self.serve_pages = serve_pages

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        """Handle ASGI request."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        auth_page = self.auth.is_auth_page(request.url.path)
        if not self.serve_pages and auth_page:
            await self.app(scope, receive, send)
            return

        read_body = auth_page and request.method == "POST"
        incoming = await to_canonical_request(request, read_body=read_body)
        canonical = await self.auth.handle(incoming)
        if read_body:
            # the body stream is consumed; downstream gets the cached bytes
            receive = _replay_body(incoming.body or b"", receive)

        if canonical.is_terminal:
            response = to_starlette_response(canonical)
            await response(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        state["user"] = canonical.user
        state["session"] = canonical.session

        if not canonical.cookies:
            await self.app(scope, receive, send)
            return

        set_cookies = _set_cookie_headers(canonical.cookies)

        async def send_with_cookies(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for value in set_cookies:
                    headers.append("set-cookie", value)
            await send(message)

        await self.app(scope, receive, send_with_cookies)


def _verify_csrf_origin(request: Request, *, trusted_origins: list[str] | None = None) -> bool:
    """Verify that POST requests originate from a trusted origin.

    Checks the ``Origin`` header first, then falls back to ``Referer``.
    Without ``trusted_origins`` only same-origin requests pass.
    """
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")

    source_origin: str | None = None
    if origin and origin != "null":
        source_origin = origin.rstrip("/")
    elif referer:
        parsed = urlparse(referer)
        if parsed.scheme and parsed.netloc:
            source_origin = f"{parsed.scheme}://{parsed.netloc}".rstrip("/")

    if source_origin is None:
        return False

    if trusted_origins:
        return source_origin in [o.rstrip("/") for o in trusted_origins]

    request_origin = f"{request.url.scheme}://{request.url.netloc}".rstrip("/")
    return source_origin == request_origin


class LoginRateLimiter:
    """In-process sliding-window limit on login attempts per client IP.

    Clients whose window has emptied are forgotten, so the table only
    holds addresses seen within the last ``window_seconds``.

    Parameters
    ----------
    max_requests : int
        Login attempts allowed per client within one window.
    window_seconds : float
        Length of the sliding window in seconds.
    """

    def __init__(self, max_requests: int = 10, window_seconds: float = 60.0) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._attempts: dict[str, collections.deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def __len__(self) -> int:
        """Number of clients currently tracked."""
        with self._lock:
            return len(self._attempts)

    def _expire(self, client_ip: str, cutoff: float) -> collections.deque[float] | None:
        attempts = self._attempts.get(client_ip)
        if attempts is None:
            return None
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()
        if not attempts:
            del self._attempts[client_ip]
            return None
        return attempts

    def _sweep(self, now: float) -> None:
        """Forget every idle client, at most once per window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        cutoff = now - self.window_seconds
        for client_ip in list(self._attempts):
            self._expire(client_ip, cutoff)

    def is_allowed(self, client_ip: str) -> bool:
        """Record a login attempt from ``client_ip``; False once over the limit."""
        now = time.monotonic()
        with self._lock:
            self._sweep(now)
            attempts = self._expire(client_ip, now - self.window_seconds)
            if attempts is None:
                attempts = self._attempts[client_ip] = collections.deque()
            if len(attempts) >= self.max_requests:
                return False
            attempts.append(now)
            return True

    def reset(self) -> None:
        """Forget all clients."""
        with self._lock:
            self._attempts.clear()


def create_auth_router(
    auth: Auth,
    *,
    rate_limiter: LoginRateLimiter | None = None,
    trusted_origins: list[str] | None = None,
) -> APIRouter:
    """Create a FastAPI router serving the auth pages.

    Parameters
    ----------
    auth : Auth
        The configured entry point.
    rate_limiter : LoginRateLimiter, optional
        Limits login attempts per client IP.
    trusted_origins : list[str], optional
        Origins allowed to POST to logout; same-origin only by default.

    Returns
    -------
    APIRouter
        Router with ``<base>/login/{id}``, ``<base>/callback/{id}``,
        ``<base>/logout[/{id}]`` and ``<base>/session`` routes.
    """
    router = APIRouter(prefix=auth.base_path, tags=["authentication"])

    async def dispatch(request: Request) -> Response:
        canonical = await to_canonical_request(request, read_body=request.method == "POST")
        return to_starlette_response(await auth.handle(canonical))

    @router.get("/login/{provider_id}")
    async def auth_login(request: Request, provider_id: str) -> Response:
        """Start a login with ``provider_id``."""
        client_ip = request.client.host if request.client else "unknown"
        if rate_limiter is not None and not rate_limiter.is_allowed(client_ip):
            logger.warning("Login rate limit hit for %s (%s)", client_ip, provider_id)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limited",
                    "error_description": "Too many login attempts. Please try again later.",
                },
            )
        return await dispatch(request)

    @router.api_route("/callback/{provider_id}", methods=["GET", "POST"])
    async def auth_callback(request: Request, provider_id: str) -> Response:  # noqa: ARG001
        """Complete a login."""
        return await dispatch(request)

    @router.api_route("/logout", methods=["GET", "POST"])
    @router.api_route("/logout/{provider_id}", methods=["GET", "POST"])
    async def auth_logout(  # noqa: ARG001
        request: Request, provider_id: str | None = None
    ) -> Response:
        """Log out; POSTs must come from a trusted origin."""
        if request.method == "POST" and not _verify_csrf_origin(
            request, trusted_origins=trusted_origins
        ):
            return JSONResponse(
                status_code=403,
                content={
                    "error": "csrf_failed",
                    "error_description": "Origin verification failed",
                },
            )
        return await dispatch(request)

    @router.get("/session")
    async def auth_session(request: Request) -> Response:
        """Return the current user."""
        state = request.scope.get("state", {})
        if "user" in state:
            # AuthMiddleware already handled (and possibly refreshed) this request
            user, cookies = state["user"], []
        else:
            canonical = await auth.handle(await to_canonical_request(request))
            user, cookies = canonical.user, canonical.cookies
        response = JSONResponse(content={"authenticated": user is not None, "user": user})
        return apply_cookies(response, cookies)

    return router
