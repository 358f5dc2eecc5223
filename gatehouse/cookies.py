"""Cookie policy for check and session cookies.

Pure configuration: names and attributes for every cookie Gatehouse
sets, parameterized by whether the site runs over secure transport.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from .types import Cookie, CookieOptions, SameSite


SECURE_PREFIX = "__Secure-"


@dataclass(frozen=True)
class CookieSpec:
    """Name and default attributes of one cookie kind."""

    name: str
    options: CookieOptions


@dataclass(frozen=True)
class CookiesOptions:
    """Cookie specs for every cookie kind Gatehouse manages."""

    state: CookieSpec
    pkce: CookieSpec
    nonce: CookieSpec
    access_token: CookieSpec
    refresh_token: CookieSpec
    session_id: CookieSpec


def create_cookies_options(
    use_secure_cookies: bool = False,
    prefix: str = "gatehouse",
    same_site: SameSite = "lax",
    domain: str | None = None,
) -> CookiesOptions:
    """Build the default cookie policy.

    Parameters
    ----------
    use_secure_cookies : bool
        Set the ``Secure`` attribute and the ``__Secure-`` name prefix.
    prefix : str
        Base name shared by all cookies (default ``"gatehouse"``).
    same_site : str
        SameSite attribute for all cookies (default ``"lax"``).
    domain : str, optional
        Cookie domain; host-only cookies when omitted.

    Returns
    -------
    CookiesOptions
        Specs for state, pkce, nonce, access-token, refresh-token and
        session-id cookies.
    """
    name_prefix = SECURE_PREFIX if use_secure_cookies else ""
    options = CookieOptions(
        path="/",
        domain=domain,
        secure=use_secure_cookies,
        http_only=True,
        same_site=same_site,
    )

    def spec(suffix: str) -> CookieSpec:
        return CookieSpec(name=f"{name_prefix}{prefix}.{suffix}", options=options)

    return CookiesOptions(
        state=spec("state"),
        pkce=spec("pkce.code_verifier"),
        nonce=spec("nonce"),
        access_token=spec("access-token"),
        refresh_token=spec("refresh-token"),
        session_id=spec("sid"),
    )


def set_cookie(spec: CookieSpec, value: str, max_age: int | None) -> Cookie:
    """Build a cookie-set instruction for ``spec``."""
    return Cookie(name=spec.name, value=value, options=replace(spec.options, max_age=max_age))


def clear_cookie(spec: CookieSpec) -> Cookie:
    """Build the max-age 0 instruction that removes ``spec``'s cookie."""
    return Cookie(name=spec.name, value="", options=replace(spec.options, max_age=0))
