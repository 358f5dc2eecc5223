"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

from typing import TYPE_CHECKING

import pytest

from helpers import SECRET, FakeAuthorizationServerClient

from gatehouse.checks import CheckOptions
from gatehouse.codec import JWETokenCodec
from gatehouse.config import clear_settings
from gatehouse.cookies import CookiesOptions, create_cookies_options


if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None]:
    """Keep every test away from real config files and GATEHOUSE_ variables."""
    for name in list(os.environ):
        if name.startswith("GATEHOUSE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture
def secret() -> str:
    """Shared test secret."""
    return SECRET


@pytest.fixture
def codec() -> JWETokenCodec:
    """Default token codec."""
    return JWETokenCodec()


@pytest.fixture
def cookies_options() -> CookiesOptions:
    """Default (non-secure) cookie policy."""
    return create_cookies_options()


@pytest.fixture
def check_options(codec: JWETokenCodec, cookies_options: CookiesOptions) -> CheckOptions:
    """Check inputs bound to the test secret."""
    return CheckOptions(codec=codec, secret=SECRET, cookies=cookies_options, provider="test")


@pytest.fixture
def fake_client() -> FakeAuthorizationServerClient:
    """Authorization-server client with mocked network calls."""
    return FakeAuthorizationServerClient()
