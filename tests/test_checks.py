"""Tests for the state, PKCE, and nonce checks."""

from __future__ import annotations

from dataclasses import replace

import pytest

from helpers import make_request

from gatehouse import checks
from gatehouse.checks import CHECKS, CheckOptions, PKCEChallenge, verify_state
from gatehouse.exceptions import ValidationError


class TestPKCEChallenge:
    """Tests for RFC 7636 S256 challenges."""

    def test_rfc7636_vector(self) -> None:
        """The S256 challenge matches the RFC 7636 appendix B example."""
        pair = PKCEChallenge.from_verifier("dBjftJeZ4CVP-mJ92K9BPHZBr2FN1Y9Rbc2Szb8Xe6c")
        assert pair.challenge == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
        assert pair.method == "S256"

    def test_generate_length(self) -> None:
        """Generated verifiers satisfy the 43 to 128 character rule."""
        pair = PKCEChallenge.generate()
        assert 43 <= len(pair.verifier) <= 128
        assert pair.matches(pair.challenge)
        assert not pair.matches("other")


class TestCheckLifecycle:
    """Tests for create then use on each check kind."""

    def test_registry(self) -> None:
        """Every check kind is registered by name."""
        assert set(CHECKS) == {"state", "pkce", "nonce"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["state", "nonce"])
    async def test_value_round_trip(self, name: str, check_options: CheckOptions) -> None:
        """The value sent out is the value read back at the callback."""
        check = CHECKS[name]
        value, cookie = await check.create(check_options)
        assert cookie.name == f"gatehouse.{name}"
        assert cookie.options.max_age == check_options.max_age
        assert cookie.options.http_only

        request = make_request(cookies={cookie.name: cookie.value})
        stored, clearing = await check.use(request, check_options)
        assert stored == value
        assert clearing.name == cookie.name
        assert clearing.is_clear

    @pytest.mark.asyncio
    async def test_pkce_keeps_verifier(self, check_options: CheckOptions) -> None:
        """PKCE sends the challenge and stores the verifier."""
        challenge, cookie = await checks.pkce.create(check_options)
        assert cookie.name == "gatehouse.pkce.code_verifier"
        verifier, _ = await checks.pkce.use(
            make_request(cookies={cookie.name: cookie.value}), check_options
        )
        assert verifier != challenge
        assert PKCEChallenge.from_verifier(verifier).challenge == challenge

    @pytest.mark.asyncio
    async def test_values_are_fresh(self, check_options: CheckOptions) -> None:
        """Two logins never share a state value."""
        first, _ = await checks.state.create(check_options)
        second, _ = await checks.state.create(check_options)
        assert first != second


class TestCheckFailures:
    """Tests for missing, tampered, and expired check cookies."""

    @pytest.mark.asyncio
    async def test_missing_cookie(self, check_options: CheckOptions) -> None:
        """A missing cookie fails with the clearing cookie attached."""
        with pytest.raises(ValidationError, match="state cookie was missing") as info:
            await checks.state.use(make_request(), check_options)
        assert info.value.check == "state"
        assert info.value.provider == "test"
        assert info.value.status_code == 400
        assert [c.name for c in info.value.cookies] == ["gatehouse.state"]
        assert info.value.cookies[0].is_clear

    @pytest.mark.asyncio
    async def test_tampered_cookie(self, check_options: CheckOptions) -> None:
        """An undecodable cookie fails as unparseable."""
        request = make_request(cookies={"gatehouse.nonce": "tampered"})
        with pytest.raises(ValidationError, match="nonce value could not be parsed"):
            await checks.nonce.use(request, check_options)

    @pytest.mark.asyncio
    async def test_expired_cookie(self, check_options: CheckOptions) -> None:
        """A cookie older than the check TTL is rejected."""
        expired = replace(check_options, max_age=-120)
        _, cookie = await checks.pkce.create(expired)
        request = make_request(cookies={cookie.name: cookie.value})
        with pytest.raises(ValidationError) as info:
            await checks.pkce.use(request, check_options)
        assert info.value.check == "pkce"

    @pytest.mark.asyncio
    async def test_cookie_bound_to_secret(self, check_options: CheckOptions) -> None:
        """A check cookie from another deployment is rejected."""
        other = replace(check_options, secret="different-secret")
        _, cookie = await checks.state.create(other)
        with pytest.raises(ValidationError):
            await checks.state.use(
                make_request(cookies={cookie.name: cookie.value}), check_options
            )


class TestVerifyState:
    """Tests for state comparison."""

    def test_match(self) -> None:
        """Equal values match."""
        assert verify_state("abc", "abc")

    @pytest.mark.parametrize(
        ("expected", "received"),
        [("abc", "abd"), (None, "abc"), ("abc", ""), (None, None)],
    )
    def test_mismatch(self, expected: str | None, received: str | None) -> None:
        """Different or missing values never match."""
        assert not verify_state(expected, received)
