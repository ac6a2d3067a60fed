"""Tests for credential minting and verification."""

import base64
import json

import pytest

from communitypulse.service.credentials import (
    SECONDS_PER_DAY,
    CredentialIssuer,
    CredentialVerifier,
    read_unverified_claims,
)
from communitypulse.service.errors import CredentialExpiredError, InvalidCredentialError

SECRET = "credential-test-secret-with-enough-length-0123456789"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return CredentialIssuer(SECRET, clock=clock)


@pytest.fixture
def verifier(clock):
    return CredentialVerifier(SECRET, clock=clock)


def _tamper_payload(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{signature}"


class TestIssue:
    """Claims carried by a fresh credential."""

    def test_claims_have_subject_and_fixed_lifetime(self, issuer, clock):
        claims = read_unverified_claims(issuer.issue("user-1"))
        assert claims["sub"] == "user-1"
        assert claims["iat"] == int(clock.now)
        assert claims["exp"] - claims["iat"] == 7 * SECONDS_PER_DAY

    def test_every_credential_has_unique_jti(self, issuer):
        first = read_unverified_claims(issuer.issue("user-1"))
        second = read_unverified_claims(issuer.issue("user-1"))
        assert first["jti"] != second["jti"]

    def test_same_second_issues_distinct_tokens(self, issuer):
        assert issuer.issue("user-1") != issuer.issue("user-1")


class TestVerify:
    """Signature and expiry checks."""

    def test_valid_credential_round_trips_claims(self, issuer, verifier):
        claims = verifier.verify(issuer.issue("user-1"))
        assert claims["sub"] == "user-1"

    def test_wrong_secret_is_invalid(self, issuer, clock):
        other = CredentialVerifier("another-secret-entirely-0123456789abcdef", clock=clock)
        with pytest.raises(InvalidCredentialError) as exc_info:
            other.verify(issuer.issue("user-1"))
        assert exc_info.value.reason == "invalid_signature"

    def test_tampered_payload_is_invalid(self, issuer, verifier):
        token = _tamper_payload(issuer.issue("user-1"), sub="user-2")
        with pytest.raises(InvalidCredentialError):
            verifier.verify(token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "not.a.token"])
    def test_malformed_token_is_invalid(self, verifier, token):
        with pytest.raises(InvalidCredentialError):
            verifier.verify(token)

    def test_expired_credential_is_rejected(self, issuer, verifier, clock):
        token = issuer.issue("user-1")
        clock.now += 7 * SECONDS_PER_DAY
        with pytest.raises(CredentialExpiredError) as exc_info:
            verifier.verify(token)
        assert exc_info.value.reason == "credential_expired"

    def test_allow_expired_still_checks_signature(self, issuer, verifier, clock):
        token = issuer.issue("user-1")
        clock.now += 30 * SECONDS_PER_DAY
        assert verifier.verify(token, allow_expired=True)["sub"] == "user-1"
        with pytest.raises(InvalidCredentialError):
            verifier.verify(token[:-2] + "xx", allow_expired=True)

    @pytest.mark.parametrize("signature", ["ééé", "sig☃", "\ud800"])
    def test_non_ascii_signature_is_invalid(self, issuer, verifier, signature):
        header, payload, _ = issuer.issue("user-1").split(".")
        with pytest.raises(InvalidCredentialError) as exc_info:
            verifier.verify(f"{header}.{payload}.{signature}")
        assert exc_info.value.reason == "invalid_signature"

    def test_non_ascii_header_is_invalid(self, issuer, verifier):
        _, payload, signature = issuer.issue("user-1").split(".")
        with pytest.raises(InvalidCredentialError):
            verifier.verify(f"é.{payload}.{signature}")
