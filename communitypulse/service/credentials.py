from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Callable

from communitypulse.logging import get_logger
from communitypulse.service.errors import CredentialExpiredError, InvalidCredentialError

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _to_bytes(value: str) -> bytes:
    # Header values may carry any character; encoding must never raise
    return value.encode("utf-8", "surrogatepass")


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), _to_bytes(signing_input), hashlib.sha256).digest()
    )


def _split(token: str) -> tuple[str, str, str]:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError as exc:
        raise InvalidCredentialError("Invalid token") from exc
    return header_b64, payload_b64, sig_b64


def _decode_payload(payload_b64: str) -> dict[str, Any]:
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        raise InvalidCredentialError("Invalid token") from exc
    if not isinstance(payload, dict):
        raise InvalidCredentialError("Invalid token")
    return payload


def read_unverified_claims(token: str) -> dict[str, Any]:
    """Decode the claims segment without checking the signature.

    Only for callers that already hold an authenticated session for this
    credential, e.g. revocation computing the remaining lifetime.
    """
    _, payload_b64, _ = _split(token)
    return _decode_payload(payload_b64)


class CredentialIssuer:
    """Mints HS256 bearer credentials with a fixed lifetime and a unique ``jti``."""

    def __init__(
        self,
        secret: str,
        *,
        ttl_days: int = 7,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self.ttl_seconds = ttl_days * SECONDS_PER_DAY
        self._clock = clock

    def issue(self, principal_id: str) -> str:
        issued_at = int(self._clock())
        payload = {
            "sub": principal_id,
            "jti": secrets.token_hex(16),
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(self._secret, signing_input)}"


class CredentialVerifier:
    """Pure signature and expiry check; knows nothing about revocation."""

    def __init__(self, secret: str, *, clock: Callable[[], float] = time.time) -> None:
        self._secret = secret
        self._clock = clock

    def verify(self, token: str, *, allow_expired: bool = False) -> dict[str, Any]:
        header_b64, payload_b64, sig_b64 = _split(token)

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidCredentialError("Invalid token") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidCredentialError("Invalid token")

        expected_sig = _sign(self._secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(_to_bytes(expected_sig), _to_bytes(sig_b64)):
            raise InvalidCredentialError("Invalid token")

        payload = _decode_payload(payload_b64)
        if not payload.get("sub") or not payload.get("jti"):
            raise InvalidCredentialError("Invalid token")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError) as exc:
            raise InvalidCredentialError("Invalid token") from exc
        if not allow_expired and exp_ts <= self._clock():
            raise CredentialExpiredError("Token expired")
        return payload


__all__ = [
    "CredentialIssuer",
    "CredentialVerifier",
    "read_unverified_claims",
    "SECONDS_PER_DAY",
]
