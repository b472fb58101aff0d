from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging
import time
import warnings
from typing import Any, Callable, Protocol

import httpx
import jwt

from peerlink.core.config import Settings, get_settings
from peerlink.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_VERIFY_ENDPOINT_INTEGRATION = "auth.verify_endpoint"
# HS256 keys shorter than the SHA-256 digest size.
_MIN_SECRET_BYTES = 32


class VerificationMode(str, Enum):
    JWT_HS256 = "jwt-hs256"
    VERIFY_ENDPOINT = "verify-endpoint"


@dataclass(frozen=True)
class VerifiedIdentity:
    external_id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class TokenVerifier(Protocol):
    mode: VerificationMode

    async def verify(self, credential: str) -> VerifiedIdentity | None:
        ...


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _identifier(value: Any) -> str | None:
    # Endpoints may answer with numeric ids; bools are not identifiers.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return _optional_str(value)


def split_display_name(claims: dict[str, Any]) -> tuple[str | None, str | None]:
    # Explicit given/family claims win; otherwise split "name" into first token + remainder.
    name = claims.get("name")
    parts = name.split() if isinstance(name, str) else []
    first = _optional_str(claims.get("given_name"))
    if first is None and parts:
        first = parts[0]
    last = _optional_str(claims.get("family_name"))
    if last is None:
        last = " ".join(parts[1:]) or None
    return first, last


class LocalSignatureVerifier:
    """HS256 bearer tokens signed with a shared secret.

    The signature check (HMAC-SHA256 over ``header.payload``, constant-time
    comparison) and segment decoding are done by PyJWT. Expiry is checked
    here against the injected clock so that a token is accepted up to and
    including its ``exp`` second. ``nbf`` and ``iat`` are not enforced.
    """

    mode = VerificationMode.JWT_HS256

    def __init__(
        self,
        secret: str,
        *,
        issuer: str | None = None,
        audience: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._clock = clock

    def _decode(self, credential: str) -> dict[str, Any] | None:
        if credential.count(".") != 2:
            return None
        try:
            with warnings.catch_warnings():
                # Short secrets are reported once by build_verifier.
                warnings.filterwarnings("ignore", message="The HMAC key is")
                claims = jwt.decode(
                    credential,
                    self._secret,
                    algorithms=["HS256"],
                    issuer=self._issuer,
                    audience=self._audience,
                    options={
                        "verify_exp": False,
                        "verify_nbf": False,
                        "verify_iat": False,
                        "verify_aud": self._audience is not None,
                        "require": ["sub"],
                    },
                )
        except jwt.PyJWTError as exc:
            logger.info("token_rejected mode=%s reason=%s", self.mode.value, type(exc).__name__)
            return None
        if not isinstance(claims, dict):
            return None
        return claims

    async def verify(self, credential: str) -> VerifiedIdentity | None:
        claims = self._decode(credential.strip())
        if claims is None:
            return None
        exp = claims.get("exp")
        if exp is not None:
            try:
                expires_at = int(exp)
            except (TypeError, ValueError):
                return None
            if expires_at < int(self._clock()):
                logger.info("token_rejected mode=%s reason=expired", self.mode.value)
                return None
        subject = _optional_str(claims.get("sub"))
        if subject is None:
            return None
        first, last = split_display_name(claims)
        return VerifiedIdentity(
            external_id=subject,
            first_name=first,
            last_name=last,
            email=_optional_str(claims.get("email")),
            raw=claims,
        )


class RemoteEndpointVerifier:
    """Delegate verification to an HTTP endpoint: POST {"token": ...} -> identity JSON."""

    mode = VerificationMode.VERIFY_ENDPOINT

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout_s = timeout_s
        self._transport = transport

    async def _post(self, credential: str) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            return await client.post(self._endpoint, json={"token": credential})

    async def verify(self, credential: str) -> VerifiedIdentity | None:
        start = time.monotonic()
        try:
            # httpx timeouts are per phase; bound the whole exchange as well.
            response = await asyncio.wait_for(self._post(credential.strip()), timeout=self._timeout_s)
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            record_external_call(
                integration=_VERIFY_ENDPOINT_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("token_verify_endpoint_failed error=%s", type(exc).__name__)
            return None
        record_external_call(
            integration=_VERIFY_ENDPOINT_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        if not response.is_success:
            logger.info("token_rejected mode=%s status=%s", self.mode.value, response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        external_id = _identifier(body.get("user_id")) or _identifier(body.get("sub"))
        if external_id is None:
            logger.info("token_rejected mode=%s reason=missing_identifier", self.mode.value)
            return None
        return VerifiedIdentity(
            external_id=external_id,
            first_name=_optional_str(body.get("first_name")),
            last_name=_optional_str(body.get("last_name")),
            email=_optional_str(body.get("email")),
            raw=body,
        )


async def verify_token(verifier: TokenVerifier, credential: str) -> VerifiedIdentity | None:
    # Single entry point so outcomes are counted the same way for every strategy.
    verified = await verifier.verify(credential)
    outcome = "accepted" if verified is not None else "rejected"
    increment_counter(f"token_verify_{outcome}_total")
    return verified


def build_verifier(settings: Settings | None = None) -> TokenVerifier | None:
    settings = settings or get_settings()
    if not settings.auth_mode:
        return None
    try:
        mode = VerificationMode(settings.auth_mode.strip().lower())
    except ValueError:
        logger.warning("token_verifier_unknown_mode mode=%s", settings.auth_mode)
        return None
    if mode is VerificationMode.JWT_HS256:
        if not settings.auth_jwt_secret:
            logger.warning("token_verifier_missing_secret mode=%s", mode.value)
            return None
        secret_bytes = len(settings.auth_jwt_secret.encode("utf-8"))
        if secret_bytes < _MIN_SECRET_BYTES:
            logger.warning(
                "token_verifier_weak_secret mode=%s bytes=%s min_bytes=%s",
                mode.value,
                secret_bytes,
                _MIN_SECRET_BYTES,
            )
        return LocalSignatureVerifier(
            settings.auth_jwt_secret,
            issuer=settings.auth_issuer,
            audience=settings.auth_audience,
        )
    if not settings.auth_verify_endpoint:
        logger.warning("token_verifier_missing_endpoint mode=%s", mode.value)
        return None
    return RemoteEndpointVerifier(
        settings.auth_verify_endpoint,
        timeout_s=settings.auth_verify_timeout_ms / 1000.0,
    )
