from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Optional

from agriqual.config import Settings
from agriqual.logging import get_logger
from agriqual.service.errors import TokenError
from agriqual.storage.models import Account, TokenClaims, utcnow

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class SessionTokenIssuer:
    """Signed HS256 session tokens; ``TokenClaims`` is the only shape consumers see."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def issue(self, account: Account, *, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        expires_at = now + self.settings.token_lifetime
        payload = {
            "sub": account.id,
            "role": account.role,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "tv": account.token_version,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def parse(self, token: Optional[str], *, now: Optional[datetime] = None) -> TokenClaims:
        """Verify ``token`` and return its claims.

        Raises ``TokenError`` (MALFORMED, INVALID or EXPIRED). There is no
        clock-skew allowance: ``now >= exp`` is expired.
        """

        if not token:
            raise TokenError(TokenError.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenError(TokenError.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenError(TokenError.MALFORMED) from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            # pinned to prevent algorithm confusion
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenError(TokenError.INVALID)

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenError(TokenError.INVALID)
        try:
            payload: Any = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenError.MALFORMED) from None
        if not isinstance(payload, dict):
            raise TokenError(TokenError.MALFORMED)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenError(TokenError.INVALID)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenError(TokenError.INVALID)

        subject = payload.get("sub")
        role = payload.get("role")
        try:
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
            token_version = int(payload.get("tv", 1))
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise TokenError(TokenError.MALFORMED) from None
        if not isinstance(subject, str) or not subject or not isinstance(role, str):
            raise TokenError(TokenError.MALFORMED)
        if (now or utcnow()) >= expires_at:
            raise TokenError(TokenError.EXPIRED)
        return TokenClaims(
            subject_id=subject,
            role=role,
            issued_at=issued_at,
            expires_at=expires_at,
            token_version=token_version,
        )


__all__ = ["SessionTokenIssuer"]
