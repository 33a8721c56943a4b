# =======================================================================================
# gatepass/services/qr_service.py - QR Token Issuance and Decoding
# =======================================================================================
import base64
import hashlib
import hmac
import io
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import qrcode
from jose import JWTError, jwt

from ..config import config


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    security_code: str


def _epoch(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class QRService:
    """Signs, decodes and renders the credential printed on an approved pass."""

    algorithm = "HS256"

    def __init__(self, secret_key: Optional[str] = None, buffer_minutes: Optional[int] = None):
        self._secret_key = secret_key
        self._buffer_minutes = buffer_minutes

    @property
    def secret_key(self) -> str:
        return self._secret_key or config.QR_SECRET_KEY

    @property
    def buffer_minutes(self) -> int:
        if self._buffer_minutes is not None:
            return self._buffer_minutes
        return config.QR_EXPIRY_BUFFER_MINUTES

    def security_code(self, pass_id: int) -> str:
        """Short code a guard can read out when the scanner is unavailable."""
        digest = hmac.new(self.secret_key.encode(), str(pass_id).encode(), hashlib.sha256).hexdigest()
        return digest[:8].upper()

    def expiry_for(self, return_time: datetime) -> datetime:
        return return_time + timedelta(minutes=self.buffer_minutes)

    def issue(self, pass_row: Mapping[str, Any], now: datetime) -> IssuedToken:
        """Build a signed token bound to the pass id and its current unique token."""
        expires_at = self.expiry_for(pass_row["return_time"])
        code = self.security_code(pass_row["id"])
        claims = {
            "pass_id": pass_row["id"],
            "pass_code": pass_row["pass_code"],
            "token": pass_row["unique_token"],
            "student_id": pass_row["student_id"],
            "security_code": code,
            "iat": _epoch(now),
            "exp": _epoch(expires_at),
        }
        token = jwt.encode(claims, self.secret_key, algorithm=self.algorithm)
        return IssuedToken(token=token, expires_at=expires_at, security_code=code)

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the claims of a token signed by this service, or None.

        Expiry is not checked here; callers compare ``exp`` against their own clock.
        """
        if token.count(".") != 2:
            return None
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError:
            return None
        if "pass_id" not in claims or "token" not in claims:
            return None
        return claims

    @staticmethod
    def is_expired(claims: Mapping[str, Any], now: datetime) -> bool:
        exp = claims.get("exp")
        return exp is not None and _epoch(now) > int(exp)

    @staticmethod
    def render_png_b64(data: str) -> str:
        """Render ``data`` as a base64 encoded PNG QR code."""
        img = qrcode.make(data)
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return base64.b64encode(buf.getvalue()).decode()
