import base64
import hashlib
import hmac
import json
import time
from typing import Any

from errors import Unauthorized


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + padding).encode("ascii"))


def _canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class TokenIssuer:
    """Signed, time-limited bearer tokens.

    A token is ``base64url(payload).base64url(hmac_sha256(secret, payload_part))``.
    Every verification failure raises the same ``Unauthorized`` so callers
    cannot tell a bad signature from an expired token.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise RuntimeError("SESSION_SECRET is required")
        self._secret = secret.encode("utf-8")

    def _sign(self, payload_part: str) -> bytes:
        return hmac.new(self._secret, payload_part.encode("ascii"), hashlib.sha256).digest()

    def issue(self, payload: dict[str, Any], ttl_seconds: int) -> str:
        now = int(time.time())
        claims = dict(payload)
        claims["iat"] = now
        claims["exp"] = now + int(ttl_seconds)
        payload_part = _b64url_encode(_canonical_json(claims).encode("utf-8"))
        return f"{payload_part}.{_b64url_encode(self._sign(payload_part))}"

    def verify(self, token: str) -> dict[str, Any]:
        try:
            payload_part, signature_part = token.split(".", 1)
            provided = _b64url_decode(signature_part)
            if not hmac.compare_digest(self._sign(payload_part), provided):
                raise ValueError("signature")
            payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("payload")
            if int(payload.get("exp", 0)) < int(time.time()):
                raise ValueError("expired")
        except (ValueError, TypeError, UnicodeError) as exc:
            raise Unauthorized() from exc
        return payload


def voter_claims(voter_id: int, email: str, wallet_address: str) -> dict[str, Any]:
    return {"id": voter_id, "email": email, "wallet_address": wallet_address, "role": "voter"}


def admin_claims(user_id: int, email: str) -> dict[str, Any]:
    return {"id": user_id, "email": email, "role": "admin"}
