import base64
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from marketplace.models import Principal

ROLES = {"customer", "provider", "admin"}


def _ttl_hours_from_env() -> int:
    try:
        value = int(os.getenv("AUTH_TOKEN_TTL_HOURS", "24"))
    except ValueError:
        return 24
    return value if value > 0 else 24


TOKEN_TTL_HOURS = _ttl_hours_from_env()
DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "marketplace-demo")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(user_id: str, role: str) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[Principal]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
    except (ValueError, TypeError):
        return None
    expected_sig = hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    if not hmac.compare_digest(sent_sig, expected_sig):
        return None
    try:
        user_id, role, expiry_ts = payload.decode("utf-8").rsplit("|", 2)
        expires = int(expiry_ts)
    except (UnicodeDecodeError, ValueError):
        return None
    if datetime.now(timezone.utc).timestamp() > expires or role not in ROLES or not user_id:
        return None
    return Principal(user_id=user_id, role=role)


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_principal(authorization: Optional[str]) -> Optional[Principal]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    principal = resolve_request_principal(authorization)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return principal
