import hashlib
import hmac
import secrets
from typing import Optional


def generate_device_token() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(32)


def hash_device_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_device_token(token: str, token_hash: Optional[str]) -> bool:
    if not token_hash:
        return False
    return hmac.compare_digest(hash_device_token(token), token_hash)
