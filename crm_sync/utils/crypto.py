"""Cryptographic utilities for token encryption and OAuth state signing."""

from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Optional
import base64
import secrets

import jwt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


STATE_ALGORITHM = "HS256"
STATE_AUDIENCE = "crm-oauth-state"


class OAuthStateError(ValueError):
    """OAuth state token is invalid, expired or for another provider."""


@lru_cache(maxsize=8)
def generate_key(password: str, salt: bytes) -> bytes:
    """Generate encryption key from password."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def encrypt_token(token: str, encryption_key: str, salt: str) -> str:
    """Encrypt OAuth token."""
    f = Fernet(generate_key(encryption_key, salt.encode()))
    return f.encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str, encryption_key: str, salt: str) -> str:
    """Decrypt OAuth token."""
    f = Fernet(generate_key(encryption_key, salt.encode()))
    try:
        return f.decrypt(encrypted_token.encode()).decode()
    except InvalidToken as e:
        raise ValueError("Stored token could not be decrypted") from e


def create_state_token(
    provider: str,
    secret_key: str,
    ttl_seconds: int = 600,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """Create a signed, expiring OAuth state parameter."""
    now = datetime.utcnow()
    claims = {
        "provider": provider,
        "nonce": secrets.token_urlsafe(16),
        "aud": STATE_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    if extra:
        claims.update(extra)
    return jwt.encode(claims, secret_key, algorithm=STATE_ALGORITHM)


def verify_state_token(state: str, provider: str, secret_key: str) -> Dict[str, Any]:
    """Verify an OAuth state parameter and return its claims."""
    try:
        claims = jwt.decode(
            state,
            secret_key,
            algorithms=[STATE_ALGORITHM],
            audience=STATE_AUDIENCE,
        )
    except jwt.ExpiredSignatureError as e:
        raise OAuthStateError("OAuth state expired") from e
    except jwt.InvalidTokenError as e:
        raise OAuthStateError("Invalid OAuth state") from e

    if claims.get("provider") != provider:
        raise OAuthStateError("Provider mismatch")
    return claims
