from __future__ import annotations

import os
import secrets
from datetime import datetime, timedelta

from dotenv import load_dotenv
from passlib.context import CryptContext

from .models import utcnow

load_dotenv()

# Durata dei token di recupero password (default: 1 ora)
RESET_TOKEN_TTL_MINUTES = int(os.getenv("RESET_TOKEN_TTL_MINUTES", "60"))
RESET_TOKEN_BYTES = 32

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    # utenti solo-Google non hanno password
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def new_reset_token() -> str:
    """64 caratteri esadecimali, casuali (secrets)."""
    return secrets.token_hex(RESET_TOKEN_BYTES)


def reset_token_expiry(now: datetime | None = None, ttl: timedelta | None = None) -> datetime:
    now = now or utcnow()
    return now + (ttl if ttl is not None else timedelta(minutes=RESET_TOKEN_TTL_MINUTES))


def mask_token(token: str) -> str:
    """Per i log: mai il token intero."""
    return token[:8] + "..."
