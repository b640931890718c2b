# utils/auth.py

import secrets
import string

from passlib.context import CryptContext

# passlib con bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

_TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def hash_password(password: str) -> str:
    """
    Takes a plaintext password and returns the bcrypt hash.
    """
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Compares a plaintext password against the stored hash.
    Returns True when they match.
    """
    return pwd_context.verify(plain_password, hashed_password)


def generate_temp_password(length: int = 16) -> str:
    """Random alphanumeric password handed out on admin resets and invites."""
    return "".join(secrets.choice(_TEMP_PASSWORD_ALPHABET) for _ in range(length))
