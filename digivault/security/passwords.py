from typing import Optional, Tuple

from passlib.context import CryptContext


_password_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(plain_password: str) -> str:
    return _password_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Check a password; the second item is a replacement hash when the stored one is outdated."""
    if not hashed_password:
        return False, None
    return _password_context.verify_and_update(plain_password, hashed_password)
