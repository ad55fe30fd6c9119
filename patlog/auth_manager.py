# patlog/auth_manager.py
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, InvalidHash, VerificationError
from jose import JWTError, jwt

from patlog import config

ph = PasswordHasher()

def get_password_hash(password: str) -> str:
    return ph.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Checks a password against its Argon2 hash; any mismatch or bad hash is False."""
    try:
        return ph.verify(hashed_password, plain_password)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)

def create_session_token(user_id: int, impersonator_id: Optional[int] = None) -> str:
    """Token stored in the session cookie (or returned by /token)."""
    data = {"sub": str(user_id)}
    if impersonator_id is not None:
        data["imp"] = str(impersonator_id)
    return create_access_token(data)

def decode_session_token(token: Optional[str]) -> Optional[int]:
    """Returns the user id carried by a valid token, None otherwise."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        subject = payload.get("sub")
        return int(subject) if subject is not None else None
    except (JWTError, ValueError, TypeError):
        logging.info("Rejected an invalid or expired session token.")
        return None
