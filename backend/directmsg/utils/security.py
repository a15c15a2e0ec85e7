from datetime import timedelta
from typing import Any, Dict

import jwt

from directmsg import config
from directmsg.utils.clock import as_aware, utcnow


def create_access_token(user_id: str, expires_in: timedelta = timedelta(hours=12)) -> str:
    expire = as_aware(utcnow()) + expires_in
    return jwt.encode({"sub": user_id, "exp": expire}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    # raises jwt.InvalidTokenError on bad signature, expiry or malformed input
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
