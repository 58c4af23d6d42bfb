import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel

from config import AUTH_SECRET, TOKEN_TTL_SECONDS


def hash_password(password: str, salt: Optional[str] = None) -> Dict[str, str]:
    salt_bytes = os.urandom(16) if salt is None else base64.b64decode(salt)
    hashed = hashlib.pbkdf2_hmac("sha256", password.encode(), salt_bytes, 100_000)
    return {
        "salt": base64.b64encode(salt_bytes).decode(),
        "hash": base64.b64encode(hashed).decode(),
    }


def verify_password(password: str, salt: str, stored_hash: str) -> bool:
    calc = hash_password(password, salt)
    return hmac.compare_digest(calc["hash"], stored_hash)


def _sign(data: str) -> str:
    return hmac.new(AUTH_SECRET.encode(), data.encode(), hashlib.sha256).hexdigest()


def sign_token(user_id: str, ttl: int = TOKEN_TTL_SECONDS) -> str:
    payload = {"userId": user_id, "exp": int(time.time()) + ttl}
    data = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
    return f"{data}.{_sign(data)}"


def verify_token(token: str) -> Dict[str, Any]:
    try:
        data, sig = token.split(".")
        if not hmac.compare_digest(sig, _sign(data)):
            raise ValueError("Bad signature")
        payload = json.loads(base64.urlsafe_b64decode(data.encode()).decode())
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid token")
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        raise HTTPException(status_code=401, detail="Token expired")
    return payload


class AuthedUser(BaseModel):
    id: str


def user_from_token(token: str) -> AuthedUser:
    payload = verify_token(token)
    uid = payload.get("userId")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return AuthedUser(id=uid)


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthedUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    return user_from_token(authorization.split(" ", 1)[1])
