import binascii
import hashlib
import hmac
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import User, get_db

JWT_SECRET = os.getenv("JWT_SECRET", "please-change-this-secret-in-production")
JWT_ALG = "HS256"
TOKEN_EXPIRE_DAYS = 30


def _hash_password(password: str, salt: Optional[bytes] = None) -> Dict[str, str]:
    if salt is None:
        salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)
    return {"hash": binascii.hexlify(dk).decode("ascii"), "salt": binascii.hexlify(salt).decode("ascii")}


def _verify_password(password: str, salt_hex: str, hash_hex: str) -> bool:
    salt = binascii.unhexlify(salt_hex)
    expected = binascii.unhexlify(hash_hex)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)
    return hmac.compare_digest(dk, expected)


def user_to_dict(user: User) -> Dict[str, Any]:
    return {"id": user.id, "email": user.email, "name": user.name}


def create_user(db: Session, email: str, password: str, name: str) -> User:
    if db.query(User).filter(User.email == email).first():
        raise ValueError("user_exists")
    parts = _hash_password(password)
    user = User(email=email, name=name, password_hash=parts["hash"], salt=parts["salt"])
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("user_exists")
    db.refresh(user)
    return user


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.email == email).first()
    if not user:
        return None
    if not _verify_password(password, user.salt, user.password_hash):
        return None
    return user


def create_access_token(user: User, expires_days: int = TOKEN_EXPIRE_DAYS) -> str:
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "name": user.name,
        "exp": datetime.utcnow() + timedelta(days=expires_days),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        return None


def require_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> User:
    """Resolve the bearer token to a user or fail with 401."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication required")
    if authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1]
    else:
        token = authorization
    data = decode_access_token(token)
    if not data or not str(data.get("sub", "")).isdigit():
        raise HTTPException(status_code=401, detail="Authentication required")
    user = db.get(User, int(data["sub"]))
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user
