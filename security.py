"""Password hashing, bearer tokens and the role checks used by the routes."""
import logging
import os
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from bson import ObjectId
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from database import collection, create_document

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "workshop-dev-secret")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", 720))

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed) -> bool:
    if not hashed or not isinstance(hashed, str) or not hashed.startswith("$2"):
        logger.error("Invalid bcrypt hash format")
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.error("Malformed bcrypt hash")
        return False


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def public_user(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "role": doc.get("role"),
        "is_active": doc.get("is_active", True),
    }


def authenticate(email: str, password: str) -> dict:
    doc = collection("user").find_one({"email": email.strip().lower()})
    if not doc or not doc.get("is_active", True) or not verify_password(password, doc.get("password_hash")):
        logger.warning("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return doc


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(credentials.credentials)
    sub = payload.get("sub")
    if not isinstance(sub, str) or not ObjectId.is_valid(sub):
        raise HTTPException(status_code=401, detail="Invalid token")
    doc = collection("user").find_one({"_id": ObjectId(sub)})
    if not doc or not doc.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(doc)


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Only administrators can do this.")
    return user


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def check_owner(doc: dict, user: dict, label: str) -> dict:
    """Operators only reach records they own; anything else looks missing."""
    if not is_admin(user) and doc.get("owner_id") != user.get("id"):
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def bootstrap_admin(email: str, password: str, name: str = "Administrator"):
    """Make sure the configured owner account exists and is an admin."""
    email = email.strip().lower()
    existing = collection("user").find_one({"email": email})
    if existing:
        if existing.get("role") != "admin":
            collection("user").update_one({"_id": existing["_id"]}, {"$set": {"role": "admin"}})
            logger.info("Promoted %s to admin", email)
        return str(existing["_id"])
    _id = create_document("user", {
        "name": name,
        "email": email,
        "password_hash": hash_password(password),
        "role": "admin",
        "is_active": True,
    })
    logger.info("Created bootstrap admin %s", email)
    return _id
