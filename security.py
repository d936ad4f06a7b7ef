"""
Password hashing, bearer tokens and the request dependencies built on them.

A token is the base64 of a small JSON payload followed by an HMAC-SHA256
signature of that payload, joined by a dot.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, Response

from database import db
from helpers import oid

logger = logging.getLogger(__name__)

AUTH_SALT = os.getenv("AUTH_SALT", "storefront")
TOKEN_SECRET = os.getenv("TOKEN_SECRET", "change-me")

ADMIN_TYPES = ("admin", "manager")


def hash_password(pw: str) -> str:
    return hashlib.sha256((AUTH_SALT + pw).encode()).hexdigest()


def _sign(raw: str) -> str:
    return hmac.new(TOKEN_SECRET.encode(), raw.encode(), hashlib.sha256).hexdigest()


def make_token(user_id: str, email: str, user_type: str) -> str:
    payload = {"user_id": user_id, "email": email, "user_type": user_type}
    raw = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
    return f"{raw}.{_sign(raw)}"


def read_token(token: str) -> Optional[dict]:
    raw, _, signature = token.partition(".")
    if not signature or not hmac.compare_digest(signature, _sign(raw)):
        return None
    try:
        return json.loads(base64.urlsafe_b64decode(raw.encode()))
    except (ValueError, TypeError):
        return None


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "name": f"{user.get('first_name', '')} {user.get('last_name', '')}".strip(),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "user_type": user.get("user_type"),
        "is_active": user.get("is_active", True),
    }


def optional_user(authorization: Optional[str] = Header(None)) -> Optional[dict]:
    """The signed-in user, None for guests; a bad token is still a 401."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    payload = read_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": oid(payload.get("user_id", ""))})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def current_user(user: Optional[dict] = Depends(optional_user)) -> dict:
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(user: dict = Depends(current_user)) -> dict:
    if user.get("user_type") not in ADMIN_TYPES or not user.get("is_active", True):
        logger.warning("Back-office access refused for %s", user.get("email"))
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    return user


class Visitor:
    """Whoever owns the current cart: a user, or a guest identified by session id."""

    def __init__(self, user: Optional[dict], session_id: Optional[str]):
        self.user = user
        self.session_id = session_id

    @property
    def user_id(self) -> Optional[str]:
        return str(self.user["_id"]) if self.user else None

    @property
    def key(self) -> str:
        return self.user_id or self.session_id

    def owner_filter(self) -> dict:
        if self.user:
            return {"user_id": self.user_id}
        return {"session_id": self.session_id, "user_id": None}

    def owns(self, doc: dict) -> bool:
        if self.user:
            return doc.get("user_id") == self.user_id
        return not doc.get("user_id") and doc.get("session_id") == self.session_id


def visitor(response: Response, user: Optional[dict] = Depends(optional_user),
            x_session_id: Optional[str] = Header(None)) -> Visitor:
    session_id = x_session_id
    if not user and not session_id:
        session_id = uuid.uuid4().hex
        response.headers["X-Session-Id"] = session_id
    return Visitor(user, session_id)
