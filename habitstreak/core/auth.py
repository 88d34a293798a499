"""
Actor identity for the HTTP surface.

Authentication happens upstream (gateway or identity provider); the verified
user id arrives in the X-User-Id header.
"""
from typing import Optional

from fastapi import Header, HTTPException


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """FastAPI dependency returning the authenticated actor, or 401."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id
