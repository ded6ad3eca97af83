from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from storefront.core.config import settings

security = HTTPBearer(auto_error=False)

def get_current_identity(creds: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(creds.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid access token")
    user_id = identity_user_id(payload)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication failed: User ID not found.")
    payload["user_id"] = user_id
    return payload  # contains user_id, role

def identity_user_id(payload: dict) -> int | None:
    raw = payload.get("user_id", payload.get("sub"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None

def require_admin(identity: dict = Depends(get_current_identity)):
    if identity.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return identity

def ensure_owner_or_admin(identity: dict, user_id: int):
    if identity.get("role") != "admin" and identity.get("user_id") != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
