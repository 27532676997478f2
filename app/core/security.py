import uuid
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from app.core.config import settings

MEDIA_READ = "media:read"
MEDIA_WRITE = "media:write"

http_bearer = HTTPBearer(auto_error=False)

class Principal(BaseModel):
    user_id: uuid.UUID
    org_id: uuid.UUID
    roles: list[str] = []
    scopes: list[str] = []

def create_access_token(user_id: uuid.UUID, org_id: uuid.UUID, scopes: list[str], expires_in: int = 3600) -> str:
    """Mint an HS256 token in the shape ``get_principal`` accepts (local tooling only)."""
    claims = {
        "sub": str(user_id),
        "org_id": str(org_id),
        "scopes": scopes,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    if settings.REQUIRED_AUDIENCE:
        claims["aud"] = settings.REQUIRED_AUDIENCE
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(http_bearer)) -> Principal:
    # In local/dev, allow missing token and use default org with full media rights
    if creds is None and settings.ENV == "local":
        return Principal(user_id=uuid.uuid4(), org_id=uuid.UUID(settings.DEFAULT_ORG_ID), scopes=[MEDIA_READ, MEDIA_WRITE])
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing token")

    data = _decode_token(creds.credentials)
    return Principal(
        user_id=uuid.UUID(str(data.get("sub") or data.get("user_id"))),
        org_id=uuid.UUID(str(data.get("org_id") or settings.DEFAULT_ORG_ID)),
        roles=data.get("roles", []),
        scopes=data.get("scopes", []),
    )

def require_scopes(*needed: str):
    # Upload rights arrive as a capability granted upstream (media:write);
    # roles are never inspected here.
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        if "*" in principal.scopes:
            return principal
        if not set(needed).issubset(set(principal.scopes)):
            raise HTTPException(status_code=403, detail="Insufficient scopes")
        return principal
    return dep
