import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

router = APIRouter()

# Tokens are issued by the tenant/user service; this app only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=True)

JWT_SECRET = os.environ.get("JWT_SECRET", "CHANGE_ME_SECRET").strip()
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_MINUTES = int(os.environ.get("JWT_EXPIRES_MINUTES", "720").strip() or 720)


class StaffUser(BaseModel):
    id: str
    tenant_id: Optional[str] = None
    name: Optional[str] = None
    role: str = "florist"

    @property
    def display_name(self) -> str:
        return self.name or self.id


def issue_token(user_id: str, tenant_id: str, *, role: str = "florist", name: Optional[str] = None) -> str:
    """Mint a token in the issuer's format (used by scripts and tests)."""
    exp = datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRES_MINUTES)
    payload = {"sub": str(user_id), "tenant_id": tenant_id, "role": role, "exp": exp}
    if name:
        payload["name"] = name
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user(token: str = Depends(oauth2_scheme)) -> StaffUser:
    cred_exc = HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise cred_exc
    uid = payload.get("sub")
    if not uid:
        raise cred_exc
    return StaffUser(
        id=str(uid),
        tenant_id=payload.get("tenant_id"),
        name=payload.get("name"),
        role=payload.get("role") or "florist",
    )


def require_tenant(tenant_id: str, user: StaffUser) -> None:
    if user.role == "admin":
        return
    if not user.tenant_id or user.tenant_id != tenant_id:
        raise HTTPException(status_code=403, detail="token not valid for this tenant")


async def tenant_user(tenant_id: str, user: StaffUser = Depends(get_current_user)) -> StaffUser:
    """Dependency for /api/tenants/{tenant_id}/... routes."""
    require_tenant(tenant_id, user)
    return user


@router.get("/api/auth/me")
async def me(user: StaffUser = Depends(get_current_user)):
    return {"id": user.id, "tenant_id": user.tenant_id, "name": user.name, "role": user.role}
