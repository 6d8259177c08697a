import uuid
from datetime import datetime, timedelta, timezone
from fastapi import Depends, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from carevault.core.config import settings
from carevault.core.errors import InvalidCredential, RoleNotAllowed

http_bearer = HTTPBearer(auto_error=False)

PATIENT = "patient"
DOCTOR = "doctor"
ANONYMOUS = "anonymous"

class Principal(BaseModel):
    user_id: uuid.UUID
    role: str

def create_access_token(user_id: uuid.UUID, role: str, minutes: int | None = None) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=minutes or settings.ACCESS_TOKEN_MINUTES)
    claims = {"sub": str(user_id), "role": role, "typ": "access", "exp": exp}
    if settings.REQUIRED_AUDIENCE:
        claims["aud"] = settings.REQUIRED_AUDIENCE
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def _decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise InvalidCredential(f"Invalid token: {e}")
    if payload.get("typ") != "access":
        # capability tokens share the signing stack but are never bearer credentials
        raise InvalidCredential("Invalid token type")
    return payload

async def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(http_bearer),
    token: str | None = Query(default=None, include_in_schema=False),
) -> Principal:
    # EventSource clients cannot set headers, so accept ?token= as a fallback
    raw = creds.credentials if creds is not None else token
    if not raw:
        raise InvalidCredential("Access denied. No token provided.")

    data = _decode_token(raw)
    try:
        user_id = uuid.UUID(str(data.get("sub")))
    except ValueError:
        raise InvalidCredential("Invalid token subject")
    role = data.get("role")
    if not role:
        raise InvalidCredential("Invalid token format.")
    return Principal(user_id=user_id, role=role)

def require_roles(*allowed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in allowed:
            raise RoleNotAllowed(allowed=list(allowed))
        return principal
    return dep
