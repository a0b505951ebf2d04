# tracking_service/auth.py
import os
import uuid
import logging
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Request
from jose import jwt, JWTError

from tracking_service.errors import AuthenticationFailed
from tracking_service.schemas import Identity, Role

load_dotenv()

logger = logging.getLogger("tracking-service.auth")

JWT_SECRET = os.getenv("JWT_SECRET", "demo_secret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# tokens minted by the other services still say "driver" / "user"
ROLE_ALIASES = {
    "driver": Role.delivery,
    "user": Role.customer,
}
TOKEN_ROLES = {Role.customer, Role.restaurant, Role.delivery, Role.admin}


def normalize_role(raw: Any) -> Optional[Role]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    if value in ROLE_ALIASES:
        return ROLE_ALIASES[value]
    try:
        role = Role(value)
    except ValueError:
        return None
    return role if role in TOKEN_ROLES else None


def decode_jwt_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def authenticate_connection(token: Optional[str], trace_id: Optional[str] = None) -> Identity:
    """
    Turn a handshake credential into an identity.

    No token means an anonymous viewer. A token that fails verification,
    or carries no usable subject/role, raises AuthenticationFailed.
    """
    trace_id = trace_id or str(uuid.uuid4())
    if not token:
        return Identity(role=Role.anonymous, trace_id=trace_id)

    try:
        payload = decode_jwt_token(token)
    except JWTError as exc:
        logger.warning(f"[AUTH][{trace_id}] Token rejected: {exc}")
        raise AuthenticationFailed("Invalid or expired token") from exc

    subject = payload.get("sub") or payload.get("id")
    role = normalize_role(payload.get("role"))
    if not subject or role is None:
        logger.warning(f"[AUTH][{trace_id}] Token missing subject or role: sub={subject} role={payload.get('role')}")
        raise AuthenticationFailed("Invalid or expired token")

    return Identity(id=str(subject), role=role, trace_id=trace_id)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


# -------------------------
# HTTP dependencies
# -------------------------
async def get_optional_user(request: Request) -> Identity:
    trace_id = request.headers.get("x-trace-id") or getattr(request.state, "trace_id", None)
    token = bearer_token(request.headers.get("Authorization"))
    try:
        return authenticate_connection(token, trace_id=trace_id)
    except AuthenticationFailed as exc:
        raise HTTPException(status_code=401, detail=str(exc))


async def login_required(user: Identity = Depends(get_optional_user)) -> Identity:
    if user.is_anonymous:
        raise HTTPException(status_code=401, detail="Authentication token is required")
    return user
