"""Shared dependencies: DB session, owner principal."""
from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from contractdesk.database import get_db
from contractdesk.exceptions import Unauthorized
from contractdesk.models.user import User
from contractdesk.services.auth import decode_token_with_error

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated service provider, passed explicitly into every owner-side operation."""
    user_id: int
    email: str
    full_name: str | None = None
    mobile_number: str | None = None


def get_principal(
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Principal:
    if not credentials:
        raise Unauthorized()
    token_str = (credentials.credentials or "").strip()
    payload, _ = decode_token_with_error(token_str)
    if not payload:
        raise Unauthorized("Invalid or expired token")
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise Unauthorized("User not found")
    return Principal(user_id=user.id, email=user.email, full_name=user.full_name, mobile_number=user.mobile_number)
