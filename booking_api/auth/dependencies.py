import logging

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from booking_api.auth import jwt_handler
from booking_api.core.errors import AuthenticationError, PermissionDeniedError
from booking_api.database import get_db
from booking_api.models.api_key import ApiKey
from booking_api.models.user import User
from booking_api.services.api_key_service import ApiKeyService

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ADMIN_ROLES = {"admin", "super_admin"}


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise AuthenticationError("UNAUTHORIZED")

    try:
        payload = jwt_handler.decode_access_token(credentials.credentials)
    except Exception as exc:
        raise AuthenticationError("UNAUTHORIZED") from exc

    email = payload.get("sub")
    if not email:
        raise AuthenticationError("UNAUTHORIZED")

    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise AuthenticationError("UNAUTHORIZED")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in ADMIN_ROLES:
        logger.warning("User %s with role %s denied admin access", user.id, user.role)
        raise PermissionDeniedError("FORBIDDEN")
    return user


def require_api_key(
    x_api_key: str | None = Header(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> ApiKey:
    raw_key = x_api_key or (credentials.credentials if credentials else None)
    api_key = ApiKeyService(db).authenticate(raw_key)
    if api_key is None:
        raise AuthenticationError("Unauthorized: Invalid or missing API key")
    return api_key
