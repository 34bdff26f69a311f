import logging
from datetime import datetime

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from booking_api.auth.dependencies import require_admin
from booking_api.core.errors import BadRequestError
from booking_api.database import get_db
from booking_api.models.user import User
from booking_api.services.api_key_service import ApiKeyService

logger = logging.getLogger(__name__)

router = APIRouter(tags=['api-keys'])


class CreateApiKeyRequest(BaseModel):
    label: str
    company_id: int | None = None

    @field_validator('label')
    @classmethod
    def validate_label(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Label is required.')
        return normalized


class CreatedApiKeyResponse(BaseModel):
    id: int
    key: str
    label: str
    created_at: datetime | None = None


class ApiKeyResponse(BaseModel):
    id: int
    company_id: int
    label: str
    key_prefix: str
    created_at: datetime | None = None
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None

    class Config:
        from_attributes = True


def resolve_target_company(user: User, requested_company_id: int | None) -> int:
    if user.role == 'super_admin':
        if requested_company_id is None:
            raise BadRequestError('company_id is required when creating API key as super_admin')
        return requested_company_id

    if user.company_id is None:
        raise BadRequestError('User must be associated with a company')
    return user.company_id


def scoped_company(user: User) -> int | None:
    """Company filter for the caller; ``None`` means every company."""
    if user.role == 'super_admin':
        return None
    if user.company_id is None:
        raise BadRequestError('User must be associated with a company')
    return user.company_id


@router.post('/api-keys', status_code=status.HTTP_201_CREATED)
def create_api_key(
    data: CreateApiKeyRequest,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    company_id = resolve_target_company(user, data.company_id)
    api_key, raw_key = ApiKeyService(db).create_api_key(company_id, data.label, user_id=user.id)

    return {
        'success': True,
        'data': CreatedApiKeyResponse(
            id=api_key.id,
            key=raw_key,
            label=api_key.label,
            created_at=api_key.created_at,
        ),
    }


@router.get('/api-keys')
def list_api_keys(user: User = Depends(require_admin), db: Session = Depends(get_db)):
    keys = ApiKeyService(db).list_api_keys(scoped_company(user))
    return {'success': True, 'data': [ApiKeyResponse.model_validate(key) for key in keys]}


@router.patch('/api-keys/{key_id}/revoke')
def revoke_api_key(key_id: int, user: User = Depends(require_admin), db: Session = Depends(get_db)):
    ApiKeyService(db).revoke_api_key(key_id, scoped_company(user), user_id=user.id)
    return {'success': True, 'data': {'message': 'API key revoked successfully'}}
