import hashlib
import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from booking_api.core import config
from booking_api.core.errors import NotFoundError
from booking_api.models.api_key import ApiKey

logger = logging.getLogger(__name__)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode('utf-8')).hexdigest()


def generate_raw_key() -> str:
    return f'{config.API_KEY_PREFIX}{secrets.token_urlsafe(32)}'


class ApiKeyService:
    """Issue, list, revoke and authenticate company API keys.

    The raw key is only returned by ``create_api_key``; the table keeps a
    sha256 hash plus a short prefix for display.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_api_key(self, company_id: int, label: str, user_id: int | None = None) -> tuple[ApiKey, str]:
        raw_key = generate_raw_key()
        api_key = ApiKey(
            company_id=company_id,
            label=label.strip(),
            key_prefix=raw_key[:12],
            key_hash=hash_api_key(raw_key),
            created_by=user_id,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(api_key)
        self.db.commit()
        self.db.refresh(api_key)

        logger.info('Created API key %s for company %s', api_key.id, company_id)
        return api_key, raw_key

    def list_api_keys(self, company_id: int | None = None) -> list[ApiKey]:
        query = self.db.query(ApiKey)
        if company_id is not None:
            query = query.filter(ApiKey.company_id == company_id)
        return query.order_by(ApiKey.id.asc()).all()

    def revoke_api_key(self, key_id: int, company_id: int | None, user_id: int | None = None) -> ApiKey:
        query = self.db.query(ApiKey).filter(ApiKey.id == key_id)
        if company_id is not None:
            query = query.filter(ApiKey.company_id == company_id)
        api_key = query.first()

        if api_key is None:
            raise NotFoundError('API key not found')

        if api_key.revoked_at is None:
            api_key.revoked_at = datetime.now(timezone.utc)
            api_key.revoked_by = user_id
            self.db.commit()
            self.db.refresh(api_key)
            logger.info('Revoked API key %s (company %s)', api_key.id, api_key.company_id)

        return api_key

    def authenticate(self, raw_key: str | None) -> ApiKey | None:
        if not raw_key:
            return None

        api_key = self.db.query(ApiKey).filter(
            ApiKey.key_hash == hash_api_key(raw_key.strip()),
            ApiKey.revoked_at.is_(None),
        ).first()

        if api_key is not None and config.API_KEY_TRACK_USAGE:
            api_key.last_used_at = datetime.now(timezone.utc)
            self.db.commit()

        return api_key
