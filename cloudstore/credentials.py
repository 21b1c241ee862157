"""API key storage and validation.

Only the SHA-256 digest of a key is persisted. The plaintext is returned once
by :func:`create_key` and cannot be recovered afterwards.
"""
from collections import namedtuple
from datetime import datetime
import logging
import secrets

from cryptography.hazmat.primitives import hashes
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .errors import NotFound, ValidationError
from .models import ApiKey, utcnow

logger = logging.getLogger(__name__)

KEY_TAG = 'sk'
KEY_RANDOM_BYTES = 32  # 256 bits

READ = 'read'
WRITE = 'write'
DELETE = 'delete'
ALL_PERMISSIONS = frozenset([READ, WRITE, DELETE])
DEFAULT_PERMISSIONS = [READ]

KeyGrant = namedtuple('KeyGrant', ['user_id', 'permissions'])


def generate_key() -> str:
    return f'{KEY_TAG}_{secrets.token_hex(KEY_RANDOM_BYTES)}'


def hash_key(plaintext: str) -> str:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(plaintext.encode('utf-8'))
    return digest.finalize().hex()


def normalize_permissions(permissions):
    """Validate a requested permission list and return it de-duplicated in canonical order."""
    if permissions is None:
        return list(DEFAULT_PERMISSIONS)
    if not isinstance(permissions, (list, tuple, set, frozenset)) or not permissions:
        raise ValidationError('Invalid permissions. Must be a non-empty list of: read, write, delete')
    unknown = [p for p in permissions if not isinstance(p, str) or p not in ALL_PERMISSIONS]
    if unknown:
        raise ValidationError('Invalid permissions. Must be a non-empty list of: read, write, delete')
    return [p for p in (READ, WRITE, DELETE) if p in permissions]


def create_key(user_id: str, name: str, permissions=None, expires_at: datetime = None):
    """Create a key for ``user_id``.

    Returns:
        tuple: ``(ApiKey, plaintext)``. The plaintext is not stored anywhere.

    Raises:
        ValidationError: empty name, bad permissions, or an expiry in the past
    """
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationError('Key name is required')
    permissions = normalize_permissions(permissions)
    if expires_at is not None and expires_at <= utcnow():
        raise ValidationError('Expiration date must be in the future')

    plaintext = generate_key()
    api_key = ApiKey(
        user_id=user_id,
        name=name.strip(),
        key_hash=hash_key(plaintext),
        key_suffix=plaintext[-4:],
        permissions=permissions,
        expires_at=expires_at,
    )
    db.session.add(api_key)
    db.session.commit()
    logger.info(f"Created API key {api_key.id} for user {user_id}")
    return api_key, plaintext


def validate_key(plaintext):
    """Look up an active, unexpired key by its digest.

    Unknown, revoked and expired keys all return None so callers cannot tell
    them apart.

    Returns:
        KeyGrant or None
    """
    if not plaintext or not isinstance(plaintext, str) or not plaintext.startswith(f'{KEY_TAG}_'):
        return None

    api_key = ApiKey.query.filter_by(key_hash=hash_key(plaintext), is_active=True).first()
    if api_key is None:
        return None
    if api_key.expires_at is not None and api_key.expires_at <= utcnow():
        return None

    grant = KeyGrant(user_id=api_key.user_id, permissions=frozenset(api_key.permissions))
    _touch_last_used(api_key.id)
    return grant


def _touch_last_used(key_id):
    try:
        db.session.execute(
            update(ApiKey)
            .where(ApiKey.id == key_id)
            .values(last_used=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning(f"Could not update last_used for API key {key_id}: {e}")


def _owned_key(key_id, user_id):
    api_key = ApiKey.query.filter_by(id=key_id, user_id=user_id).first()
    if api_key is None:
        raise NotFound('API key not found')
    return api_key


def revoke_key(key_id: str, user_id: str) -> None:
    api_key = _owned_key(key_id, user_id)
    api_key.is_active = False
    db.session.commit()
    logger.info(f"Revoked API key {key_id} for user {user_id}")


def delete_key(key_id: str, user_id: str) -> None:
    api_key = _owned_key(key_id, user_id)
    db.session.delete(api_key)
    db.session.commit()
    logger.info(f"Deleted API key {key_id} for user {user_id}")


def list_keys(user_id: str):
    return ApiKey.query.filter_by(user_id=user_id).order_by(ApiKey.created_at.desc()).all()
