"""User records and per-user storage accounting.

Every change to ``storage_used`` is a single conditional UPDATE so concurrent
requests for the same user cannot race each other through a stale read.
"""
from collections import namedtuple
import logging

from flask import current_app
from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from . import db
from .errors import NotFound, QuotaExceeded, ValidationError
from .models import User
from .namespacing import derive_prefix

logger = logging.getLogger(__name__)

QuotaInfo = namedtuple('QuotaInfo', ['used', 'quota', 'available', 'prefix'])

PROFILE_FIELDS = ('email', 'first_name', 'last_name', 'image_url')


def resolve(subject):
    """Return the User for an identity provider subject ID, or None."""
    return User.query.filter_by(subject=subject).first()


def get_user(user_id):
    return db.session.get(User, user_id)


def _profile_values(identity):
    return {field: getattr(identity, field) for field in PROFILE_FIELDS}


def upsert(identity):
    """Create the user for ``identity`` or refresh its profile fields.

    The insert is attempted first; a unique-constraint violation on
    ``subject`` means the row already exists (possibly created by a
    concurrent request) and falls through to an update. ``namespace_prefix``
    and the storage counters are only written on insert.
    """
    profile = _profile_values(identity)
    user = User(
        subject=identity.subject,
        namespace_prefix=derive_prefix(identity.subject),
        storage_quota=current_app.config['DEFAULT_STORAGE_QUOTA'],
        storage_used=0,
        **profile,
    )
    try:
        db.session.add(user)
        db.session.commit()
        logger.info(f"Registered user {user.id} with prefix {user.namespace_prefix}")
        return user
    except IntegrityError:
        db.session.rollback()

    db.session.execute(
        update(User)
        .where(User.subject == identity.subject)
        .values(**profile)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    user = resolve(identity.subject)
    if user is None:
        # The conflict was not on subject after all
        raise ValidationError('Could not register user')
    return user


def ensure_user(identity):
    """Registration on first use: return the existing user, upserting only if new or changed."""
    user = resolve(identity.subject)
    if user is None:
        return upsert(identity)
    if any(getattr(user, field) != value for field, value in _profile_values(identity).items()):
        return upsert(identity)
    return user


def get_quota(user):
    db.session.refresh(user)
    return QuotaInfo(
        used=user.storage_used,
        quota=user.storage_quota,
        available=max(user.storage_quota - user.storage_used, 0),
        prefix=user.namespace_prefix,
    )


def reserve(user, nbytes):
    """Atomically add ``nbytes`` to ``storage_used`` if it stays within quota.

    Raises:
        QuotaExceeded: the increment would exceed the quota; nothing was changed
    """
    if nbytes <= 0:
        return
    result = db.session.execute(
        update(User)
        .where(User.id == user.id)
        .where(User.storage_used + nbytes <= User.storage_quota)
        .values(storage_used=User.storage_used + nbytes)
        .execution_options(synchronize_session=False)
    )
    updated = result.rowcount
    db.session.commit()
    if updated == 0:
        raise QuotaExceeded()


def adjust_used(user, delta):
    """Atomically apply ``delta`` bytes to ``storage_used``, never going below zero."""
    if delta == 0:
        return
    new_value = User.storage_used + delta
    db.session.execute(
        update(User)
        .where(User.id == user.id)
        .values(storage_used=case((new_value < 0, 0), else_=new_value))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def set_quota(subject, quota):
    """Change a user's quota. The new quota may not be below current usage."""
    if quota < 0:
        raise ValidationError('Quota must be non-negative')
    result = db.session.execute(
        update(User)
        .where(User.subject == subject)
        .where(User.storage_used <= quota)
        .values(storage_quota=quota)
        .execution_options(synchronize_session=False)
    )
    updated = result.rowcount
    db.session.commit()
    if updated == 0:
        user = resolve(subject)
        if user is None:
            raise NotFound('User not found')
        if user.storage_quota == quota:
            return
        raise ValidationError('Quota is below current storage usage')
