"""Per-user object key namespacing.

Every key handed to the object store is built here, so a user's operations can
only ever address keys under that user's own prefix.
"""
import hashlib

SEPARATOR = '/'
PREFIX_TAG = 'user-'


def derive_prefix(subject: str) -> str:
    """Deterministic namespace prefix for an identity provider subject ID."""
    digest = hashlib.sha256(subject.encode('utf-8')).hexdigest()
    return f'{PREFIX_TAG}{digest[:32]}'


def prefix_for(user) -> str:
    return user.namespace_prefix


def _clean(relative_path: str) -> str:
    parts = [part for part in relative_path.split(SEPARATOR) if part]
    if any(part in ('.', '..') for part in parts):
        raise ValueError(f'Invalid path segment in {relative_path!r}')
    return SEPARATOR.join(parts)


def namespaced_key(user, relative_path: str) -> str:
    """Join the user's prefix and ``relative_path`` with exactly one separator.

    Leading, trailing and repeated separators in ``relative_path`` are
    collapsed. A trailing separator is kept when the path names a directory
    so listing prefixes stay distinguishable from object keys.
    """
    cleaned = _clean(relative_path)
    key = SEPARATOR.join(part for part in (prefix_for(user), cleaned) if part)
    if relative_path.endswith(SEPARATOR) or not cleaned:
        key += SEPARATOR
    return key


def strip_prefix(user, full_key: str) -> str:
    """Inverse of :func:`namespaced_key` for display; unknown keys come back unchanged."""
    prefix = prefix_for(user) + SEPARATOR
    if full_key.startswith(prefix):
        return full_key[len(prefix):]
    return full_key


def owns_key(user, full_key: str) -> bool:
    return full_key.startswith(prefix_for(user) + SEPARATOR)
