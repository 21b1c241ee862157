"""File and folder metadata, kept in step with the object store.

Ordering rules for operations that touch both stores:

* upload: quota reservation, object put, metadata insert. A failed put
  releases the reservation; a failed insert deletes the object and releases
  the reservation.
* remove: object delete, metadata delete, usage decrement.
* rename/move of a file: object copy, metadata update, delete of the old
  object. A failed copy leaves metadata untouched; a failed update deletes the
  copy. If the old object cannot be deleted it is logged and left behind.

Two uploads racing for the same new path can both reach the object store
before either metadata insert lands; the loser's compensating delete then
removes the winner's object. The unique (user_id, path) constraint keeps the
metadata consistent, and the window is the duration of one put.
"""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import db, ledger
from .errors import (CloudStoreError, Conflict, NonEmptyFolder, NotFound,
                     UnsupportedOperation, UpstreamUnavailable, ValidationError)
from .models import File, utcnow
from .namespacing import SEPARATOR, namespaced_key, owns_key, strip_prefix

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'
MAX_NAME_LENGTH = 255

ORDER_COLUMNS = {
    'uploaded_at': File.uploaded_at,
    'name': File.name,
    'size': File.size,
}


def validate_name(name):
    """Return ``name`` stripped, or raise ValidationError if it cannot be a path segment."""
    if not isinstance(name, str):
        raise ValidationError('Name is required')
    name = name.strip()
    if not name:
        raise ValidationError('Name is required')
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f'Name must be at most {MAX_NAME_LENGTH} characters')
    if SEPARATOR in name or '\\' in name or name in ('.', '..'):
        raise ValidationError('Name may not contain path separators')
    if any(ord(ch) < 32 for ch in name):
        raise ValidationError('Name may not contain control characters')
    return name


def get_entry(user, file_id):
    """Fetch one of ``user``'s entries. Other users' entries are reported as NotFound."""
    entry = File.query.filter_by(id=file_id, user_id=user.id).first()
    if entry is None:
        raise NotFound('File not found')
    return entry


def _get_folder(user, folder_id):
    if folder_id is None:
        return None
    entry = File.query.filter_by(id=folder_id, user_id=user.id).first()
    if entry is None or not entry.is_folder:
        raise NotFound('Folder not found')
    return entry


def _child_path(parent, name):
    return f'{parent.path}{SEPARATOR}{name}' if parent else name


def _ensure_free(user, path):
    if File.query.filter_by(user_id=user.id, path=path).first() is not None:
        raise Conflict(f"An entry named '{path}' already exists")


def _has_children(folder):
    return File.query.filter_by(parent_id=folder.id).first() is not None


def _commit(conflict_message):
    """Commit the session, translating database failures into error kinds."""
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        logger.warning(f"Integrity error on commit: {e}")
        raise Conflict(conflict_message) from e
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"Database error on commit: {e}")
        raise UpstreamUnavailable() from e


def _discard_object(store, key):
    try:
        store.delete(key)
    except CloudStoreError as e:
        logger.error(f"Could not delete object {key}, it is now unreferenced: {e.message}")


def list_entries(user, folder_id=None, recursive=False, order='uploaded_at', direction='desc'):
    """List ``user``'s entries, newest upload first unless another order is requested.

    Args:
        folder_id: folder to list; None lists the root
        recursive: list every file the user owns, ignoring ``folder_id``
        order: one of ``uploaded_at``, ``name``, ``size``
        direction: ``asc`` or ``desc``
    """
    if order not in ORDER_COLUMNS:
        raise ValidationError(f"Invalid order '{order}'")
    if direction not in ('asc', 'desc'):
        raise ValidationError(f"Invalid direction '{direction}'")

    query = File.query.filter_by(user_id=user.id)
    if recursive:
        query = query.filter_by(is_folder=False)
    else:
        folder = _get_folder(user, folder_id)
        query = query.filter_by(parent_id=folder.id if folder else None)

    column = ORDER_COLUMNS[order]
    ordering = column.asc() if direction == 'asc' else column.desc()
    return query.order_by(ordering, File.id).all()


def create_folder(user, name, parent_id=None):
    name = validate_name(name)
    parent = _get_folder(user, parent_id)
    path = _child_path(parent, name)
    _ensure_free(user, path)

    folder = File(
        user_id=user.id,
        parent_id=parent.id if parent else None,
        name=name,
        path=path,
        is_folder=True,
        size=0,
    )
    db.session.add(folder)
    _commit(f"An entry named '{path}' already exists")
    logger.info(f"Created folder {folder.id} ({path}) for user {user.id}")
    return folder


def record(user, key, name, size, content_type, parent=None):
    """Insert the metadata row for an object that has already been written.

    Raises:
        ValueError: ``key`` is outside the user's namespace
        Conflict: an entry already exists at the same path
        UpstreamUnavailable: the database rejected the write
    """
    if not owns_key(user, key):
        raise ValueError(f'Object key {key!r} is outside the namespace of user {user.id}')
    path = _child_path(parent, name)
    now = utcnow()
    entry = File(
        user_id=user.id,
        parent_id=parent.id if parent else None,
        name=name,
        path=path,
        is_folder=False,
        object_key=key,
        size=size,
        content_type=content_type,
        uploaded_at=now,
        last_accessed=now,
    )
    db.session.add(entry)
    _commit(f"An entry named '{path}' already exists")
    return entry


def upload(user, store, name, data, content_type=None, folder_id=None):
    """Store ``data`` as a new file and account for it against the user's quota.

    Raises:
        QuotaExceeded: checked before anything is written to the object store
        Conflict: an entry with this name already exists in the folder
    """
    name = validate_name(name)
    parent = _get_folder(user, folder_id)
    path = _child_path(parent, name)
    _ensure_free(user, path)

    size = len(data)
    content_type = content_type or DEFAULT_CONTENT_TYPE
    key = namespaced_key(user, path)

    ledger.reserve(user, size)
    try:
        store.put(key, data, content_type)
    except CloudStoreError:
        ledger.adjust_used(user, -size)
        raise

    try:
        entry = record(user, key, name, size, content_type, parent)
    except CloudStoreError:
        _discard_object(store, key)
        ledger.adjust_used(user, -size)
        raise

    logger.info(f"Uploaded {path} ({size} bytes) for user {user.id}")
    return entry


def _touch(entry):
    entry.last_accessed = utcnow()
    db.session.commit()


def read_file(user, store, file_id):
    """Return ``(entry, data)`` for one of the user's files."""
    entry = get_entry(user, file_id)
    if entry.is_folder:
        raise UnsupportedOperation('Folders cannot be downloaded')
    data = store.get(entry.object_key)
    _touch(entry)
    return entry, data


def download_url(user, store, file_id, expires_in):
    entry = get_entry(user, file_id)
    if entry.is_folder:
        raise UnsupportedOperation('Folders cannot be downloaded')
    url = store.presigned_url(entry.object_key, expires_in)
    _touch(entry)
    return entry, url


def _relocate_file(user, store, entry, parent, name):
    path = _child_path(parent, name)
    if path == entry.path:
        return entry
    _ensure_free(user, path)

    old_key = entry.object_key
    new_key = namespaced_key(user, path)
    store.copy(old_key, new_key)

    entry.name = name
    entry.path = path
    entry.parent_id = parent.id if parent else None
    entry.object_key = new_key
    try:
        _commit(f"An entry named '{path}' already exists")
    except CloudStoreError:
        _discard_object(store, new_key)
        raise

    _discard_object(store, old_key)
    return entry


def rename(user, store, file_id, new_name):
    """Rename a file or an empty folder.

    Files are copied to the new key before metadata changes. Renaming a
    non-empty folder would move every descendant and is not supported.
    """
    new_name = validate_name(new_name)
    entry = get_entry(user, file_id)
    parent = _get_folder(user, entry.parent_id)

    if not entry.is_folder:
        return _relocate_file(user, store, entry, parent, new_name)

    if _has_children(entry):
        raise UnsupportedOperation('Renaming a non-empty folder is not supported')
    path = _child_path(parent, new_name)
    if path != entry.path:
        _ensure_free(user, path)
        entry.name = new_name
        entry.path = path
        _commit(f"An entry named '{path}' already exists")
    return entry


def move(user, store, file_id, target_folder_id):
    """Move a file into ``target_folder_id`` (None for the root)."""
    entry = get_entry(user, file_id)
    if entry.is_folder:
        raise UnsupportedOperation('Moving folders is not supported')
    target = _get_folder(user, target_folder_id)
    return _relocate_file(user, store, entry, target, entry.name)


def remove(user, store, file_id):
    """Delete a file (object first, then metadata) or an empty folder.

    Raises:
        NotFound: no such entry for this user
        NonEmptyFolder: the folder has children; nothing is deleted
    """
    entry = get_entry(user, file_id)

    if entry.is_folder:
        if _has_children(entry):
            raise NonEmptyFolder()
        db.session.delete(entry)
        try:
            db.session.commit()
        except IntegrityError as e:
            # A child was added after the check; the foreign key refused the delete
            db.session.rollback()
            raise NonEmptyFolder() from e
        logger.info(f"Deleted folder {file_id} for user {user.id}")
        return

    size = entry.size
    store.delete(entry.object_key)
    db.session.delete(entry)
    db.session.commit()
    ledger.adjust_used(user, -size)
    logger.info(f"Deleted file {file_id} ({size} bytes) for user {user.id}")


def browse(user, store, prefix=''):
    """List the raw object store contents under ``prefix`` in the user's namespace.

    Returns:
        dict: ``{"folders": [str], "items": [{"key", "size", "last_modified"}]}``
        with the namespace prefix removed from every key
    """
    if prefix and not prefix.endswith(SEPARATOR):
        prefix += SEPARATOR
    try:
        key_prefix = namespaced_key(user, prefix)
    except ValueError as e:
        raise ValidationError('Invalid prefix') from e

    listing = store.list(key_prefix, SEPARATOR)
    return {
        'folders': [strip_prefix(user, p) for p in listing.common_prefixes if owns_key(user, p)],
        'items': [
            {
                'key': strip_prefix(user, item.key),
                'size': item.size,
                'last_modified': item.last_modified,
            }
            for item in listing.items
            if owns_key(user, item.key)
        ],
    }
