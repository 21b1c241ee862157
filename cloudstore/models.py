from . import db
from datetime import datetime, timezone
import sqlite3
import uuid
from sqlalchemy import BigInteger, event
from sqlalchemy.engine import Engine


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE RESTRICT unless foreign keys are switched on per connection
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    subject = db.Column(db.String(255), unique=True, nullable=False)      # Identity provider subject ID
    email = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(255), nullable=True)
    last_name = db.Column(db.String(255), nullable=True)
    image_url = db.Column(db.String(1024), nullable=True)
    namespace_prefix = db.Column(db.String(64), unique=True, nullable=False)
    storage_quota = db.Column(BigInteger, nullable=False)
    storage_used = db.Column(BigInteger, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    files = db.relationship('File', backref='owner', lazy='dynamic', passive_deletes='all')
    api_keys = db.relationship('ApiKey', backref='owner', lazy='dynamic', passive_deletes='all')

    __table_args__ = (
        db.CheckConstraint('storage_used >= 0', name='ck_users_storage_used_nonnegative'),
    )

    def __repr__(self):
        return f'<User {self.subject}>'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'image_url': self.image_url,
            'created_at': self.created_at.isoformat(),
        }


class File(db.Model):
    """A file or folder owned by a user.

    Folders are metadata only and have no ``object_key``. ``path`` is the full
    path relative to the owner's namespace (``docs/a.txt``) and is unique per user.
    """
    __tablename__ = 'files'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    parent_id = db.Column(db.String(36), db.ForeignKey('files.id', ondelete='RESTRICT'), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)
    path = db.Column(db.String(1024), nullable=False)
    is_folder = db.Column(db.Boolean, nullable=False, default=False)
    object_key = db.Column(db.String(1100), nullable=True)
    size = db.Column(BigInteger, nullable=False, default=0)
    content_type = db.Column(db.String(255), nullable=True)
    uploaded_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_accessed = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'path', name='uq_files_user_path'),
    )

    def __repr__(self):
        return f'<File {self.path}>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'path': self.path,
            'is_folder': self.is_folder,
            'parent_id': self.parent_id,
            'size': self.size,
            'content_type': self.content_type,
            'uploaded_at': self.uploaded_at.isoformat(),
            'last_accessed': self.last_accessed.isoformat(),
        }


class ApiKey(db.Model):
    __tablename__ = 'api_keys'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    key_hash = db.Column(db.String(64), unique=True, nullable=False)      # SHA-256 hex digest of the plaintext
    key_suffix = db.Column(db.String(4), nullable=False)                   # Last 4 chars of the plaintext, for display
    permissions = db.Column(db.JSON, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    last_used = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f'<ApiKey {self.name} for user_id {self.user_id}>'

    def to_dict(self):
        """Display form of the key. Never includes the digest."""
        return {
            'id': self.id,
            'name': self.name,
            'key': f'sk_****{self.key_suffix}',
            'permissions': list(self.permissions),
            'is_active': self.is_active,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'last_used': self.last_used.isoformat() if self.last_used else None,
            'created_at': self.created_at.isoformat(),
        }
