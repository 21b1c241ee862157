from flask import jsonify, current_app
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import RequestEntityTooLarge


class CloudStoreError(Exception):
    """Base class for errors that map onto an HTTP response.

    ``message`` is safe to show to the caller; collaborator details belong in
    the server log only.
    """
    status_code = 500
    kind = 'internal'
    default_message = 'Internal server error'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(CloudStoreError):
    status_code = 400
    kind = 'validation'
    default_message = 'Invalid request'


class Unauthenticated(CloudStoreError):
    status_code = 401
    kind = 'unauthenticated'
    default_message = 'Authentication required'


class Forbidden(CloudStoreError):
    status_code = 403
    kind = 'forbidden'
    default_message = 'Insufficient permissions'


class NotFound(CloudStoreError):
    status_code = 404
    kind = 'not_found'
    default_message = 'Not found'


class Conflict(CloudStoreError):
    status_code = 409
    kind = 'conflict'
    default_message = 'An entry with this name already exists'


class NonEmptyFolder(CloudStoreError):
    status_code = 409
    kind = 'non_empty_folder'
    default_message = 'Cannot delete non-empty folder'


class QuotaExceeded(CloudStoreError):
    status_code = 413
    kind = 'quota_exceeded'
    default_message = 'Storage quota exceeded'


class UnsupportedOperation(CloudStoreError):
    status_code = 400
    kind = 'unsupported'
    default_message = 'Operation not supported'


class UpstreamUnavailable(CloudStoreError):
    status_code = 503
    kind = 'upstream_unavailable'
    default_message = 'A backing service is unavailable, please retry later'


def error_response(error):
    return jsonify({'error': error.message, 'kind': error.kind}), error.status_code


def register_error_handlers(app):
    @app.errorhandler(CloudStoreError)
    def handle_cloudstore_error(error):
        if error.status_code >= 500:
            current_app.logger.error(f"{error.kind}: {error.message}")
        return error_response(error)

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error):
        from . import db
        db.session.rollback()
        current_app.logger.error(f"Database error: {error}")
        return error_response(UpstreamUnavailable())

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(error):
        return jsonify({'error': 'File too large', 'kind': 'too_large'}), 413
