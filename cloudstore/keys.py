from flask import Blueprint, request, jsonify, current_app, g
from datetime import datetime, timezone

from . import credentials, limiter
from .auth import session_required
from .errors import ValidationError

keys_bp = Blueprint('keys', __name__)


def _parse_expiry(value):
    """Parse an ISO 8601 timestamp into the naive UTC form stored in the database."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError('Invalid date format for expires_at (expected ISO 8601)')
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError('Invalid date format for expires_at (expected ISO 8601)')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@keys_bp.route('', methods=['GET'])
@session_required
def list_api_keys():
    """List the caller's API keys.

    Only a masked form of each key is returned; neither the plaintext nor the
    digest ever leaves the server.

    Returns:
        {
            "api_keys": [
                {
                    "id": str,
                    "name": str,
                    "key": "sk_****abcd",
                    "permissions": [str],
                    "is_active": bool,
                    "expires_at": str | null,
                    "last_used": str | null,
                    "created_at": str
                }
            ]
        }
    """
    api_keys = credentials.list_keys(g.user.id)
    return jsonify({'api_keys': [api_key.to_dict() for api_key in api_keys]}), 200


@keys_bp.route('', methods=['POST'])
@limiter.limit(lambda: current_app.config['API_KEY_RATE_LIMIT'])
@session_required
def create_api_key():
    """Create an API key.

    Expected JSON payload:
    {
        "name": str,
        "permissions": [str] (subset of read, write, delete; default ["read"]),
        "expires_at": str (ISO 8601, optional, must be in the future)
    }

    Returns:
        {
            "message": str,
            "api_key": { ...masked key... },
            "key": str (plaintext, shown only this once),
            "warning": str
        }
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('No JSON data provided')

    api_key, plaintext = credentials.create_key(
        g.user.id,
        data.get('name'),
        permissions=data.get('permissions'),
        expires_at=_parse_expiry(data.get('expires_at')),
    )
    return jsonify({
        'message': 'API key created successfully',
        'api_key': api_key.to_dict(),
        'key': plaintext,
        'warning': 'This is the only time you will see the full API key. Please save it securely.'
    }), 201


@keys_bp.route('/<key_id>/revoke', methods=['POST'])
@session_required
def revoke_api_key(key_id):
    """Deactivate a key. It stops authenticating immediately.

    Error Responses:
        404: Key not found or owned by another user
    """
    credentials.revoke_key(key_id, g.user.id)
    return jsonify({'message': 'API key revoked successfully'}), 200


@keys_bp.route('/<key_id>', methods=['DELETE'])
@session_required
def delete_api_key(key_id):
    credentials.delete_key(key_id, g.user.id)
    return jsonify({'message': 'API key deleted successfully'}), 200
