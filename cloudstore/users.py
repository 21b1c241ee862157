from flask import Blueprint, jsonify, g

from . import ledger
from .auth import login_required

users_bp = Blueprint('users', __name__)


@users_bp.route('/me', methods=['GET'])
@login_required
def get_current_user():
    """Get the profile of the authenticated user.

    Returns:
        JSON response with user information:
        {
            "id": str,
            "email": str,
            "first_name": str,
            "last_name": str,
            "image_url": str,
            "created_at": str,
            "auth_type": "session" | "api_key",
            "permissions": [str]
        }
    """
    response = g.user.to_dict()
    response['auth_type'] = g.principal.auth_type
    response['permissions'] = sorted(g.principal.permissions)
    return jsonify(response), 200


@users_bp.route('/me/storage', methods=['GET'])
@login_required
def get_storage_info():
    """Get the authenticated user's storage usage.

    Returns:
        {
            "used": int (bytes),
            "quota": int (bytes),
            "available": int (bytes, never negative),
            "prefix": str
        }
    """
    info = ledger.get_quota(g.user)
    return jsonify(info._asdict()), 200
