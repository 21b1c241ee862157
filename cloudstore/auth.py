from flask import Blueprint, request, jsonify, g, current_app
from collections import namedtuple

from . import ledger
from .credentials import ALL_PERMISSIONS, validate_key
from .errors import Forbidden, Unauthenticated
from .identity import Identity, verify_webhook_signature

API_KEY_HEADER = 'X-API-Key'
WEBHOOK_SIGNATURE_HEADER = 'X-Webhook-Signature'

AUTH_API_KEY = 'api_key'
AUTH_SESSION = 'session'

Principal = namedtuple('Principal', ['user', 'permissions', 'auth_type'])

auth_bp = Blueprint('auth', __name__)


def identity_provider():
    return current_app.extensions['cloudstore.identity']


def api_key_from_request():
    """Read an API key from ``X-API-Key`` or an ``Authorization: Bearer sk_...`` header."""
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key:
        return api_key.strip()
    authorization = request.headers.get('Authorization', '')
    scheme, _, token = authorization.partition(' ')
    if scheme.lower() == 'bearer' and token.strip().startswith('sk_'):
        return token.strip()
    return None


def resolve_principal():
    """Work out who is calling and what they may do.

    An API key, when present and valid, wins and carries its own permission
    set. Otherwise the session identity is used with full permissions, and the
    user is registered on first sight.

    Raises:
        Unauthenticated: neither credential resolves to a user
    """
    plaintext = api_key_from_request()
    if plaintext:
        grant = validate_key(plaintext)
        if grant is not None:
            user = ledger.get_user(grant.user_id)
            if user is not None:
                return Principal(user, grant.permissions, AUTH_API_KEY)
        current_app.logger.info("Invalid API key presented, falling back to session identity")

    identity = identity_provider().current_identity()
    if identity is not None:
        user = ledger.ensure_user(identity)
        return Principal(user, ALL_PERMISSIONS, AUTH_SESSION)

    raise Unauthenticated('You must be logged in to access this resource')


def login_required(f):
    def decorated_function(*args, **kwargs):
        principal = resolve_principal()
        g.principal = principal
        g.user = principal.user
        return f(*args, **kwargs)
    decorated_function.__name__ = f.__name__
    decorated_function.__doc__ = f.__doc__
    return decorated_function


def permission_required(permission):
    """Like :func:`login_required`, and the caller must also hold ``permission``."""
    def decorator(f):
        def decorated_function(*args, **kwargs):
            principal = resolve_principal()
            if permission not in principal.permissions:
                raise Forbidden(f'{permission.capitalize()} permission required')
            g.principal = principal
            g.user = principal.user
            return f(*args, **kwargs)
        decorated_function.__name__ = f.__name__
        decorated_function.__doc__ = f.__doc__
        return decorated_function
    return decorator


def session_required(f):
    """Only an interactive session may call this route; API keys are refused."""
    def decorated_function(*args, **kwargs):
        identity = identity_provider().current_identity()
        if identity is None:
            raise Unauthenticated('You must be logged in to access this resource')
        g.user = ledger.ensure_user(identity)
        g.principal = Principal(g.user, ALL_PERMISSIONS, AUTH_SESSION)
        return f(*args, **kwargs)
    decorated_function.__name__ = f.__name__
    decorated_function.__doc__ = f.__doc__
    return decorated_function


@auth_bp.route('/webhooks/identity', methods=['POST'])
def identity_webhook():
    """Receive user lifecycle events from the identity provider.

    Headers:
        X-Webhook-Signature: hex HMAC-SHA256 of the raw body with WEBHOOK_SECRET

    Expected JSON body:
    {
        "type": "user.created" | "user.updated" | ...,
        "data": {
            "id": str,
            "email_addresses": [{"email_address": str}],
            "first_name": str,
            "last_name": str,
            "image_url": str
        }
    }

    Error Responses:
        400: Missing or invalid signature, or malformed payload
        500: Webhook secret not configured
    """
    secret = current_app.config.get('WEBHOOK_SECRET')
    if not secret:
        current_app.logger.error("Identity webhook called but WEBHOOK_SECRET is not configured")
        return jsonify({'error': 'Webhook secret not configured'}), 500

    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
    if not signature:
        return jsonify({'error': 'Missing webhook signature'}), 400

    payload = request.get_data()
    if not verify_webhook_signature(secret, payload, signature):
        current_app.logger.warning("Rejected identity webhook with invalid signature")
        return jsonify({'error': 'Invalid webhook signature'}), 400

    event = request.get_json(silent=True)
    if not event or 'type' not in event:
        return jsonify({'error': 'Malformed webhook payload'}), 400

    event_type = event['type']
    if event_type in ('user.created', 'user.updated'):
        identity = Identity.from_event(event.get('data') or {})
        if identity is None:
            return jsonify({'error': 'Webhook user has no id or email address'}), 400
        user = ledger.upsert(identity)
        current_app.logger.info(f"Processed {event_type} for user {user.id}")
    else:
        current_app.logger.info(f"Ignoring identity webhook event {event_type}")

    return jsonify({'message': 'OK'}), 200
