from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from flask import session

IDENTITY_SESSION_KEY = 'identity'


@dataclass(frozen=True)
class Identity:
    """The fields of an identity provider user that this service consumes."""
    subject: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None

    @classmethod
    def from_claims(cls, claims):
        """Build from a flat claims mapping (``sub``, ``email``, ...). Returns None if incomplete."""
        if not claims or not claims.get('sub') or not claims.get('email'):
            return None
        return cls(
            subject=claims['sub'],
            email=claims['email'],
            first_name=claims.get('first_name'),
            last_name=claims.get('last_name'),
            image_url=claims.get('image_url'),
        )

    @classmethod
    def from_event(cls, data):
        """Build from a user webhook payload.

        Expected shape::

            {
                "id": str,
                "email_addresses": [{"email_address": str}, ...],
                "first_name": str | null,
                "last_name": str | null,
                "image_url": str | null
            }
        """
        addresses = data.get('email_addresses') or []
        email = addresses[0].get('email_address') if addresses else None
        if not data.get('id') or not email:
            return None
        return cls(
            subject=data['id'],
            email=email,
            first_name=data.get('first_name'),
            last_name=data.get('last_name'),
            image_url=data.get('image_url'),
        )

    def to_claims(self):
        return {
            'sub': self.subject,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'image_url': self.image_url,
        }


class SessionIdentityProvider:
    """Reads the caller's identity from the signed Flask session.

    The sign-in integration stores the provider's claims under
    ``session['identity']``; this class only reads them.
    """

    def current_identity(self):
        return Identity.from_claims(session.get(IDENTITY_SESSION_KEY))

    def sign_in(self, identity):
        session[IDENTITY_SESSION_KEY] = identity.to_claims()

    def sign_out(self):
        session.pop(IDENTITY_SESSION_KEY, None)


def sign_webhook_payload(secret: str, payload: bytes) -> str:
    h = hmac.HMAC(secret.encode('utf-8'), hashes.SHA256())
    h.update(payload)
    return h.finalize().hex()


def verify_webhook_signature(secret: str, payload: bytes, signature_hex: str) -> bool:
    """Constant-time check of an HMAC-SHA256 webhook signature."""
    try:
        signature = bytes.fromhex(signature_hex)
    except ValueError:
        return False
    h = hmac.HMAC(secret.encode('utf-8'), hashes.SHA256())
    h.update(payload)
    try:
        h.verify(signature)
        return True
    except InvalidSignature:
        return False
