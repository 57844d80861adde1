"""
Firebase Authentication Service
Resolves the requesting user from a Firebase ID token, with a demo user
for local development and tests.
"""
from firebase_admin import auth
from typing import Dict, Optional
import logging
from utils.secure_logging import hash_user_id, redact_pii

logger = logging.getLogger(__name__)

# Fixed identity used when demo mode is on and no token is sent
DEMO_USER = {
    'user_id': '550e8400-e29b-41d4-a716-446655440000',
    'username': 'testuser',
    'name': 'Test User',
    'email': 'test@disaster.response',
    'role': 'admin',
    'is_admin': True
}


class AuthService:
    """Firebase Authentication integration for request identity"""

    def __init__(self, demo_mode: bool = False, verifier=None):
        """
        Initialize auth service

        Args:
            demo_mode: Attach DEMO_USER to requests that carry no token
            verifier: Token verifier (defaults to firebase_admin.auth.verify_id_token)
        """
        self.demo_mode = demo_mode
        self.verifier = verifier or auth.verify_id_token

    def verify_id_token(self, id_token: str) -> Dict:
        """
        Verify Firebase ID token and return user data

        Args:
            id_token: Firebase ID token from frontend

        Returns:
            Dict with user_id, email, name, role, is_admin

        Raises:
            ValueError: If token is invalid
        """
        try:
            decoded_token = self.verifier(id_token)
        except auth.ExpiredIdTokenError:
            raise ValueError('Token has expired')
        except auth.InvalidIdTokenError:
            raise ValueError('Invalid ID token')
        except Exception as e:
            logger.error(redact_pii(f"Error verifying token: {e}"))
            raise ValueError(f'Token verification failed: {str(e)}')

        is_admin = bool(decoded_token.get('admin', False))
        user = {
            'user_id': decoded_token['uid'],
            'email': decoded_token.get('email'),
            'name': decoded_token.get('name', 'User'),
            'role': 'admin' if is_admin else 'user',
            'is_admin': is_admin
        }
        logger.debug(f"Authenticated user {hash_user_id(user['user_id'])}")
        return user

    def resolve_user(self, authorization_header: Optional[str]) -> Optional[Dict]:
        """
        Resolve the requesting user from an Authorization header

        Args:
            authorization_header: Raw header value ("Bearer <token>") or None

        Returns:
            User dict, or None when unauthenticated and demo mode is off

        Raises:
            ValueError: If a token is present but invalid
        """
        if authorization_header and authorization_header.startswith('Bearer '):
            return self.verify_id_token(authorization_header.split('Bearer ', 1)[1])

        if self.demo_mode:
            return dict(DEMO_USER)

        return None

    @staticmethod
    def can_modify(user: Dict, record: Dict, owner_field: str = 'owner_id') -> bool:
        """Owners and admins may modify a record."""
        if not user:
            return False
        return user.get('is_admin', False) or record.get(owner_field) == user.get('user_id')
