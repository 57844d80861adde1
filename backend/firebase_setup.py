"""
Firebase setup for the Disaster Response backend.

Credentials come from either:
1. FIREBASE_CREDENTIALS_BASE64 - base64-encoded service account JSON (Railway, Heroku, ...)
2. FIREBASE_CREDENTIALS_PATH - path to the service account JSON file (local, VPS)
"""

import base64
import json
import logging
import os

import firebase_admin
from firebase_admin import credentials, db

logger = logging.getLogger(__name__)


def get_firebase_credentials():
    """
    Get Firebase credentials from environment.

    Returns:
        firebase_admin.credentials.Certificate

    Raises:
        ValueError: If no valid credentials are found
    """
    base64_creds = os.getenv('FIREBASE_CREDENTIALS_BASE64')
    if base64_creds:
        try:
            cred_dict = json.loads(base64.b64decode(base64_creds).decode('utf-8'))
            return credentials.Certificate(cred_dict)
        except Exception as e:
            raise ValueError(f"Failed to decode FIREBASE_CREDENTIALS_BASE64: {e}")

    cred_path = os.getenv('FIREBASE_CREDENTIALS_PATH')
    if cred_path and os.path.exists(cred_path):
        return credentials.Certificate(cred_path)

    raise ValueError(
        "No Firebase credentials found. Set either:\n"
        "  - FIREBASE_CREDENTIALS_BASE64 (base64-encoded service account JSON)\n"
        "  - FIREBASE_CREDENTIALS_PATH (path to service account JSON file)"
    )


def init_firebase(database_url: str):
    """
    Initialize the default Firebase app once and return the database module.

    The returned object exposes reference(path), which is all the cache and
    record stores need.

    Raises:
        ValueError: If credentials or the database URL are missing
    """
    if not database_url:
        raise ValueError("FIREBASE_DATABASE_URL must be set")

    try:
        firebase_admin.get_app()
    except ValueError:
        firebase_admin.initialize_app(get_firebase_credentials(), {
            'databaseURL': database_url
        })
        logger.info("Firebase initialized")

    return db
