"""
Secure logging utilities: PII redaction and the structured action log.

Usage:
    from utils.secure_logging import log_action, redact_pii

    logger.info(redact_pii(f"Report from {email}"))
    # "Report from [EMAIL_REDACTED]"

    log_action('report_created', report_id=report['id'], user_id=user['user_id'])
    # action=report_created {"report_id": "...", "user_id": "[REDACTED]"}
"""

import hashlib
import json
import logging
import re
from typing import Optional

action_logger = logging.getLogger('disaster_response.actions')

SENSITIVE_KEYS = [
    'email', 'password', 'token', 'api_key', 'secret',
    'phone', 'address', 'latitude', 'longitude', 'user_id', 'ip_address'
]

_PII_PATTERNS = [
    (re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'), '[EMAIL_REDACTED]'),
    # 4+ decimals is building-level precision; city-level stays readable
    (re.compile(r'-?\d{1,3}\.\d{4,}'), '[COORD_REDACTED]'),
    (re.compile(r'\b(?:\d{1,3}\.){3}\d{1,3}\b'), '[IP_REDACTED]'),
    (re.compile(r'\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b'), '[PHONE_REDACTED]'),
]


def redact_pii(text: str) -> str:
    """
    Redact emails, precise coordinates, IPv4 addresses and US phone numbers.

    Examples:
        >>> redact_pii("User john@example.com at 40.712776, -74.005974")
        'User [EMAIL_REDACTED] at [COORD_REDACTED], [COORD_REDACTED]'
    """
    if not text:
        return text

    for pattern, replacement in _PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def hash_user_id(user_id: str, length: int = 16) -> str:
    """One-way, stable hash of a user id so logs can be correlated."""
    if not user_id:
        return '[NO_USER_ID]'

    return hashlib.sha256(user_id.encode()).hexdigest()[:length]


def redact_coordinates(lat: Optional[float], lon: Optional[float], precision: int = 2) -> tuple:
    """
    Round coordinates for logging (2 decimals is about 1 km).

    Examples:
        >>> redact_coordinates(40.712776, -74.005974)
        ('40.71', '-74.01')
    """
    if lat is None or lon is None:
        return ('[REDACTED]', '[REDACTED]')

    return (f"{float(lat):.{precision}f}", f"{float(lon):.{precision}f}")


def safe_log_dict(data: dict, redact_keys: Optional[list] = None) -> dict:
    """
    Copy of a dict with sensitive keys redacted (recursing into dicts and lists).

    Examples:
        >>> safe_log_dict({'email': 'john@example.com', 'count': 5})
        {'email': '[REDACTED]', 'count': 5}
    """
    redact_keys = SENSITIVE_KEYS if redact_keys is None else redact_keys

    safe_data = {}
    for key, value in data.items():
        if any(sensitive_key in key.lower() for sensitive_key in redact_keys):
            safe_data[key] = '[REDACTED]'
        elif isinstance(value, dict):
            safe_data[key] = safe_log_dict(value, redact_keys)
        elif isinstance(value, list):
            safe_data[key] = [
                safe_log_dict(item, redact_keys) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            safe_data[key] = value

    return safe_data


def log_action(action: str, **details) -> dict:
    """
    Write one structured audit line for a domain action.

    Details are passed through safe_log_dict before logging.

    Returns:
        The redacted details that were logged
    """
    safe_details = safe_log_dict(details)
    action_logger.info(f"action={action} {json.dumps(safe_details, default=str, sort_keys=True)}")
    return safe_details
