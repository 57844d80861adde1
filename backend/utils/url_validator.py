"""
URL validation for image URLs submitted with reports or for verification.

The image verification path downloads user-provided URLs, so URLs pointing
at local or private networks are rejected (SSRF prevention). The downloader
also calls resolves_to_internal_address() right before fetching, which
catches public-looking hostnames whose DNS answers are internal.

Usage:
    from utils.url_validator import validate_image_url

    is_valid, error = validate_image_url(user_provided_url)
    if not is_valid:
        return jsonify({'error': error}), 400
"""

import ipaddress
import socket
from urllib.parse import urlparse
from typing import Optional, Tuple

ALLOWED_IMAGE_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp']
ALLOWED_IMAGE_MIME_TYPES = ['image/jpeg', 'image/png', 'image/gif', 'image/webp', 'image/bmp']
LOCAL_HOSTNAMES = ['localhost', 'localhost.localdomain']
MAX_URL_LENGTH = 2048


def _is_internal_address(address) -> bool:
    return (address.is_private or address.is_loopback or address.is_link_local
            or address.is_unspecified or address.is_reserved or address.is_multicast)


def _is_internal_host(hostname: str) -> bool:
    if hostname.lower() in LOCAL_HOSTNAMES:
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return _is_internal_address(address)


def resolves_to_internal_address(hostname: str) -> bool:
    """
    Resolve a hostname and report whether any address is non-public.

    Checked right before the server fetches a URL, so a public-looking name
    that resolves to a private range is refused. Names that fail to resolve
    count as internal.
    """
    if _is_internal_host(hostname):
        return True
    try:
        infos = socket.getaddrinfo(hostname, 443, proto=socket.IPPROTO_TCP)
    except (OSError, UnicodeError):
        return True

    for info in infos:
        # IPv6 sockaddr may carry a scope suffix
        ip = info[4][0].split('%', 1)[0]
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return True
        if _is_internal_address(address):
            return True
    return not infos


def validate_image_url(url) -> Tuple[bool, Optional[str]]:
    """
    Validate an image URL before the server fetches it.

    Checks:
    1. HTTPS only
    2. Hostname is not localhost, loopback, link-local or a private range
    3. Path ends with an image extension
    4. Length under 2048 characters

    Returns:
        (True, None) if valid, (False, error_message) otherwise

    Examples:
        >>> validate_image_url('https://example.com/flood.jpg')
        (True, None)
        >>> validate_image_url('https://192.168.1.10/flood.jpg')
        (False, 'Private network URLs not allowed')
    """
    # Optional field
    if url is None or url == '':
        return (True, None)

    if not isinstance(url, str):
        return (False, 'Image URL must be a string')

    if len(url) > MAX_URL_LENGTH:
        return (False, 'URL too long (max 2048 characters)')

    try:
        parsed = urlparse(url)
    except ValueError:
        return (False, 'Invalid URL format')

    if parsed.scheme != 'https':
        return (False, 'Only HTTPS URLs are allowed')

    hostname = parsed.hostname
    if not hostname:
        return (False, 'Invalid hostname')

    if hostname.lower() in LOCAL_HOSTNAMES:
        return (False, 'Local URLs not allowed')
    if _is_internal_host(hostname):
        return (False, 'Private network URLs not allowed')

    path_lower = parsed.path.lower()
    if not any(path_lower.endswith(ext) for ext in ALLOWED_IMAGE_EXTENSIONS):
        return (False, f'Only image files allowed: {", ".join(ALLOWED_IMAGE_EXTENSIONS)}')

    return (True, None)


def validate_image_upload(mime_type: Optional[str], size_bytes: int,
                          max_bytes: int = 10 * 1024 * 1024) -> Tuple[bool, Optional[str]]:
    """
    Validate an uploaded image file.

    Examples:
        >>> validate_image_upload('image/png', 1024)
        (True, None)
        >>> validate_image_upload('application/pdf', 1024)
        (False, 'Only image uploads are allowed')
    """
    if (mime_type or '').lower() not in ALLOWED_IMAGE_MIME_TYPES:
        return (False, 'Only image uploads are allowed')
    if size_bytes <= 0:
        return (False, 'Uploaded file is empty')
    if size_bytes > max_bytes:
        return (False, 'Image exceeds 10 MB limit')
    return (True, None)
