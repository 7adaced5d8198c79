"""
Input Validators and Sanitizers

This module provides validation and sanitization functions for user inputs.

Security Considerations:
- Input validation prevents injection attacks
- Only http/https destinations are accepted
- Length limits prevent DoS attacks
"""

import re
from typing import Optional
from urllib.parse import urlparse

MAX_URL_LENGTH = 2048


def sanitize_short_code(short_code: str) -> Optional[str]:
    """
    Sanitize and validate short code format.

    Short codes should only contain base62 characters: [0-9a-zA-Z]
    (custom codes may also use '-' and '_').

    Args:
        short_code: The short code to sanitize

    Returns:
        Sanitized short code if valid, None otherwise
    """
    if not short_code or not isinstance(short_code, str):
        return None

    short_code = short_code.strip()

    if len(short_code) > 20:
        return None

    if not re.match(r'^[0-9a-zA-Z_-]+$', short_code):
        return None

    return short_code


def validate_url_length(url: str, max_length: int = MAX_URL_LENGTH) -> bool:
    """Validate URL length (default limit: 2048 per RFC 7230)."""
    return bool(url) and len(url) <= max_length


def is_valid_url(url: str) -> bool:
    """
    Validate URL format and security.

    Checks that URL uses http/https, has valid domain, and doesn't contain
    malicious patterns. Prevents javascript:, file:, and other dangerous schemes.

    Args:
        url: The URL string to validate

    Returns:
        True if valid and safe, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    if not validate_url_length(url):
        return False

    try:
        result = urlparse(url)

        if not result.scheme or not result.netloc:
            return False

        if result.scheme.lower() not in {'http', 'https'}:
            return False

        domain = result.hostname or ''
        if domain != 'localhost' and '.' not in domain:
            return False

        malicious_patterns = ['javascript:', 'data:', 'file:', 'vbscript:']
        url_lower = url.lower()
        if any(pattern in url_lower for pattern in malicious_patterns):
            return False

        return True
    except ValueError:
        return False


def extract_hostname(url: str) -> str:
    """Return the lowercased hostname of `url`, or '' when it cannot be parsed."""
    try:
        return (urlparse(url).hostname or '').lower().rstrip('.')
    except ValueError:
        return ''
