"""
Log sanitization to prevent sensitive data leakage.

Automatically redacts sensitive information from logs including:
- Bearer and JWT tokens
- Passwords and secrets
- Database URLs with credentials
- Phone, Aadhaar and bank account numbers of beneficiaries
"""
import re
import logging


class SanitizingFormatter(logging.Formatter):
    """
    Custom log formatter that sanitizes sensitive data.

    Applied to the human-readable console output. The JSON formatter in
    ``apps.core.logging`` reuses the same patterns through ``sanitize_text``.
    """

    # Regex patterns for sensitive data
    PATTERNS = [
        # Bearer tokens
        (re.compile(r'Bearer\s+([a-zA-Z0-9_\-\.]{20,})', re.IGNORECASE), r'Bearer [REDACTED]'),

        # JWT tokens (header.payload.signature format)
        (re.compile(r'eyJ[a-zA-Z0-9_\-]+\.eyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+'), r'[REDACTED_JWT]'),

        # Passwords
        (re.compile(r'password["\s:=]+([^\s,\]}"\']+)', re.IGNORECASE), r'password=[REDACTED]'),

        # Secrets and keys
        (re.compile(r'secret["\s:=]+([a-zA-Z0-9_\-]{20,})', re.IGNORECASE), r'secret=[REDACTED]'),
        (re.compile(r'api[_-]?key["\s:=]+([a-zA-Z0-9_\-]{20,})', re.IGNORECASE), r'api_key=[REDACTED]'),

        # Database URLs with passwords
        (re.compile(r'://([^:/]+):([^@]+)@'), r'://\1:[REDACTED]@'),

        # Bank account numbers (9-18 digits following an account label)
        (re.compile(r'(account[_\s-]?(?:no|number)?["\s:=]+)\d{9,18}', re.IGNORECASE), r'\1[REDACTED_ACCOUNT]'),

        # Aadhaar numbers (12 digits, optionally grouped in fours)
        (re.compile(r'\b[2-9]\d{3}[\s-]?\d{4}[\s-]?\d{4}\b'), r'[REDACTED_AADHAAR]'),

        # Phone numbers (E.164 and 10-digit Indian mobile numbers)
        (re.compile(r'\+\d{1,3}\d{6,14}'), r'[REDACTED_PHONE]'),
        (re.compile(r'\b[6-9]\d{9}\b'), r'[REDACTED_PHONE]'),

        # Email addresses keep their first character and domain
        (re.compile(r'\b([A-Za-z0-9])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b'), r'\1***@\2'),

        # Authorization headers
        (re.compile(r'Authorization["\s:]+([^\s,\]}"\']+)', re.IGNORECASE), r'Authorization: [REDACTED]'),
    ]

    def format(self, record):
        """
        Format log record and sanitize sensitive data.

        Args:
            record: LogRecord instance

        Returns:
            Sanitized log message
        """
        return sanitize_text(super().format(record))


class SanitizingFilter(logging.Filter):
    """
    Logging filter that sanitizes sensitive data in log records.

    Sanitizes the message and its string args before formatting.
    """

    def filter(self, record):
        """
        Sanitize log record message.

        Args:
            record: LogRecord instance

        Returns:
            True (always allows the record through)
        """
        if isinstance(record.msg, str):
            record.msg = sanitize_text(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_text(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True


def sanitize_text(text: str) -> str:
    """Apply every redaction pattern to a string."""
    for pattern, replacement in SanitizingFormatter.PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_dict_for_logging(data: dict) -> dict:
    """
    Sanitize dictionary for safe logging or audit storage.

    Removes or redacts sensitive fields.

    Args:
        data: Dictionary to sanitize

    Returns:
        Sanitized dictionary
    """
    if not isinstance(data, dict):
        return data

    # Fields to completely remove
    remove_fields = {
        'password', 'secret', 'token', 'api_key', 'private_key',
        'bank_account', 'aadhaar',
    }

    # Fields to mask (show last 4 chars)
    mask_fields = {
        'phone', 'mobile', 'email',
    }

    sanitized = {}

    for key, value in data.items():
        key_lower = key.lower()

        if any(field in key_lower for field in remove_fields):
            sanitized[key] = '[REDACTED]'
        elif any(field in key_lower for field in mask_fields):
            if isinstance(value, str) and len(value) > 4:
                sanitized[key] = '****' + value[-4:]
            else:
                sanitized[key] = '****'
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict_for_logging(value)
        elif isinstance(value, list):
            sanitized[key] = [
                sanitize_dict_for_logging(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            sanitized[key] = value

    return sanitized
