"""
Input Validation
================
Subject normalization and code format checks, applied before any store
is touched.
"""

import base64
import binascii
import re
from typing import Collection

from .errors import ValidationError

PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15
TOTP_SECRET_MIN_CHARS = 16

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_CHARS_RE = re.compile(r"^[\d\s()+.\-]+$")
_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")
_BASE32_RE = re.compile(r"^[A-Z2-7]+$")


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number to "+<digits>".
    
    Args:
        phone: Raw phone number, formatting allowed
        
    Returns:
        Normalized number
    """
    if not _PHONE_CHARS_RE.match(phone):
        raise ValidationError("subject", "phone number contains invalid characters")
    digits = re.sub(r"\D", "", phone)
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise ValidationError(
            "subject",
            f"phone number must have {PHONE_MIN_DIGITS}-{PHONE_MAX_DIGITS} digits",
        )
    if digits[0] == "0":
        raise ValidationError("subject", "phone number must include a country code")
    return f"+{digits}"


def normalize_email(email: str) -> str:
    """Trim and lower-case an e-mail address."""
    normalized = email.strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("subject", "invalid e-mail address")
    return normalized


def normalize_subject(raw: str) -> str:
    """
    Normalize a phone number or e-mail address.
    
    Raises:
        ValidationError: If it is neither
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("subject", "subject is required")
    if "@" in raw:
        return normalize_email(raw)
    return normalize_phone(raw.strip())


def validate_code(code: str, lengths: Collection[int]) -> str:
    """Require ASCII digits, as many as one of the accepted `lengths`."""
    if not isinstance(code, str):
        raise ValidationError("code", "code is required")
    code = code.strip()
    if len(code) not in lengths or not code.isascii() or not code.isdigit():
        raise ValidationError("code", "code has an invalid format")
    return code


def validate_totp_secret(secret: str) -> str:
    """
    Check an enrolled authenticator secret.
    
    Returns:
        The secret upper-cased, without spaces or padding
        
    Raises:
        ValidationError: If it is not base32 or shorter than 80 bits
    """
    if not isinstance(secret, str):
        raise ValidationError("totp_secret", "secret is required")
    clean = secret.replace(" ", "").upper().rstrip("=")
    if len(clean) < TOTP_SECRET_MIN_CHARS or not _BASE32_RE.match(clean):
        raise ValidationError("totp_secret", "secret must be base32")
    try:
        base64.b32decode(clean + "=" * (-len(clean) % 8))
    except binascii.Error:
        raise ValidationError("totp_secret", "secret must be base32")
    return clean


def validate_backup_code(code: str, length: int) -> str:
    """Require `length` hex characters; returns the upper-cased code."""
    if not isinstance(code, str):
        raise ValidationError("code", "backup code is required")
    code = code.strip()
    if len(code) != length or not _HEX_RE.match(code):
        raise ValidationError("code", f"backup code must be {length} hex characters")
    return code.upper()
