"""
TOTP Utilities
==============
Time-based one-time passwords (RFC 6238 over RFC 4226 HOTP).
"""

import base64
import hashlib
import hmac
import struct
import time
from typing import Optional

import pyotp

from .hashing import constant_time_equals

DEFAULT_STEP = 30
DEFAULT_DIGITS = 6


def _decode_secret(secret: str) -> bytes:
    clean = secret.replace(" ", "").upper().rstrip("=")
    padding = "=" * (-len(clean) % 8)
    return base64.b32decode(clean + padding)


def hotp(key: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    """
    Compute a counter-based one-time password.
    
    Args:
        key: Raw shared secret
        counter: Moving factor
        digits: Output length
        
    Returns:
        Zero-padded code
    """
    mac = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = mac[-1] & 0x0F
    truncated = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(truncated % (10 ** digits)).zfill(digits)


def time_counter(at: float, step: int = DEFAULT_STEP) -> int:
    """Counter value for the time step containing `at`."""
    return int(at // step)


def totp_at(
    secret: str,
    step: int = DEFAULT_STEP,
    at: Optional[float] = None,
    digits: int = DEFAULT_DIGITS,
) -> str:
    """
    Compute the TOTP code for a moment in time.
    
    Args:
        secret: Base32 shared secret
        step: Time step in seconds
        at: Unix timestamp (defaults to now)
        digits: Output length
        
    Returns:
        TOTP code
    """
    if at is None:
        at = time.time()
    return hotp(_decode_secret(secret), time_counter(at, step), digits)


def verify_totp(
    code: str,
    secret: str,
    step: int = DEFAULT_STEP,
    at: Optional[float] = None,
    digits: int = DEFAULT_DIGITS,
    skew: int = 1,
) -> bool:
    """
    Verify a TOTP code, tolerating `skew` steps of clock drift each way.
    
    Every candidate window is checked so timing does not reveal which
    one matched.
    """
    if at is None:
        at = time.time()
    key = _decode_secret(secret)
    counter = time_counter(at, step)
    matched = False
    for offset in range(-skew, skew + 1):
        if counter + offset < 0:
            continue
        if constant_time_equals(hotp(key, counter + offset, digits), code):
            matched = True
    return matched


def generate_totp_secret() -> str:
    """Generate a new base32 TOTP secret (160 bits)."""
    return pyotp.random_base32(length=32)


def provisioning_uri(
    secret: str,
    account: str,
    issuer: str,
    step: int = DEFAULT_STEP,
    digits: int = DEFAULT_DIGITS,
) -> str:
    """
    Build an otpauth:// URI for authenticator apps (QR payload).
    
    Args:
        secret: Base32 secret
        account: Account label (subject)
        issuer: Application name
    """
    totp = pyotp.TOTP(secret, digits=digits, interval=step)
    return totp.provisioning_uri(name=account, issuer_name=issuer)
