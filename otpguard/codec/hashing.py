"""
Code Hashing Utilities
======================
Secure code generation, salted hashing and constant-time verification.
"""

import secrets
import hashlib
import hmac

from ..errors import SecureRandomUnavailable

CODE_DRAW_BYTES = 4
_DRAW_SPACE = 1 << (8 * CODE_DRAW_BYTES)

MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 9  # 10**10 no longer fits a 4-byte draw

SALT_BYTES = 16


def ensure_secure_random() -> None:
    """
    Make sure the OS random source is usable.
    
    Raises:
        SecureRandomUnavailable: If the source cannot be read
    """
    try:
        secrets.token_bytes(SALT_BYTES)
    except (NotImplementedError, OSError) as e:
        raise SecureRandomUnavailable(f"OS random source unavailable: {e}") from e


def generate_code(length: int = 6) -> str:
    """
    Generate a uniformly distributed numeric code.
    
    A 4-byte draw is reduced modulo 10**length. Draws falling in the
    incomplete last block are rejected and redrawn so every code is
    equally likely.
    
    Args:
        length: Number of digits (4..9)
        
    Returns:
        Zero-padded code string
    """
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValueError(
            f"Code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}"
        )
    modulus = 10 ** length
    ceiling = _DRAW_SPACE - (_DRAW_SPACE % modulus)
    while True:
        value = int.from_bytes(secrets.token_bytes(CODE_DRAW_BYTES), "big")
        if value < ceiling:
            return str(value % modulus).zfill(length)


def generate_salt() -> str:
    """Generate a random salt for code hashing."""
    return secrets.token_hex(SALT_BYTES)


def _digest(salt: str, code: str) -> str:
    return hashlib.sha256(f"{salt}{code}".encode()).hexdigest()


def hash_code(code: str) -> str:
    """
    Hash a code with a fresh salt using SHA-256.
    
    Args:
        code: Plain code
        
    Returns:
        "salt:digest" string
    """
    salt = generate_salt()
    return f"{salt}:{_digest(salt, code)}"


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking where they differ."""
    return hmac.compare_digest(a.encode(), b.encode())


def verify_code(code: str, salted_hash: str) -> bool:
    """
    Verify a code against its salted hash.
    
    Uses constant-time comparison to prevent timing attacks.
    
    Args:
        code: User-provided code
        salted_hash: Stored "salt:digest" string
        
    Returns:
        True if code matches
    """
    salt, sep, stored_digest = salted_hash.partition(":")
    if not sep or not salt or not stored_digest:
        return False
    return constant_time_equals(_digest(salt, code), stored_digest)


def generate_backup_code(length: int = 8) -> str:
    """Generate an uppercase hex recovery code."""
    return secrets.token_hex(length // 2).upper()


def hash_identifier(value: str, pepper: str = "") -> str:
    """
    Hash an identifier (subject, fingerprint parts) for privacy.
    
    Args:
        value: Raw identifier
        pepper: Optional secret pepper
        
    Returns:
        SHA-256 hash
    """
    return hashlib.sha256(f"{pepper}:{value}".encode()).hexdigest()
