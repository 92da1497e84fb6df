"""
Code Codec
==========
Numeric codes, salted hashes, backup codes and TOTP.
"""

from .hashing import (
    ensure_secure_random,
    generate_code,
    generate_salt,
    hash_code,
    verify_code,
    constant_time_equals,
    generate_backup_code,
    hash_identifier,
)
from .totp import (
    hotp,
    totp_at,
    verify_totp,
    time_counter,
    generate_totp_secret,
    provisioning_uri,
)

__all__ = [
    # Hashing
    "ensure_secure_random",
    "generate_code",
    "generate_salt",
    "hash_code",
    "verify_code",
    "constant_time_equals",
    "generate_backup_code",
    "hash_identifier",
    # TOTP
    "hotp",
    "totp_at",
    "verify_totp",
    "time_counter",
    "generate_totp_secret",
    "provisioning_uri",
]
