"""
OTPGuard
========
One-time-password authentication core: issue, deliver (via the host) and
verify short-lived codes while resisting brute force, replay and abuse.
"""

__version__ = "0.1.0"

# Config & errors
from otpguard.config import OTPGuardConfig
from otpguard.errors import (
    OTPGuardError,
    ConfigurationError,
    ValidationError,
    StorageError,
    SecureRandomUnavailable,
)

# Codec
from otpguard.codec import (
    generate_code,
    hash_code,
    verify_code,
    generate_backup_code,
    totp_at,
    verify_totp,
)

# Stores and guards
from otpguard.challenge import Challenge, OTPMethod, InMemoryChallengeStore
from otpguard.rate_limit import InMemoryWindowStore, RedisWindowStore, RateLimitInfo
from otpguard.fraud import FraudGuard, FraudDecision, FraudRecord
from otpguard.device_trust import DeviceTrust, TrustedDevice, fingerprint
from otpguard.backup_codes import BackupCodeVault

# Orchestration
from otpguard.orchestrator import (
    ChallengeOrchestrator,
    Reason,
    DeliveryOutcome,
    RequestContext,
    IssueRequest,
    IssueResult,
    VerifyRequest,
    VerifyResult,
    ChallengeStatus,
    TOTPEnrollment,
)
from otpguard.session import ProofToken
from otpguard.cleanup import CleanupTask

__all__ = [
    "__version__",
    # Config & errors
    "OTPGuardConfig",
    "OTPGuardError",
    "ConfigurationError",
    "ValidationError",
    "StorageError",
    "SecureRandomUnavailable",
    # Codec
    "generate_code",
    "hash_code",
    "verify_code",
    "generate_backup_code",
    "totp_at",
    "verify_totp",
    # Stores and guards
    "Challenge",
    "OTPMethod",
    "InMemoryChallengeStore",
    "InMemoryWindowStore",
    "RedisWindowStore",
    "RateLimitInfo",
    "FraudGuard",
    "FraudDecision",
    "FraudRecord",
    "DeviceTrust",
    "TrustedDevice",
    "fingerprint",
    "BackupCodeVault",
    # Orchestration
    "ChallengeOrchestrator",
    "Reason",
    "DeliveryOutcome",
    "RequestContext",
    "IssueRequest",
    "IssueResult",
    "VerifyRequest",
    "VerifyResult",
    "ChallengeStatus",
    "TOTPEnrollment",
    "ProofToken",
    "CleanupTask",
]
