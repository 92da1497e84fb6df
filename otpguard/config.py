"""
OTPGuard Configuration
======================
All tunables for the authentication core, with environment overrides.
"""

import os
from dataclasses import dataclass, fields
from typing import FrozenSet, Optional

from .errors import ConfigurationError

ENV_PREFIX = "OTPGUARD_"

PRODUCTION = "production"

# Only these environments may echo raw codes back
DEBUG_ENVIRONMENTS = frozenset({"development", "test"})


@dataclass
class OTPGuardConfig:
    """Configuration for challenge issuance and verification."""
    environment: str = PRODUCTION
    
    # Challenge
    code_length: int = 6
    challenge_ttl_seconds: int = 300  # 5 minutes
    max_attempts: int = 5
    
    # Rate limiting (fixed windows)
    request_limit: int = 5
    request_window_seconds: int = 3600
    origin_request_limit: int = 20
    origin_request_window_seconds: int = 3600
    verify_origin_limit: int = 30
    verify_origin_window_seconds: int = 900
    
    # Fraud
    suspicion_threshold: int = 3
    block_duration_seconds: int = 900  # 15 minutes
    origin_suspicion_threshold: int = 20
    fraud_retention_seconds: int = 3600
    
    # Device trust
    device_trust_days: int = 30
    fingerprint_ua_prefix: int = 50
    
    # Backup codes
    backup_code_count: int = 10
    backup_code_length: int = 8
    
    # TOTP
    totp_step_seconds: int = 30
    totp_digits: int = 6
    totp_skew_steps: int = 1
    totp_issuer: str = "OTPGuard"
    
    # Housekeeping
    sweep_interval_seconds: int = 300  # 5 minutes
    session_secret: Optional[str] = None
    
    # HTTP binding: comma-separated proxy IPs allowed to set X-Forwarded-For
    trusted_proxies: str = ""
    
    def __post_init__(self):
        if not 4 <= self.code_length <= 9:
            raise ConfigurationError("code_length must be between 4 and 9")
        if not 6 <= self.totp_digits <= 8:
            raise ConfigurationError("totp_digits must be between 6 and 8")
        if self.backup_code_length % 2:
            raise ConfigurationError("backup_code_length must be even")
        if self.totp_skew_steps < 0:
            raise ConfigurationError("totp_skew_steps must not be negative")
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type is int and f.name != "totp_skew_steps" and value <= 0:
                raise ConfigurationError(f"{f.name} must be positive")
    
    @property
    def expose_debug_code(self) -> bool:
        """Raw codes are only echoed back in an allowlisted environment."""
        return self.environment in DEBUG_ENVIRONMENTS
    
    @property
    def trusted_proxy_ips(self) -> FrozenSet[str]:
        return frozenset(ip.strip() for ip in self.trusted_proxies.split(",") if ip.strip())
    
    @property
    def device_trust_seconds(self) -> int:
        return self.device_trust_days * 24 * 60 * 60
    
    @classmethod
    def from_env(cls) -> "OTPGuardConfig":
        """Build a config from OTPGUARD_* environment variables."""
        overrides = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if f.type is int:
                try:
                    overrides[f.name] = int(raw)
                except ValueError:
                    raise ConfigurationError(f"{f.name} must be an integer, got {raw!r}")
            else:
                overrides[f.name] = raw
        return cls(**overrides)
