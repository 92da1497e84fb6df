"""
Challenge Models
================
Data models and enums for outstanding verification challenges.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OTPMethod(str, Enum):
    """Challenge delivery methods."""
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    TOTP = "totp"
    
    @property
    def is_delivered(self) -> bool:
        """TOTP codes come from the user's authenticator, not from us."""
        return self is not OTPMethod.TOTP


@dataclass
class Challenge:
    """The one live verification attempt for a subject."""
    id: str
    subject: str
    method: OTPMethod
    created_at: float
    expires_at: float
    code_hash: Optional[str] = None  # "salt:digest", never the code
    totp_secret: Optional[str] = None  # Only for TOTP
    attempts: int = 0
    last_attempt_at: Optional[float] = None
    
    def is_expired(self, now: float) -> bool:
        return now > self.expires_at
    
    def attempts_remaining(self, max_attempts: int) -> int:
        return max(0, max_attempts - self.attempts)


class AttemptStatus(str, Enum):
    """Outcome of trying to spend one verification attempt."""
    ACCEPTED = "accepted"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


@dataclass
class Attempt:
    """Result of `record_attempt`; only ACCEPTED attempts may compare a code."""
    status: AttemptStatus
    challenge: Optional[Challenge] = None
    
    @property
    def accepted(self) -> bool:
        return self.status is AttemptStatus.ACCEPTED
