"""
Orchestrator Models
===================
Request and tagged result types exchanged with the host.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..challenge import OTPMethod


class Reason(str, Enum):
    """Every outcome a caller has to handle."""
    ISSUED = "ISSUED"
    VERIFIED = "VERIFIED"
    VALIDATION = "VALIDATION"
    RATE_LIMITED = "RATE_LIMITED"
    BLOCKED = "BLOCKED"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    EXHAUSTED = "EXHAUSTED"
    INVALID = "INVALID"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# User-facing messages; deliberately silent about whether a subject exists
MESSAGES = {
    Reason.ISSUED: "Verification code sent",
    Reason.VERIFIED: "Verified",
    Reason.VALIDATION: "Invalid request",
    Reason.RATE_LIMITED: "Too many requests. Please try again later.",
    Reason.BLOCKED: "Too many failed attempts. Please try again later.",
    Reason.NOT_FOUND: "No active code. Please request a new one.",
    Reason.EXPIRED: "Code expired. Please request a new one.",
    Reason.EXHAUSTED: "Too many attempts. Please request a new code.",
    Reason.INVALID: "Invalid code",
    Reason.DELIVERY_FAILED: "Could not deliver the code. Please try again.",
    Reason.INTERNAL_ERROR: "Something went wrong. Please try again.",
}


class DeliveryOutcome(str, Enum):
    """Result reported by the host's delivery callback."""
    SENT = "sent"
    FAILED = "failed"


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class RequestContext:
    """Where a request came from."""
    origin_ip: str = ""
    user_agent: str = ""
    accept_language: str = ""


@dataclass
class IssueRequest:
    """Ask for a new challenge."""
    subject: str
    method: Union[OTPMethod, str] = OTPMethod.SMS
    delivery_context: RequestContext = field(default_factory=RequestContext)
    totp_secret: Optional[str] = None  # Enrolled secret from the host's store


@dataclass
class IssueResult:
    """Outcome of an issue call."""
    ok: bool
    reason: Reason
    method: Optional[str] = None
    expires_at: Optional[float] = None
    retry_after_ms: Optional[int] = None
    raw_code_for_debug: Optional[str] = None  # Never set in production
    
    @property
    def message(self) -> str:
        return MESSAGES[self.reason]
    
    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ok": self.ok,
            "reason": self.reason.value,
            "message": self.message,
            "method": self.method,
            "expires_at": _iso(self.expires_at),
        }
        optional = {
            "retry_after_ms": self.retry_after_ms,
            "raw_code_for_debug": self.raw_code_for_debug,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass
class VerifyRequest:
    """Submit a code for a subject."""
    subject: str
    code: str
    origin_ip: str = ""
    user_agent: str = ""
    accept_language: str = ""
    remember_device: bool = False
    
    @property
    def context(self) -> RequestContext:
        return RequestContext(
            origin_ip=self.origin_ip,
            user_agent=self.user_agent,
            accept_language=self.accept_language,
        )


@dataclass
class VerifyResult:
    """Outcome of a verify call."""
    ok: bool
    reason: Reason
    attempts_remaining: Optional[int] = None
    session_seed: Optional[str] = None
    retry_after_ms: Optional[int] = None
    backup_codes: Optional[List[str]] = None  # Only on the first verification
    
    @property
    def message(self) -> str:
        return MESSAGES[self.reason]
    
    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ok": self.ok,
            "reason": self.reason.value,
            "message": self.message,
        }
        optional = {
            "attempts_remaining": self.attempts_remaining,
            "session_seed": self.session_seed,
            "retry_after_ms": self.retry_after_ms,
            "backup_codes": self.backup_codes,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


@dataclass
class ChallengeStatus:
    """Read-only view of a subject's challenge."""
    exists: bool
    method: Optional[str] = None
    attempts_remaining: int = 0
    expires_at: Optional[float] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "method": self.method,
            "attempts_remaining": self.attempts_remaining,
            "expires_at": _iso(self.expires_at),
        }


@dataclass
class TOTPEnrollment:
    """Authenticator provisioning material, for the host to store."""
    secret: str
    uri: str  # otpauth:// payload for a QR code
