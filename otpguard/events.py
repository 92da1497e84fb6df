"""
Security Events
===============
Standard security event types and the structured logger that emits them.
"""

from enum import Enum
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


class SecurityEventType(str, Enum):
    """Security-relevant events raised by the authentication core."""
    # Challenges
    OTP_GENERATED = "otp.generated"
    OTP_VERIFIED = "otp.verified"
    OTP_FAILED = "otp.failed"
    OTP_CANCELLED = "otp.cancelled"
    
    # Abuse
    RATE_LIMITED = "otp.rate_limited"
    BLOCKED = "otp.blocked"
    INVALID_INPUT = "otp.invalid_input"
    
    # Recovery
    BACKUP_CODE_GENERATED = "backup_code.generated"
    BACKUP_CODE_REDEEMED = "backup_code.redeemed"
    
    # Authenticator
    TOTP_ENROLLED = "totp.enrolled"
    
    # Devices
    DEVICE_TRUSTED = "device.trusted"
    DEVICE_REVOKED = "device.revoked"


_WARNING_EVENTS = {
    SecurityEventType.OTP_FAILED,
    SecurityEventType.RATE_LIMITED,
    SecurityEventType.BLOCKED,
    SecurityEventType.INVALID_INPUT,
}


def mask_subject(subject: Optional[str]) -> str:
    """Mask a phone number or e-mail for logs."""
    if not subject:
        return "****"
    return subject[:4] + "****"


def log_security_event(
    event_type: SecurityEventType,
    subject: Optional[str] = None,
    **details: Any,
) -> None:
    """
    Emit a security event.
    
    Failures and refusals log at warning level, everything else at info.
    
    Args:
        event_type: Type of event
        subject: Raw subject (masked before logging)
        **details: Additional context (must not contain codes or secrets)
    """
    log = logger.warning if event_type in _WARNING_EVENTS else logger.info
    log(
        "security_event",
        event_type=event_type.value,
        subject=mask_subject(subject),
        **details,
    )
