"""
Challenge Orchestration
=======================
Issue/verify façade composing the codec, stores and guards.
"""

from .models import (
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
from .orchestrator import ChallengeOrchestrator, request_key, verify_key

__all__ = [
    # Models
    "Reason",
    "DeliveryOutcome",
    "RequestContext",
    "IssueRequest",
    "IssueResult",
    "VerifyRequest",
    "VerifyResult",
    "ChallengeStatus",
    "TOTPEnrollment",
    # Orchestrator
    "ChallengeOrchestrator",
    "request_key",
    "verify_key",
]
