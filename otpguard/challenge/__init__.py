"""
Challenges
==========
Outstanding OTP/TOTP challenges and their repository.
"""

from .models import OTPMethod, Challenge, Attempt, AttemptStatus
from .store import ChallengeStore, InMemoryChallengeStore

__all__ = [
    # Models
    "OTPMethod",
    "Challenge",
    "Attempt",
    "AttemptStatus",
    # Store
    "ChallengeStore",
    "InMemoryChallengeStore",
]
