"""
Challenge Store
===============
Repository owning every Challenge record.

Expiry is enforced lazily: an expired record is deleted by whichever read
first notices it. Records are handed out as copies so only the store
mutates them.
"""

import dataclasses
import threading
import time
import uuid
from typing import Callable, Dict, Optional, Protocol

import structlog

from ..events import mask_subject
from .models import Attempt, AttemptStatus, Challenge, OTPMethod

logger = structlog.get_logger(__name__)


class ChallengeStore(Protocol):
    """Storage contract for challenges."""
    
    def issue(
        self,
        subject: str,
        method: OTPMethod,
        code_hash: Optional[str],
        expires_at: float,
        totp_secret: Optional[str] = None,
    ) -> Challenge:
        ...
    
    def get(self, subject: str) -> Optional[Challenge]:
        ...
    
    def record_attempt(self, subject: str, max_attempts: int) -> Attempt:
        ...
    
    def consume(
        self,
        subject: str,
        challenge_id: Optional[str] = None,
        exhausted: bool = False,
    ) -> Optional[Challenge]:
        ...
    
    def take_exhaustion(self, subject: str) -> bool:
        ...
    
    def sweep(self, now: Optional[float] = None) -> int:
        ...


class InMemoryChallengeStore:
    """
    Challenges held in process memory, one per subject.
    
    In production, back this with a shared cache.
    """
    
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._challenges: Dict[str, Challenge] = {}
        # subject -> expiry of the exhausted challenge
        self._exhausted: Dict[str, float] = {}
        self._lock = threading.Lock()
    
    def issue(
        self,
        subject: str,
        method: OTPMethod,
        code_hash: Optional[str],
        expires_at: float,
        totp_secret: Optional[str] = None,
    ) -> Challenge:
        """
        Write a new challenge, superseding any existing one.
        
        Args:
            subject: Normalized phone number or e-mail
            method: Delivery method
            code_hash: Salted hash of the code (None for TOTP)
            expires_at: Unix timestamp after which the code is dead
            totp_secret: Base32 secret for TOTP challenges
            
        Returns:
            Copy of the stored challenge
        """
        challenge = Challenge(
            id=str(uuid.uuid4()),
            subject=subject,
            method=method,
            created_at=self._clock(),
            expires_at=expires_at,
            code_hash=code_hash,
            totp_secret=totp_secret,
        )
        with self._lock:
            superseded = subject in self._challenges
            self._challenges[subject] = challenge
            self._exhausted.pop(subject, None)
        
        if superseded:
            logger.info("challenge_superseded", subject=mask_subject(subject))
        return dataclasses.replace(challenge)
    
    def get(self, subject: str) -> Optional[Challenge]:
        """
        Look up the challenge for a subject.
        
        An expired challenge is deleted and still returned once, so the
        caller can tell EXPIRED from NOT_FOUND.
        """
        with self._lock:
            challenge = self._challenges.get(subject)
            if challenge is None:
                return None
            if challenge.is_expired(self._clock()):
                del self._challenges[subject]
            return dataclasses.replace(challenge)
    
    def record_attempt(self, subject: str, max_attempts: int) -> Attempt:
        """
        Spend one verification attempt, checking the budget atomically.
        
        An exhausted or expired challenge is deleted here, so concurrent
        callers can never compare more codes than the budget allows.
        
        Args:
            subject: Subject whose challenge is being answered
            max_attempts: Attempt budget per challenge
            
        Returns:
            Attempt carrying a copy of the challenge (absent for NOT_FOUND)
        """
        with self._lock:
            now = self._clock()
            challenge = self._challenges.get(subject)
            if challenge is None:
                return Attempt(AttemptStatus.NOT_FOUND)
            if challenge.is_expired(now):
                del self._challenges[subject]
                return Attempt(AttemptStatus.EXPIRED, dataclasses.replace(challenge))
            if challenge.attempts >= max_attempts:
                del self._challenges[subject]
                return Attempt(AttemptStatus.EXHAUSTED, dataclasses.replace(challenge))
            challenge.attempts += 1
            challenge.last_attempt_at = now
            return Attempt(AttemptStatus.ACCEPTED, dataclasses.replace(challenge))
    
    def consume(
        self,
        subject: str,
        challenge_id: Optional[str] = None,
        exhausted: bool = False,
    ) -> Optional[Challenge]:
        """
        Delete the challenge for a subject.
        
        Args:
            subject: Subject whose challenge ends
            challenge_id: Only delete if the live challenge has this id
            exhausted: Leave a tombstone so the next lookup reports exhaustion
            
        Returns:
            The removed challenge, or None if nothing matching was live
        """
        with self._lock:
            challenge = self._challenges.get(subject)
            if challenge is None:
                return None
            if challenge_id is not None and challenge.id != challenge_id:
                return None
            del self._challenges[subject]
            if exhausted:
                self._exhausted[subject] = challenge.expires_at
            return challenge
    
    def take_exhaustion(self, subject: str) -> bool:
        """Pop the exhaustion tombstone; True if one was still valid."""
        with self._lock:
            expires_at = self._exhausted.pop(subject, None)
        return expires_at is not None and self._clock() <= expires_at
    
    def sweep(self, now: Optional[float] = None) -> int:
        """
        Remove expired challenges and tombstones.
        
        Returns:
            Number of challenges removed
        """
        now = self._clock() if now is None else now
        with self._lock:
            subjects = list(self._challenges)
            tombstones = list(self._exhausted)
        
        removed = 0
        for subject in subjects:
            with self._lock:
                challenge = self._challenges.get(subject)
                if challenge is not None and challenge.is_expired(now):
                    del self._challenges[subject]
                    removed += 1
        for subject in tombstones:
            with self._lock:
                expires_at = self._exhausted.get(subject)
                if expires_at is not None and now > expires_at:
                    del self._exhausted[subject]
        return removed
    
    def __len__(self) -> int:
        return len(self._challenges)
