"""
Fraud Guard
===========
Escalates repeated verification failures to a timed block.

Failures are keyed on the (subject, origin, device fingerprint) triple so
one hostile origin cannot lock a legitimate subject out everywhere. A
second, origin-only record with a higher threshold catches one origin
working through many subjects.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from . import metrics
from .events import mask_subject

logger = structlog.get_logger(__name__)

SCOPE_TRIPLE = "subject"
SCOPE_ORIGIN = "origin"


@dataclass
class FraudRecord:
    """Escalation state for one key."""
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    blocked: bool = False
    blocked_until: Optional[float] = None


@dataclass
class FraudDecision:
    """Outcome of a fraud evaluation."""
    suspicious: bool
    blocked: bool
    reason: Optional[str] = None


ALLOW = FraudDecision(suspicious=False, blocked=False)


class FraudGuard:
    """
    Failure counting and blocking per (subject, origin, fingerprint).
    
    Example:
        guard = FraudGuard(suspicion_threshold=3, block_duration=900)
        
        if guard.evaluate(subject, ip, fingerprint).blocked:
            return refuse()
    """
    
    def __init__(
        self,
        suspicion_threshold: int = 3,
        block_duration: float = 900,
        origin_threshold: int = 20,
        retention: float = 3600,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            suspicion_threshold: Failures on a triple before blocking it
            block_duration: Seconds a block lasts
            origin_threshold: Failures from one origin before blocking it
            retention: Seconds an idle, unblocked record is kept
            clock: Time source (seconds)
        """
        self.suspicion_threshold = suspicion_threshold
        self.block_duration = block_duration
        self.origin_threshold = origin_threshold
        self.retention = retention
        self._clock = clock
        self._records: Dict[str, FraudRecord] = {}
        self._lock = threading.Lock()
    
    @staticmethod
    def key(subject: str, origin: str, fingerprint: str) -> str:
        return f"{SCOPE_TRIPLE}:{subject}|{origin}|{fingerprint}"
    
    @staticmethod
    def origin_key(origin: str) -> str:
        return f"{SCOPE_ORIGIN}:{origin}"
    
    def _evaluate(self, key: str, threshold: int, scope: str) -> FraudDecision:
        with self._lock:
            now = self._clock()
            record = self._records.get(key)
            if record is None:
                return ALLOW
            
            if record.blocked:
                if record.blocked_until is not None and now < record.blocked_until:
                    return FraudDecision(
                        suspicious=True,
                        blocked=True,
                        reason="Temporarily blocked due to suspicious activity",
                    )
                # Block served; start over
                del self._records[key]
                return ALLOW
            
            failures = record.failure_count
            if failures >= threshold:
                record.blocked = True
                record.blocked_until = now + self.block_duration
                escalated = True
            else:
                escalated = False
        
        if escalated:
            metrics.record_fraud_block(scope)
            logger.warning(
                "fraud_block_started",
                scope=scope,
                failures=failures,
                block_seconds=self.block_duration,
            )
            return FraudDecision(
                suspicious=True,
                blocked=True,
                reason="Too many failed attempts",
            )
        
        return FraudDecision(
            suspicious=failures >= threshold - 1,
            blocked=False,
        )
    
    def _record(self, key: str) -> int:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = FraudRecord()
                self._records[key] = record
            record.failure_count += 1
            record.last_failure_at = self._clock()
            return record.failure_count
    
    def evaluate(self, subject: str, origin: str, fingerprint: str) -> FraudDecision:
        """
        Decide whether a triple may attempt verification.
        
        Args:
            subject: Normalized subject
            origin: Client IP address
            fingerprint: Device fingerprint hash
            
        Returns:
            FraudDecision; `blocked` means refuse without touching the challenge
        """
        return self._evaluate(
            self.key(subject, origin, fingerprint),
            self.suspicion_threshold,
            SCOPE_TRIPLE,
        )
    
    def evaluate_origin(self, origin: str) -> FraudDecision:
        """Decide whether an origin may attempt verification at all."""
        return self._evaluate(self.origin_key(origin), self.origin_threshold, SCOPE_ORIGIN)
    
    def record_failure(self, subject: str, origin: str, fingerprint: str) -> int:
        """
        Count a failed verification against the triple and the origin.
        
        Returns:
            Failure count on the triple
        """
        count = self._record(self.key(subject, origin, fingerprint))
        self._record(self.origin_key(origin))
        logger.info(
            "fraud_failure_recorded",
            subject=mask_subject(subject),
            fingerprint=fingerprint[:8],
            failures=count,
        )
        return count
    
    def clear(self, subject: str, origin: str, fingerprint: str) -> None:
        """Fully remove the triple's record after a successful verification."""
        with self._lock:
            self._records.pop(self.key(subject, origin, fingerprint), None)
    
    def get(self, subject: str, origin: str, fingerprint: str) -> Optional[FraudRecord]:
        with self._lock:
            return self._records.get(self.key(subject, origin, fingerprint))
    
    def sweep(self, now: Optional[float] = None) -> int:
        """
        Remove served blocks and idle records.
        
        Returns:
            Number of records removed
        """
        now = self._clock() if now is None else now
        with self._lock:
            keys = list(self._records)
        
        removed = 0
        for key in keys:
            with self._lock:
                record = self._records.get(key)
                if record is None:
                    continue
                if record.blocked:
                    stale = record.blocked_until is not None and now >= record.blocked_until
                else:
                    stale = (
                        record.last_failure_at is None
                        or now - record.last_failure_at > self.retention
                    )
                if stale:
                    del self._records[key]
                    removed += 1
        return removed
    
    def __len__(self) -> int:
        return len(self._records)
