"""
Device Trust
============
Recognizes returning devices and remembers trusted ones per subject.

Only fingerprint digests are stored or compared; raw user agents and IP
addresses never leave the fingerprint function.
"""

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import structlog

from .events import SecurityEventType, log_security_event

logger = structlog.get_logger(__name__)

DEFAULT_UA_PREFIX = 50
DEFAULT_TRUST_SECONDS = 30 * 24 * 60 * 60  # 30 days


def fingerprint(
    user_agent: Optional[str],
    ip: Optional[str],
    accept_language: Optional[str] = None,
    ua_prefix: int = DEFAULT_UA_PREFIX,
) -> str:
    """
    Derive a stable device fingerprint from request metadata.
    
    Args:
        user_agent: User-Agent header (only the first `ua_prefix` chars count)
        ip: Client IP address
        accept_language: Accept-Language header (only the primary tag counts)
        ua_prefix: Number of user-agent characters to include
        
    Returns:
        SHA-256 hex digest
    """
    language = (accept_language or "").split(",")[0].split(";")[0].strip().lower()
    components = [
        (user_agent or "")[:ua_prefix],
        ip or "",
        language,
    ]
    return hashlib.sha256("|".join(components).encode()).hexdigest()


@dataclass
class TrustedDevice:
    """A fingerprint a subject has verified from."""
    fingerprint: str
    subject: str
    trusted: bool
    first_seen: float
    last_seen: float


class DeviceTrust:
    """Trusted device registry with a sliding trust horizon."""
    
    def __init__(
        self,
        trust_seconds: float = DEFAULT_TRUST_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.trust_seconds = trust_seconds
        self._clock = clock
        self._devices: Dict[Tuple[str, str], TrustedDevice] = {}
        self._lock = threading.Lock()
    
    def _expired(self, device: TrustedDevice, now: float) -> bool:
        return now - device.last_seen >= self.trust_seconds
    
    def is_trusted(self, subject: str, device_fingerprint: str) -> bool:
        """
        Check whether a device may skip the challenge.
        
        A hit refreshes `last_seen`; an expired entry is deleted.
        """
        key = (subject, device_fingerprint)
        with self._lock:
            now = self._clock()
            device = self._devices.get(key)
            if device is None or not device.trusted:
                return False
            if self._expired(device, now):
                del self._devices[key]
                return False
            device.last_seen = now
            return True
    
    def trust(self, subject: str, device_fingerprint: str) -> TrustedDevice:
        """Remember a device after a full successful verification."""
        key = (subject, device_fingerprint)
        with self._lock:
            now = self._clock()
            device = self._devices.get(key)
            if device is None:
                device = TrustedDevice(
                    fingerprint=device_fingerprint,
                    subject=subject,
                    trusted=True,
                    first_seen=now,
                    last_seen=now,
                )
                self._devices[key] = device
            else:
                device.trusted = True
                device.last_seen = now
        
        log_security_event(
            SecurityEventType.DEVICE_TRUSTED,
            subject,
            fingerprint=device_fingerprint[:8],
        )
        return device
    
    def revoke_all(self, subject: str) -> int:
        """
        Forget every trusted device of a subject.
        
        Returns:
            Number of devices revoked
        """
        with self._lock:
            keys = [key for key in self._devices if key[0] == subject]
            for key in keys:
                del self._devices[key]
        
        log_security_event(SecurityEventType.DEVICE_REVOKED, subject, count=len(keys))
        return len(keys)
    
    def sweep(self, now: Optional[float] = None) -> int:
        """Remove devices whose trust has lapsed."""
        now = self._clock() if now is None else now
        with self._lock:
            keys = list(self._devices)
        
        removed = 0
        for key in keys:
            with self._lock:
                device = self._devices.get(key)
                if device is not None and self._expired(device, now):
                    del self._devices[key]
                    removed += 1
        return removed
    
    def __len__(self) -> int:
        return len(self._devices)
