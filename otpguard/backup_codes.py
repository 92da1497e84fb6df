"""
Backup Code Vault
=================
Single-use recovery codes, minted once per subject.

Codes are kept as salted hashes; the plaintext is only ever returned
from the call that minted it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import structlog

from .codec import generate_backup_code, hash_code, verify_code
from .events import SecurityEventType, log_security_event

logger = structlog.get_logger(__name__)


@dataclass
class BackupCode:
    """One recovery code."""
    code_hash: str
    used: bool = False
    used_at: Optional[float] = None


class BackupCodeVault:
    """Per-subject sets of recovery codes."""
    
    def __init__(
        self,
        count: int = 10,
        length: int = 8,
        clock: Callable[[], float] = time.time,
    ):
        self.count = count
        self.length = length
        self._clock = clock
        self._codes: Dict[str, List[BackupCode]] = {}
        self._lock = threading.Lock()
    
    def _mint(self) -> List[str]:
        codes = set()
        while len(codes) < self.count:
            codes.add(generate_backup_code(self.length))
        return sorted(codes)
    
    def ensure_codes(self, subject: str) -> Optional[List[str]]:
        """
        Mint a set for a subject that has none.
        
        Returns:
            The new plaintext codes, or None if a set already existed
        """
        plain = self._mint()
        with self._lock:
            if subject in self._codes:
                return None
            self._codes[subject] = [BackupCode(code_hash=hash_code(c)) for c in plain]
        
        log_security_event(SecurityEventType.BACKUP_CODE_GENERATED, subject, count=len(plain))
        return plain
    
    def regenerate(self, subject: str) -> List[str]:
        """Replace a subject's set, invalidating every earlier code."""
        plain = self._mint()
        with self._lock:
            self._codes[subject] = [BackupCode(code_hash=hash_code(c)) for c in plain]
        
        log_security_event(
            SecurityEventType.BACKUP_CODE_GENERATED,
            subject,
            count=len(plain),
            regenerated=True,
        )
        return plain
    
    def redeem(self, subject: str, code: str) -> bool:
        """
        Redeem an unused code (case-insensitive).
        
        Every stored code is checked so timing does not reveal position.
        
        Returns:
            True if an unused code matched and is now spent
        """
        candidate = code.strip().upper()
        with self._lock:
            codes = self._codes.get(subject)
            if not codes:
                return False
            
            match = None
            for entry in codes:
                if verify_code(candidate, entry.code_hash) and not entry.used and match is None:
                    match = entry
            
            if match is None:
                return False
            match.used = True
            match.used_at = self._clock()
        
        log_security_event(
            SecurityEventType.BACKUP_CODE_REDEEMED,
            subject,
            remaining=self.remaining(subject),
        )
        return True
    
    def remaining(self, subject: str) -> int:
        with self._lock:
            return sum(1 for entry in self._codes.get(subject, []) if not entry.used)
    
    def has_codes(self, subject: str) -> bool:
        with self._lock:
            return subject in self._codes
    
    def clear(self, subject: str) -> None:
        with self._lock:
            self._codes.pop(subject, None)
