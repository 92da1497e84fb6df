"""
Proof Token
===========
Signed, time-bounded proof that a subject just passed verification.

Hosts that want a self-verifying session seed plug `ProofToken.mint`
into the orchestrator as its session minter.
"""

import time
import base64
import json
import hmac
import hashlib
import secrets
from typing import Callable, Optional

from .codec import hash_identifier

SEED_BYTES = 32


def random_session_seed(subject: str) -> str:
    """Default session minter: an opaque random token."""
    return secrets.token_hex(SEED_BYTES)


class ProofToken:
    """Generates cryptographic proof of successful verification."""
    
    def __init__(self, secret: str, clock: Callable[[], float] = time.time):
        self.secret = secret
        self._clock = clock
    
    def _sign(self, payload_b64: str) -> str:
        return hmac.new(
            self.secret.encode(),
            payload_b64.encode(),
            hashlib.sha256,
        ).hexdigest()[:32]
    
    def mint(self, subject: str) -> str:
        """
        Generate a proof token for a verified subject.
        
        Args:
            subject: Verified subject (only a truncated hash is embedded)
            
        Returns:
            Signed proof token
        """
        payload = {
            "sid": secrets.token_hex(8),
            "sh": hash_identifier(subject, self.secret)[:16],
            "ts": int(self._clock()),
            "ver": "1",
        }
        
        payload_json = json.dumps(payload, separators=(',', ':'))
        payload_b64 = base64.urlsafe_b64encode(payload_json.encode()).decode()
        
        return f"{payload_b64}.{self._sign(payload_b64)}"
    
    def verify(self, token: str, max_age_seconds: int = 3600) -> Optional[dict]:
        """
        Verify a proof token.
        
        Args:
            token: The proof token
            max_age_seconds: Maximum token age
            
        Returns:
            Payload if valid, None otherwise
        """
        parts = token.split('.')
        if len(parts) != 2:
            return None
        
        payload_b64, signature = parts
        if not hmac.compare_digest(signature, self._sign(payload_b64)):
            return None
        
        try:
            payload = json.loads(base64.urlsafe_b64decode(payload_b64).decode())
        except (ValueError, UnicodeDecodeError):
            return None
        
        if self._clock() - payload.get("ts", 0) > max_age_seconds:
            return None
        
        return payload
    
    def matches(self, payload: dict, subject: str) -> bool:
        """Check that a verified payload belongs to `subject`."""
        expected = hash_identifier(subject, self.secret)[:16]
        return hmac.compare_digest(payload.get("sh", ""), expected)
