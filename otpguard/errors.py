"""
OTPGuard Exceptions
===================
Exception classes raised by the authentication core.

Request-scoped outcomes (wrong code, rate limited, blocked...) are never
raised; they are returned as tagged results by the orchestrator.
"""

from typing import Optional


class OTPGuardError(Exception):
    """Base class for all otpguard errors."""
    pass


class ConfigurationError(OTPGuardError):
    """Raised when configuration values are out of range."""
    pass


class ValidationError(OTPGuardError):
    """Raised when a subject or code is malformed."""
    
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class StorageError(OTPGuardError):
    """Raised when a repository backend fails."""
    
    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class SecureRandomUnavailable(OTPGuardError):
    """Raised at startup when the OS random source cannot be read."""
    pass
