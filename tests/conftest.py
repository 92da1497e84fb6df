"""
Shared fixtures for otpguard tests.
"""

import pytest

from otpguard import ChallengeOrchestrator, OTPGuardConfig, RequestContext

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source."""
    
    def __init__(self, now: float = START):
        self.now = now
    
    def __call__(self) -> float:
        return self.now
    
    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dev_config():
    """Development config: raw codes are echoed back for tests."""
    return OTPGuardConfig(environment="development")


@pytest.fixture
def orchestrator(dev_config, clock):
    return ChallengeOrchestrator(dev_config, clock=clock)


@pytest.fixture
def ctx():
    return RequestContext(
        origin_ip="203.0.113.7",
        user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)",
        accept_language="en-US,en;q=0.9",
    )
