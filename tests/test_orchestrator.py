"""
Integration Tests for the Challenge Orchestrator
================================================
End-to-end issue/verify flows against the in-memory stores.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from otpguard import (
    BackupCodeVault,
    ChallengeOrchestrator,
    DeliveryOutcome,
    DeviceTrust,
    FraudGuard,
    InMemoryChallengeStore,
    InMemoryWindowStore,
    IssueRequest,
    OTPGuardConfig,
    OTPMethod,
    ProofToken,
    Reason,
    RequestContext,
    StorageError,
    VerifyRequest,
    totp_at,
)
from otpguard.metrics import OTP_REGISTRY

SUBJECT = "+15551234567"


def verify_request(code, ctx, subject=SUBJECT, **kwargs):
    return VerifyRequest(
        subject=subject,
        code=code,
        origin_ip=ctx.origin_ip,
        user_agent=ctx.user_agent,
        accept_language=ctx.accept_language,
        **kwargs,
    )


def wrong_code(code):
    return "000000" if code != "000000" else "111111"


class TestIssue:
    """Tests for challenge issuance."""
    
    def test_issue_sms(self, orchestrator, ctx, clock):
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.ok is True
        assert result.reason == Reason.ISSUED
        assert result.method == "sms"
        assert result.expires_at == pytest.approx(clock.now + 300)
        assert len(result.raw_code_for_debug) == 6
    
    def test_subject_is_normalized(self, orchestrator, ctx):
        orchestrator.issue(IssueRequest("+1 (555) 123-4567", "sms", ctx))
        
        assert orchestrator.status(SUBJECT).exists is True
    
    def test_invalid_subject(self, orchestrator, ctx):
        """Malformed subjects are rejected before any store is touched."""
        result = orchestrator.issue(IssueRequest("not-a-phone", "sms", ctx))
        
        assert result.ok is False
        assert result.reason == Reason.VALIDATION
        assert len(orchestrator.windows) == 0
    
    def test_invalid_method(self, orchestrator, ctx):
        result = orchestrator.issue(IssueRequest(SUBJECT, "pigeon", ctx))
        
        assert result.reason == Reason.VALIDATION
    
    def test_production_never_returns_raw_code(self, ctx, clock):
        deliver = MagicMock(return_value=DeliveryOutcome.SENT)
        orchestrator = ChallengeOrchestrator(OTPGuardConfig(), deliver=deliver, clock=clock)
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.ok is True
        assert result.raw_code_for_debug is None
        assert "raw_code_for_debug" not in result.to_dict()
        
        subject, method, code = deliver.call_args[0]
        assert subject == SUBJECT
        assert method == OTPMethod.SMS
        verified = orchestrator.verify(verify_request(code, ctx))
        assert verified.reason == Reason.VERIFIED
    
    def test_rate_limited_on_sixth_issue(self, orchestrator, ctx):
        """Six rapid issues with limit=5: the sixth is refused."""
        for _ in range(5):
            assert orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).ok is True
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.ok is False
        assert result.reason == Reason.RATE_LIMITED
        assert result.retry_after_ms > 0
    
    def test_rate_limited_by_origin(self, clock, ctx):
        config = OTPGuardConfig(environment="development", origin_request_limit=2)
        orchestrator = ChallengeOrchestrator(config, clock=clock)
        
        orchestrator.issue(IssueRequest("+15550000001", "sms", ctx))
        orchestrator.issue(IssueRequest("+15550000002", "sms", ctx))
        result = orchestrator.issue(IssueRequest("+15550000003", "sms", ctx))
        
        assert result.reason == Reason.RATE_LIMITED
        assert orchestrator.status("+15550000003").exists is False
    
    def test_reissue_supersedes(self, orchestrator, ctx):
        """The first code stops working once a second is issued."""
        with patch("otpguard.orchestrator.orchestrator.generate_code", side_effect=["111111", "222222"]):
            orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
            orchestrator.issue(IssueRequest(SUBJECT, "whatsapp", ctx))
        
        assert len(orchestrator.challenges) == 1
        assert orchestrator.verify(verify_request("111111", ctx)).reason == Reason.INVALID
        assert orchestrator.verify(verify_request("222222", ctx)).reason == Reason.VERIFIED
    
    def test_issue_carries_no_backup_codes(self, ctx, clock):
        """Recovery material is never handed to an unverified caller."""
        orchestrator = ChallengeOrchestrator(OTPGuardConfig(), clock=clock)
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert "backup_codes" not in result.to_dict()
        assert orchestrator.remaining_backup_codes(SUBJECT) == 0
    
    @pytest.mark.parametrize("environment", ["production", "Production", "prod", "staging"])
    def test_raw_code_hidden_outside_debug_environments(self, ctx, clock, environment):
        orchestrator = ChallengeOrchestrator(OTPGuardConfig(environment=environment), clock=clock)
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.ok is True
        assert result.raw_code_for_debug is None
    
    def test_injected_empty_stores_are_used(self, dev_config, clock):
        """Empty stores are falsy but must still be the ones used."""
        challenges = InMemoryChallengeStore(clock=clock)
        windows = InMemoryWindowStore(clock=clock)
        fraud = FraudGuard(clock=clock)
        devices = DeviceTrust(clock=clock)
        vault = BackupCodeVault(clock=clock)
        
        orchestrator = ChallengeOrchestrator(
            dev_config,
            challenges=challenges,
            windows=windows,
            fraud=fraud,
            devices=devices,
            backup_codes=vault,
            clock=clock,
        )
        
        assert orchestrator.challenges is challenges
        assert orchestrator.windows is windows
        assert orchestrator.fraud is fraud
        assert orchestrator.devices is devices
        assert orchestrator.backup_codes is vault
    
    def test_shared_window_store_limits_across_workers(self, dev_config, ctx, clock):
        """Two workers sharing a window store share one request budget."""
        windows = InMemoryWindowStore(clock=clock)
        first = ChallengeOrchestrator(dev_config, windows=windows, clock=clock)
        second = ChallengeOrchestrator(dev_config, windows=windows, clock=clock)
        
        for _ in range(5):
            assert first.issue(IssueRequest(SUBJECT, "sms", ctx)).ok is True
        
        assert second.issue(IssueRequest(SUBJECT, "sms", ctx)).reason == Reason.RATE_LIMITED
    
    def test_delivery_failure_cancels(self, dev_config, ctx, clock):
        deliver = MagicMock(return_value=DeliveryOutcome.FAILED)
        orchestrator = ChallengeOrchestrator(dev_config, deliver=deliver, clock=clock)
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.reason == Reason.DELIVERY_FAILED
        assert orchestrator.status(SUBJECT).exists is False
        assert orchestrator.remaining_backup_codes(SUBJECT) == 0
    
    def test_delivery_exception_cancels(self, dev_config, ctx, clock):
        deliver = MagicMock(side_effect=TimeoutError("gateway timeout"))
        orchestrator = ChallengeOrchestrator(dev_config, deliver=deliver, clock=clock)
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.reason == Reason.DELIVERY_FAILED
        assert orchestrator.status(SUBJECT).exists is False
    
    def test_storage_error_is_generic(self, dev_config, ctx, clock):
        store = MagicMock(spec=InMemoryChallengeStore)
        store.issue.side_effect = StorageError("cache down")
        orchestrator = ChallengeOrchestrator(dev_config, challenges=store, clock=clock)
        
        result = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert result.reason == Reason.INTERNAL_ERROR
        assert "cache" not in str(result.to_dict())
    
    def test_cancel(self, orchestrator, ctx):
        orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        assert orchestrator.cancel(SUBJECT) is True
        assert orchestrator.cancel(SUBJECT) is False
        assert orchestrator.status(SUBJECT).exists is False


class TestVerify:
    """Tests for the verification state machine."""
    
    def test_end_to_end(self, orchestrator, ctx, clock):
        """Issue, one wrong code, the right code, then replay."""
        issued = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        code = issued.raw_code_for_debug
        assert issued.expires_at == pytest.approx(clock.now + 300)
        
        wrong = orchestrator.verify(verify_request(wrong_code(code), ctx))
        assert wrong.ok is False
        assert wrong.reason == Reason.INVALID
        assert wrong.attempts_remaining == 4
        
        right = orchestrator.verify(verify_request(code, ctx))
        assert right.ok is True
        assert right.reason == Reason.VERIFIED
        assert right.session_seed
        
        replay = orchestrator.verify(verify_request(code, ctx))
        assert replay.ok is False
        assert replay.reason == Reason.NOT_FOUND
    
    def test_not_found(self, orchestrator, ctx):
        assert orchestrator.verify(verify_request("123456", ctx)).reason == Reason.NOT_FOUND
    
    def test_expired(self, orchestrator, ctx, clock):
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        clock.advance(301)
        
        assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.EXPIRED
        assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.NOT_FOUND
    
    def test_exhaustion(self, clock, ctx):
        """After max_attempts wrong codes even the right code is refused."""
        config = OTPGuardConfig(environment="development", suspicion_threshold=10)
        orchestrator = ChallengeOrchestrator(config, clock=clock)
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        
        remaining = [
            orchestrator.verify(verify_request(wrong_code(code), ctx)).attempts_remaining
            for _ in range(5)
        ]
        assert remaining == [4, 3, 2, 1, 0]
        
        result = orchestrator.verify(verify_request(code, ctx))
        assert result.ok is False
        assert result.reason == Reason.EXHAUSTED
        assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.NOT_FOUND
    
    def test_fraud_block(self, orchestrator, ctx):
        """Three failures from one device block it; others are unaffected."""
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        for _ in range(3):
            orchestrator.verify(verify_request(wrong_code(code), ctx))
        
        blocked = orchestrator.verify(verify_request(code, ctx))
        assert blocked.reason == Reason.BLOCKED
        assert blocked.retry_after_ms is None
        # The refusal did not count as an attempt
        assert orchestrator.status(SUBJECT).attempts_remaining == 2
        
        other = RequestContext(origin_ip="198.51.100.1", user_agent="Other", accept_language="de")
        assert orchestrator.verify(verify_request(code, other)).reason == Reason.VERIFIED
    
    def test_success_clears_fraud_and_request_window(self, orchestrator, ctx):
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        orchestrator.verify(verify_request(wrong_code(code), ctx))
        for _ in range(3):
            orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        
        assert orchestrator.verify(verify_request(code, ctx)).ok is True
        
        device = orchestrator.fingerprint(ctx)
        assert orchestrator.fraud.get(SUBJECT, ctx.origin_ip, device) is None
        assert orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).ok is True
    
    def test_verify_rate_limit_by_origin(self, clock, ctx):
        config = OTPGuardConfig(environment="development", verify_origin_limit=2)
        orchestrator = ChallengeOrchestrator(config, clock=clock)
        
        orchestrator.verify(verify_request("123456", ctx))
        orchestrator.verify(verify_request("123456", ctx))
        result = orchestrator.verify(verify_request("123456", ctx))
        
        assert result.reason == Reason.RATE_LIMITED
        assert result.retry_after_ms > 0
    
    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456", "١٢٣٤٥٦"])
    def test_malformed_code(self, orchestrator, ctx, code):
        orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        result = orchestrator.verify(verify_request(code, ctx))
        
        assert result.reason == Reason.VALIDATION
        assert orchestrator.status(SUBJECT).attempts_remaining == 5
    
    def test_storage_error_is_generic(self, dev_config, ctx, clock):
        store = MagicMock(spec=InMemoryChallengeStore)
        store.record_attempt.side_effect = StorageError("cache down")
        orchestrator = ChallengeOrchestrator(dev_config, challenges=store, clock=clock)
        
        result = orchestrator.verify(verify_request("123456", ctx))
        
        assert result.reason == Reason.INTERNAL_ERROR
    
    def test_custom_session_minter(self, dev_config, ctx, clock):
        proof = ProofToken("s3cret", clock=clock)
        orchestrator = ChallengeOrchestrator(dev_config, mint_session=proof.mint, clock=clock)
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        
        result = orchestrator.verify(verify_request(code, ctx))
        
        payload = proof.verify(result.session_seed)
        assert payload is not None
        assert proof.matches(payload, SUBJECT)
    
    def test_session_minted_from_configured_secret(self, ctx, clock):
        config = OTPGuardConfig(environment="development", session_secret="s3cret")
        orchestrator = ChallengeOrchestrator(config, clock=clock)
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        
        result = orchestrator.verify(verify_request(code, ctx))
        
        proof = ProofToken("s3cret", clock=clock)
        assert proof.matches(proof.verify(result.session_seed), SUBJECT)
    
    def test_concurrent_guesses_share_the_budget(self, clock, ctx):
        """Racing verifications cannot compare more codes than max_attempts."""
        config = OTPGuardConfig(environment="development", max_attempts=2, suspicion_threshold=50)
        orchestrator = ChallengeOrchestrator(config, clock=clock)
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        compared = []
        lock = threading.Lock()
        real_matches = orchestrator._matches
        
        def counting_matches(challenge, submitted, now):
            with lock:
                compared.append(submitted)
            return real_matches(challenge, submitted, now)
        
        barrier = threading.Barrier(8)
        results = []
        
        def worker():
            barrier.wait()
            result = orchestrator.verify(verify_request(wrong_code(code), ctx))
            with lock:
                results.append(result.reason)
        
        with patch.object(orchestrator, "_matches", side_effect=counting_matches):
            threads = [threading.Thread(target=worker) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        
        assert len(compared) == 2
        assert results.count(Reason.INVALID) == 2
        assert Reason.VERIFIED not in results
        assert orchestrator.verify(verify_request(code, ctx)).ok is False
    
    def test_first_verification_releases_backup_codes(self, orchestrator, ctx):
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        first = orchestrator.verify(verify_request(code, ctx))
        
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        second = orchestrator.verify(verify_request(code, ctx))
        
        assert len(first.backup_codes) == 10
        assert first.to_dict()["backup_codes"] == first.backup_codes
        assert second.backup_codes is None
        assert orchestrator.remaining_backup_codes(SUBJECT) == 10
    
    def test_metrics_recorded(self, orchestrator, ctx):
        labels = {"method": "sms", "outcome": "VERIFIED"}
        before = OTP_REGISTRY.get_sample_value("otp_verify_total", labels) or 0
        
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        orchestrator.verify(verify_request(code, ctx))
        
        assert OTP_REGISTRY.get_sample_value("otp_verify_total", labels) == before + 1


class TestTOTPFlow:
    """Tests for authenticator-app challenges."""
    
    SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
    
    def test_enroll_then_verify(self, orchestrator, ctx, clock):
        enrollment = orchestrator.enroll_totp(SUBJECT)
        
        assert enrollment.uri.startswith("otpauth://totp/")
        
        issued = orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx, totp_secret=enrollment.secret))
        assert issued.ok is True
        assert issued.raw_code_for_debug is None
        assert set(issued.to_dict()) == {"ok", "reason", "message", "method", "expires_at"}
        
        code = totp_at(enrollment.secret, 30, clock.now)
        assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.VERIFIED
    
    def test_requires_enrolled_secret(self, orchestrator, ctx):
        """Without an enrolled secret nothing is minted for the caller."""
        result = orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx))
        
        assert result.reason == Reason.VALIDATION
        assert orchestrator.status(SUBJECT).exists is False
    
    @pytest.mark.parametrize("secret", ["not-base32!!", "GEZDGNBV", "GEZDGNBVGY3TQOJQG", ""])
    def test_malformed_secret_rejected(self, orchestrator, ctx, secret):
        """A bad enrolled secret is refused at issue, before any store."""
        result = orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx, totp_secret=secret))
        
        assert result.reason == Reason.VALIDATION
        assert len(orchestrator.windows) == 0
        assert orchestrator.verify(verify_request("123456", ctx)).reason == Reason.NOT_FOUND
    
    def test_secret_formatting_tolerated(self, orchestrator, ctx, clock):
        spaced = "gezd gnbv gy3t qojq gezd gnbv gy3t qojq"
        
        orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx, totp_secret=spaced))
        
        code = totp_at(self.SECRET, 30, clock.now)
        assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.VERIFIED
    
    def test_clock_drift_tolerated(self, orchestrator, ctx, clock):
        orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx, totp_secret=self.SECRET))
        
        # One step of drift is tolerated
        clock.advance(30)
        code = totp_at(self.SECRET, 30, clock.now - 30)
        assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.VERIFIED
    
    def test_totp_not_delivered(self, dev_config, ctx, clock):
        deliver = MagicMock(return_value=DeliveryOutcome.SENT)
        orchestrator = ChallengeOrchestrator(dev_config, deliver=deliver, clock=clock)
        
        orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx, totp_secret=self.SECRET))
        
        deliver.assert_not_called()
    
    def test_totp_supersedes_sms(self, orchestrator, ctx, clock):
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        orchestrator.issue(IssueRequest(SUBJECT, "totp", ctx, totp_secret=self.SECRET))
        
        assert orchestrator.status(SUBJECT).method == "totp"
        if code not in {totp_at(self.SECRET, 30, clock.now + d) for d in (-30, 0, 30)}:
            assert orchestrator.verify(verify_request(code, ctx)).reason == Reason.INVALID


def verified_backup_codes(orchestrator, ctx):
    code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
    return orchestrator.verify(verify_request(code, ctx)).backup_codes


class TestBackupCodes:
    """Tests for backup code redemption through the façade."""
    
    def test_redeem_without_challenge(self, orchestrator, ctx):
        codes = verified_backup_codes(orchestrator, ctx)
        
        result = orchestrator.verify_backup_code(verify_request(codes[0].lower(), ctx))
        
        assert result.reason == Reason.VERIFIED
        assert result.session_seed
        assert orchestrator.remaining_backup_codes(SUBJECT) == 9
    
    def test_no_codes_before_first_verification(self, orchestrator, ctx):
        orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        result = orchestrator.verify_backup_code(verify_request("A1B2C3D4", ctx))
        
        assert result.reason == Reason.INVALID
    
    def test_second_redemption_fails(self, orchestrator, ctx):
        codes = verified_backup_codes(orchestrator, ctx)
        
        assert orchestrator.verify_backup_code(verify_request(codes[0], ctx)).ok is True
        again = orchestrator.verify_backup_code(verify_request(codes[0], ctx))
        
        assert again.ok is False
        assert again.reason == Reason.INVALID
    
    def test_does_not_touch_challenge(self, orchestrator, ctx):
        codes = verified_backup_codes(orchestrator, ctx)
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        
        orchestrator.verify_backup_code(verify_request(codes[0], ctx))
        
        assert orchestrator.status(SUBJECT).exists is True
        assert orchestrator.verify(verify_request(code, ctx)).ok is True
    
    def test_malformed_backup_code(self, orchestrator, ctx):
        result = orchestrator.verify_backup_code(verify_request("not-hex!", ctx))
        
        assert result.reason == Reason.VALIDATION
    
    def test_regenerate(self, orchestrator, ctx):
        orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        
        codes = orchestrator.regenerate_backup_codes(SUBJECT)
        
        assert len(codes) == 10
        assert orchestrator.verify_backup_code(verify_request(codes[3], ctx)).ok is True


class TestDeviceTrustFlow:
    """Tests for skip-OTP on trusted devices."""
    
    def test_remember_device(self, orchestrator, ctx):
        assert orchestrator.should_challenge(SUBJECT, ctx) is True
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        
        orchestrator.verify(verify_request(code, ctx, remember_device=True))
        
        assert orchestrator.should_challenge(SUBJECT, ctx) is False
        other = RequestContext(origin_ip="198.51.100.1", user_agent="Other")
        assert orchestrator.should_challenge(SUBJECT, other) is True
    
    def test_not_trusted_without_opt_in(self, orchestrator, ctx):
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        orchestrator.verify(verify_request(code, ctx))
        
        assert orchestrator.should_challenge(SUBJECT, ctx) is True
    
    def test_revoke(self, orchestrator, ctx):
        code = orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx)).raw_code_for_debug
        orchestrator.verify(verify_request(code, ctx, remember_device=True))
        
        assert orchestrator.revoke_devices(SUBJECT) == 1
        assert orchestrator.should_challenge(SUBJECT, ctx) is True


class TestSweep:
    """Tests for the orchestrator-wide cleanup pass."""
    
    def test_sweep_counts(self, orchestrator, ctx, clock):
        orchestrator.issue(IssueRequest(SUBJECT, "sms", ctx))
        clock.advance(3601)
        
        removed = orchestrator.sweep()
        
        assert removed["challenges"] == 1
        assert removed["rate_windows"] == 2
        assert len(orchestrator.challenges) == 0
