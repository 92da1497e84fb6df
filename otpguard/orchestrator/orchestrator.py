"""
Challenge Orchestrator
======================
The façade hosts talk to: issue a challenge, verify a code, redeem a
backup code.

Per subject the state machine is NONE -> PENDING -> VERIFIED | EXPIRED |
EXHAUSTED, each returning to NONE. BLOCKED and RATE_LIMITED are refusals
decided before any challenge is looked up.
"""

import time
from typing import Callable, Dict, List, Optional

import structlog

from .. import metrics
from ..backup_codes import BackupCodeVault
from ..challenge import AttemptStatus, Challenge, ChallengeStore, InMemoryChallengeStore, OTPMethod
from ..codec import (
    ensure_secure_random,
    generate_code,
    generate_totp_secret,
    hash_code,
    provisioning_uri,
    verify_code,
    verify_totp,
)
from ..config import OTPGuardConfig
from ..device_trust import DeviceTrust, fingerprint
from ..errors import StorageError, ValidationError
from ..events import SecurityEventType, log_security_event, mask_subject
from ..fraud import FraudGuard
from ..rate_limit import InMemoryWindowStore, WindowStore
from ..session import ProofToken, random_session_seed
from ..validation import (
    normalize_subject,
    validate_backup_code,
    validate_code,
    validate_totp_secret,
)
from .models import (
    ChallengeStatus,
    DeliveryOutcome,
    IssueRequest,
    IssueResult,
    Reason,
    RequestContext,
    TOTPEnrollment,
    VerifyRequest,
    VerifyResult,
)

logger = structlog.get_logger(__name__)

DeliverCallback = Callable[[str, OTPMethod, str], DeliveryOutcome]
SessionMinter = Callable[[str], str]

UNKNOWN_ORIGIN = "unknown"


def request_key(identifier: str) -> str:
    return f"otp-request:{identifier}"


def verify_key(identifier: str) -> str:
    return f"otp-verify:{identifier}"


class ChallengeOrchestrator:
    """
    Issues and verifies challenges on top of the injected stores.

    Example:
        orchestrator = ChallengeOrchestrator(OTPGuardConfig.from_env(), deliver=send_sms)

        result = orchestrator.issue(IssueRequest("+15551234567", "sms", ctx))
        ...
        result = orchestrator.verify(VerifyRequest("+15551234567", code, ip, ua))
        if result.ok:
            start_session(result.session_seed)
    """

    def __init__(
        self,
        config: Optional[OTPGuardConfig] = None,
        challenges: Optional[ChallengeStore] = None,
        windows: Optional[WindowStore] = None,
        fraud: Optional[FraudGuard] = None,
        devices: Optional[DeviceTrust] = None,
        backup_codes: Optional[BackupCodeVault] = None,
        deliver: Optional[DeliverCallback] = None,
        mint_session: Optional[SessionMinter] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            config: Tunables (defaults to OTPGuardConfig())
            challenges: Challenge repository
            windows: Rate limit window store
            fraud: Fraud guard
            devices: Trusted device registry
            backup_codes: Backup code vault
            deliver: Host callback that sends a rendered code
            mint_session: Host callback producing the session seed
                (defaults to a ProofToken when `config.session_secret` is set)
            clock: Time source (seconds)

        Raises:
            SecureRandomUnavailable: If the OS random source is unusable
        """
        ensure_secure_random()

        self.config = config if config is not None else OTPGuardConfig()
        cfg = self.config
        self._clock = clock
        # Injected stores may be empty (and so falsy); compare against None
        self.challenges = (
            challenges if challenges is not None
            else InMemoryChallengeStore(clock=clock)
        )
        self.windows = windows if windows is not None else InMemoryWindowStore(clock=clock)
        self.fraud = fraud if fraud is not None else FraudGuard(
            suspicion_threshold=cfg.suspicion_threshold,
            block_duration=cfg.block_duration_seconds,
            origin_threshold=cfg.origin_suspicion_threshold,
            retention=cfg.fraud_retention_seconds,
            clock=clock,
        )
        self.devices = devices if devices is not None else DeviceTrust(
            trust_seconds=cfg.device_trust_seconds,
            clock=clock,
        )
        self.backup_codes = backup_codes if backup_codes is not None else BackupCodeVault(
            count=cfg.backup_code_count,
            length=cfg.backup_code_length,
            clock=clock,
        )
        self._deliver = deliver
        if mint_session is None:
            if cfg.session_secret:
                mint_session = ProofToken(cfg.session_secret, clock=clock).mint
            else:
                mint_session = random_session_seed
        self._mint_session = mint_session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def fingerprint(self, context: RequestContext) -> str:
        return fingerprint(
            context.user_agent,
            context.origin_ip,
            context.accept_language,
            ua_prefix=self.config.fingerprint_ua_prefix,
        )

    def _issue_result(self, method: str, result: IssueResult, subject: Optional[str] = None) -> IssueResult:
        metrics.record_issue(method, result.reason.value)
        if result.reason is Reason.RATE_LIMITED:
            log_security_event(
                SecurityEventType.RATE_LIMITED,
                subject,
                operation="issue",
                retry_after_ms=result.retry_after_ms,
            )
        return result

    def _verify_result(
        self,
        method: str,
        result: VerifyResult,
        subject: Optional[str] = None,
    ) -> VerifyResult:
        metrics.record_verify(method, result.reason.value)
        if result.reason is Reason.VERIFIED:
            log_security_event(SecurityEventType.OTP_VERIFIED, subject, method=method)
        elif result.reason is Reason.BLOCKED:
            log_security_event(SecurityEventType.BLOCKED, subject, method=method)
        elif result.reason is Reason.RATE_LIMITED:
            log_security_event(SecurityEventType.RATE_LIMITED, subject, operation="verify")
        elif result.reason is not Reason.VALIDATION:
            log_security_event(
                SecurityEventType.OTP_FAILED,
                subject,
                method=method,
                reason=result.reason.value,
                attempts_remaining=result.attempts_remaining,
            )
        return result

    def _matches(self, challenge: Challenge, code: str, now: float) -> bool:
        cfg = self.config
        if challenge.method is OTPMethod.TOTP:
            if not challenge.totp_secret:
                return False
            return verify_totp(
                code,
                challenge.totp_secret,
                step=cfg.totp_step_seconds,
                at=now,
                digits=cfg.totp_digits,
                skew=cfg.totp_skew_steps,
            )
        if not challenge.code_hash:
            return False
        return verify_code(code, challenge.code_hash)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, request: IssueRequest) -> IssueResult:
        """
        Issue a challenge, superseding any earlier one for the subject.

        TOTP challenges need the subject's enrolled secret, looked up by
        the host (see `enroll_totp`); nothing secret is returned.

        Args:
            request: Subject, method and delivery context

        Returns:
            IssueResult tagged with ISSUED, VALIDATION, RATE_LIMITED,
            DELIVERY_FAILED or INTERNAL_ERROR
        """
        try:
            method = OTPMethod(request.method)
        except ValueError:
            log_security_event(SecurityEventType.INVALID_INPUT, None, field="method")
            return self._issue_result("unknown", IssueResult(ok=False, reason=Reason.VALIDATION))

        try:
            subject = normalize_subject(request.subject)
            totp_secret = None
            if method is OTPMethod.TOTP:
                if request.totp_secret is None:
                    raise ValidationError("totp_secret", "no authenticator is enrolled")
                totp_secret = validate_totp_secret(request.totp_secret)
        except ValidationError as e:
            log_security_event(SecurityEventType.INVALID_INPUT, None, field=e.field)
            return self._issue_result(
                method.value,
                IssueResult(ok=False, reason=Reason.VALIDATION, method=method.value),
            )

        try:
            return self._issue_result(
                method.value,
                self._issue(subject, method, request.delivery_context, totp_secret),
                subject,
            )
        except StorageError:
            logger.exception("issue_storage_error", subject=mask_subject(subject))
            return self._issue_result(
                method.value,
                IssueResult(ok=False, reason=Reason.INTERNAL_ERROR, method=method.value),
            )

    def _issue(
        self,
        subject: str,
        method: OTPMethod,
        context: RequestContext,
        totp_secret: Optional[str],
    ) -> IssueResult:
        cfg = self.config
        origin = context.origin_ip or UNKNOWN_ORIGIN

        for key, limit, window in (
            (request_key(subject), cfg.request_limit, cfg.request_window_seconds),
            (request_key(origin), cfg.origin_request_limit, cfg.origin_request_window_seconds),
        ):
            info = self.windows.check(key, limit, window)
            if not info.allowed:
                return IssueResult(
                    ok=False,
                    reason=Reason.RATE_LIMITED,
                    method=method.value,
                    retry_after_ms=info.retry_after_ms,
                )

        expires_at = self._clock() + cfg.challenge_ttl_seconds
        code = None

        if method.is_delivered:
            code = generate_code(cfg.code_length)
            challenge = self.challenges.issue(subject, method, hash_code(code), expires_at)
        else:
            challenge = self.challenges.issue(
                subject, method, None, expires_at, totp_secret=totp_secret
            )

        if method.is_delivered:
            if self._deliver is None:
                logger.warning("no_delivery_callback", method=method.value)
            elif not self._delivered(subject, method, code):
                self.challenges.consume(subject, challenge.id)
                log_security_event(
                    SecurityEventType.OTP_CANCELLED,
                    subject,
                    method=method.value,
                    cause="delivery_failed",
                )
                return IssueResult(ok=False, reason=Reason.DELIVERY_FAILED, method=method.value)

        log_security_event(
            SecurityEventType.OTP_GENERATED,
            subject,
            method=method.value,
            expires_at=expires_at,
        )

        return IssueResult(
            ok=True,
            reason=Reason.ISSUED,
            method=method.value,
            expires_at=challenge.expires_at,
            raw_code_for_debug=code if cfg.expose_debug_code else None,
        )

    def _delivered(self, subject: str, method: OTPMethod, code: str) -> bool:
        try:
            outcome = self._deliver(subject, method, code)
        except Exception:
            # Host transport errors end this issuance, not the process
            logger.exception("delivery_error", subject=mask_subject(subject), method=method.value)
            return False
        return DeliveryOutcome(outcome) is DeliveryOutcome.SENT

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, request: VerifyRequest) -> VerifyResult:
        """
        Verify a submitted code against the subject's challenge.

        The first successful verification for a subject also carries its
        newly minted backup codes.

        Args:
            request: Subject, code and request metadata

        Returns:
            VerifyResult tagged with VERIFIED, INVALID, NOT_FOUND, EXPIRED,
            EXHAUSTED, BLOCKED, RATE_LIMITED, VALIDATION or INTERNAL_ERROR
        """
        cfg = self.config
        try:
            subject = normalize_subject(request.subject)
            code = validate_code(request.code, {cfg.code_length, cfg.totp_digits})
        except ValidationError as e:
            log_security_event(SecurityEventType.INVALID_INPUT, None, field=e.field)
            return self._verify_result("unknown", VerifyResult(ok=False, reason=Reason.VALIDATION))

        try:
            method, result = self._verify(subject, code, request)
        except StorageError:
            logger.exception("verify_storage_error", subject=mask_subject(subject))
            method, result = "unknown", VerifyResult(ok=False, reason=Reason.INTERNAL_ERROR)
        return self._verify_result(method, result, subject)

    def _gate(self, subject: str, origin: str, device: str) -> Optional[VerifyResult]:
        """Fraud and rate decisions made before any challenge lookup."""
        cfg = self.config
        if self.fraud.evaluate(subject, origin, device).blocked:
            return VerifyResult(ok=False, reason=Reason.BLOCKED)
        if self.fraud.evaluate_origin(origin).blocked:
            return VerifyResult(ok=False, reason=Reason.BLOCKED)

        info = self.windows.check(
            verify_key(origin),
            cfg.verify_origin_limit,
            cfg.verify_origin_window_seconds,
        )
        if not info.allowed:
            return VerifyResult(
                ok=False,
                reason=Reason.RATE_LIMITED,
                retry_after_ms=info.retry_after_ms,
            )
        return None

    def _verify(self, subject: str, code: str, request: VerifyRequest):
        cfg = self.config
        origin = request.origin_ip or UNKNOWN_ORIGIN
        device = self.fingerprint(request.context)

        refusal = self._gate(subject, origin, device)
        if refusal is not None:
            return "unknown", refusal

        # Budget check and increment happen in one store operation
        attempt = self.challenges.record_attempt(subject, cfg.max_attempts)
        if attempt.status is AttemptStatus.NOT_FOUND:
            if self.challenges.take_exhaustion(subject):
                return "unknown", VerifyResult(ok=False, reason=Reason.EXHAUSTED)
            return "unknown", VerifyResult(ok=False, reason=Reason.NOT_FOUND)

        attempted = attempt.challenge
        method = attempted.method.value
        if attempt.status is AttemptStatus.EXPIRED:
            return method, VerifyResult(ok=False, reason=Reason.EXPIRED)
        if attempt.status is AttemptStatus.EXHAUSTED:
            return method, VerifyResult(ok=False, reason=Reason.EXHAUSTED)

        if self._matches(attempted, code, self._clock()):
            if self.challenges.consume(subject, attempted.id) is None:
                # A concurrent verification or re-issue got there first
                return method, VerifyResult(ok=False, reason=Reason.NOT_FOUND)

            self.fraud.clear(subject, origin, device)
            self.windows.reset(request_key(subject))
            if request.remember_device:
                self.devices.trust(subject, device)
            return method, VerifyResult(
                ok=True,
                reason=Reason.VERIFIED,
                session_seed=self._mint_session(subject),
                backup_codes=self.backup_codes.ensure_codes(subject),
            )

        self.fraud.record_failure(subject, origin, device)
        remaining = attempted.attempts_remaining(cfg.max_attempts)
        if remaining == 0:
            self.challenges.consume(subject, attempted.id, exhausted=True)
        return method, VerifyResult(
            ok=False,
            reason=Reason.INVALID,
            attempts_remaining=remaining,
        )

    def verify_backup_code(self, request: VerifyRequest) -> VerifyResult:
        """
        Redeem a backup code in place of a live challenge.

        Independent of the challenge state machine: no challenge is
        required or consumed.
        """
        cfg = self.config
        try:
            subject = normalize_subject(request.subject)
            code = validate_backup_code(request.code, cfg.backup_code_length)
        except ValidationError as e:
            log_security_event(SecurityEventType.INVALID_INPUT, None, field=e.field)
            metrics.record_backup_code(Reason.VALIDATION.value)
            return VerifyResult(ok=False, reason=Reason.VALIDATION)

        origin = request.origin_ip or UNKNOWN_ORIGIN
        device = self.fingerprint(request.context)
        try:
            result = self._gate(subject, origin, device)
            if result is None:
                if self.backup_codes.redeem(subject, code):
                    self.fraud.clear(subject, origin, device)
                    if request.remember_device:
                        self.devices.trust(subject, device)
                    result = VerifyResult(
                        ok=True,
                        reason=Reason.VERIFIED,
                        session_seed=self._mint_session(subject),
                    )
                else:
                    self.fraud.record_failure(subject, origin, device)
                    result = VerifyResult(ok=False, reason=Reason.INVALID)
        except StorageError:
            logger.exception("backup_code_storage_error", subject=mask_subject(subject))
            result = VerifyResult(ok=False, reason=Reason.INTERNAL_ERROR)

        metrics.record_backup_code(result.reason.value)
        if not result.ok:
            log_security_event(
                SecurityEventType.OTP_FAILED,
                subject,
                method="backup_code",
                reason=result.reason.value,
            )
        return result

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def status(self, subject: str) -> ChallengeStatus:
        """Report a subject's challenge without counting an attempt."""
        subject = normalize_subject(subject)
        challenge = self.challenges.get(subject)
        if challenge is None or challenge.is_expired(self._clock()):
            return ChallengeStatus(exists=False)
        return ChallengeStatus(
            exists=True,
            method=challenge.method.value,
            attempts_remaining=challenge.attempts_remaining(self.config.max_attempts),
            expires_at=challenge.expires_at,
        )

    def cancel(self, subject: str) -> bool:
        """
        Drop the subject's challenge, e.g. when the host's delivery failed.

        Returns:
            True if a challenge was live
        """
        subject = normalize_subject(subject)
        cancelled = self.challenges.consume(subject) is not None
        if cancelled:
            log_security_event(SecurityEventType.OTP_CANCELLED, subject)
        return cancelled

    def should_challenge(self, subject: str, context: RequestContext) -> bool:
        """False when the device is trusted and the challenge may be skipped."""
        subject = normalize_subject(subject)
        return not self.devices.is_trusted(subject, self.fingerprint(context))

    def revoke_devices(self, subject: str) -> int:
        return self.devices.revoke_all(normalize_subject(subject))

    def regenerate_backup_codes(self, subject: str) -> List[str]:
        return self.backup_codes.regenerate(normalize_subject(subject))

    def remaining_backup_codes(self, subject: str) -> int:
        return self.backup_codes.remaining(normalize_subject(subject))

    def enroll_totp(self, subject: str) -> TOTPEnrollment:
        """
        Mint an authenticator secret for a subject.

        Host-only: call it from an already verified session and store the
        secret yourself; pass it back as `IssueRequest.totp_secret`.

        Returns:
            TOTPEnrollment with the base32 secret and otpauth:// URI
        """
        subject = normalize_subject(subject)
        cfg = self.config
        secret = generate_totp_secret()
        log_security_event(SecurityEventType.TOTP_ENROLLED, subject)
        return TOTPEnrollment(
            secret=secret,
            uri=provisioning_uri(
                secret,
                subject,
                cfg.totp_issuer,
                step=cfg.totp_step_seconds,
                digits=cfg.totp_digits,
            ),
        )

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        Run one cleanup pass over every store.

        Returns:
            Entries removed per store
        """
        now = self._clock() if now is None else now
        removed = {
            "challenges": self.challenges.sweep(now),
            "rate_windows": self.windows.sweep(now),
            "fraud_records": self.fraud.sweep(now),
            "trusted_devices": self.devices.sweep(now),
        }
        for name, store in (
            ("challenges", self.challenges),
            ("rate_windows", self.windows),
            ("fraud_records", self.fraud),
            ("trusted_devices", self.devices),
        ):
            if hasattr(store, "__len__"):
                metrics.set_store_entries(name, len(store))
        return removed
