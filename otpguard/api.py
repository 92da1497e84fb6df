"""
HTTP Binding
============
FastAPI router exposing the orchestrator's request/response contract.

Usage:
    app.include_router(create_otp_router(orchestrator), prefix="/auth")
"""

from typing import Callable, FrozenSet, Iterable, Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from .challenge import OTPMethod
from .errors import ValidationError
from .orchestrator import (
    ChallengeOrchestrator,
    IssueRequest,
    Reason,
    RequestContext,
    VerifyRequest,
)
from .validation import normalize_subject

STATUS_CODES = {
    Reason.ISSUED: 200,
    Reason.VERIFIED: 200,
    Reason.VALIDATION: 400,
    Reason.INVALID: 401,
    Reason.NOT_FOUND: 401,
    Reason.EXPIRED: 401,
    Reason.EXHAUSTED: 401,
    Reason.BLOCKED: 403,
    Reason.RATE_LIMITED: 429,
    Reason.DELIVERY_FAILED: 502,
    Reason.INTERNAL_ERROR: 503,
}


class SendCodeBody(BaseModel):
    subject: str
    method: OTPMethod = OTPMethod.SMS


class VerifyCodeBody(BaseModel):
    subject: str
    code: str
    remember_device: bool = False


def _client_ip(request: Request, trusted_proxies: FrozenSet[str]) -> str:
    """Peer address, or the first X-Forwarded-For hop behind a trusted proxy."""
    peer = request.client.host if request.client else ""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and peer in trusted_proxies:
        return forwarded.split(",")[0].strip()
    return peer


def _context(request: Request, trusted_proxies: FrozenSet[str]) -> RequestContext:
    return RequestContext(
        origin_ip=_client_ip(request, trusted_proxies),
        user_agent=request.headers.get("user-agent", ""),
        accept_language=request.headers.get("accept-language", ""),
    )


def _apply(response: Response, reason: Reason, retry_after_ms: Optional[int]) -> None:
    response.status_code = STATUS_CODES[reason]
    if retry_after_ms:
        response.headers["Retry-After"] = str(-(-retry_after_ms // 1000))


def create_otp_router(
    orchestrator: ChallengeOrchestrator,
    totp_secrets: Optional[Callable[[str], Optional[str]]] = None,
    trusted_proxies: Optional[Iterable[str]] = None,
) -> APIRouter:
    """
    Build the OTP router.
    
    TOTP enrollment is not exposed here; hosts call
    `orchestrator.enroll_totp()` behind their own authenticated session.
    
    Args:
        orchestrator: Configured ChallengeOrchestrator
        totp_secrets: Looks up a subject's enrolled authenticator secret
            (normalized subject in, base32 secret or None out)
        trusted_proxies: Peer IPs whose X-Forwarded-For is honoured
            (defaults to `config.trusted_proxy_ips`)
        
    Returns:
        APIRouter with /otp/send, /otp/verify, /otp/backup/verify, /otp/status
    """
    router = APIRouter(prefix="/otp", tags=["otp"])
    proxies = frozenset(
        trusted_proxies if trusted_proxies is not None
        else orchestrator.config.trusted_proxy_ips
    )
    
    def _enrolled_secret(subject: str) -> Optional[str]:
        if totp_secrets is None:
            return None
        try:
            return totp_secrets(normalize_subject(subject))
        except ValidationError:
            # issue() rejects the subject itself
            return None
    
    @router.post("/send")
    async def send_code(body: SendCodeBody, request: Request, response: Response):
        secret = _enrolled_secret(body.subject) if body.method is OTPMethod.TOTP else None
        result = orchestrator.issue(IssueRequest(
            subject=body.subject,
            method=body.method,
            delivery_context=_context(request, proxies),
            totp_secret=secret,
        ))
        _apply(response, result.reason, result.retry_after_ms)
        return result.to_dict()
    
    def _verify_request(body: VerifyCodeBody, request: Request) -> VerifyRequest:
        context = _context(request, proxies)
        return VerifyRequest(
            subject=body.subject,
            code=body.code,
            origin_ip=context.origin_ip,
            user_agent=context.user_agent,
            accept_language=context.accept_language,
            remember_device=body.remember_device,
        )
    
    @router.post("/verify")
    async def verify_code(body: VerifyCodeBody, request: Request, response: Response):
        result = orchestrator.verify(_verify_request(body, request))
        _apply(response, result.reason, result.retry_after_ms)
        return result.to_dict()
    
    @router.post("/backup/verify")
    async def verify_backup_code(body: VerifyCodeBody, request: Request, response: Response):
        result = orchestrator.verify_backup_code(_verify_request(body, request))
        _apply(response, result.reason, result.retry_after_ms)
        return result.to_dict()
    
    @router.get("/status")
    async def challenge_status(subject: str, response: Response):
        try:
            status = orchestrator.status(subject)
        except ValidationError:
            response.status_code = 400
            return {"ok": False, "reason": Reason.VALIDATION.value}
        return status.to_dict()
    
    return router
