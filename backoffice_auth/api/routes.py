from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from backoffice_auth.api.schemas import (
    BackupCodesResponse,
    CodeRequest,
    EmailChangeRequest,
    Envelope,
    InviteAcceptRequest,
    InviteRequest,
    InviteResponse,
    LoginAttemptResponse,
    LoginHistoryResponse,
    LoginRequest,
    LoginResponse,
    PasskeyLoginRequest,
    PasskeyOptionsRequest,
    PasskeyRegisterOptionsRequest,
    PasskeyRegisterRequest,
    PasskeyResponse,
    PasskeyVerifyRequest,
    PasswordChangeRequest,
    PasswordResetCompleteRequest,
    PasswordResetRequest,
    RevokedCountResponse,
    SessionListResponse,
    SessionResponse,
    StepUpApplyRequest,
    StepUpRequest,
    StepUpResponse,
    TotpSetupResponse,
    TwoFactorResendRequest,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from backoffice_auth.logging import bind_request_context, get_logger
from backoffice_auth.service.errors import AuthenticationError, ForbiddenError
from backoffice_auth.service.policy import EndpointCategory, bucket_for
from backoffice_auth.service.rate_limit import client_ip
from backoffice_auth.service.runtime import Runtime, get_runtime
from backoffice_auth.service.sessions import SessionFilters
from backoffice_auth.service.two_factor import parse_proof
from backoffice_auth.storage.models import (
    DeviceInfo,
    LoginAttempt,
    PasskeyCredential,
    UserSession,
)

logger = get_logger(__name__)

router = APIRouter()


def _device(request: Request) -> DeviceInfo:
    fallback = request.client.host if request.client else None
    return DeviceInfo(
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request.headers, fallback),
    )


async def _enforce(runtime: Runtime, category: EndpointCategory, identifier: str) -> None:
    await runtime.rate_limiter.enforce(bucket_for(category), identifier)


async def get_session(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> UserSession:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authentication required")
    session = runtime.sessions.resolve(token.strip())
    bind_request_context(user_id=session.user_id, session_id=session.id)
    return session


async def get_admin_session(
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
) -> UserSession:
    user = runtime.store.get_user(session.user_id)
    if not user or user.role != "admin":
        raise ForbiddenError("Admin access required")
    return session


def _session_login_response(session: UserSession) -> LoginResponse:
    return LoginResponse(
        session_id=session.id,
        session_token=session.session_token,
        expires_at=session.expires_at,
    )


def _session_to_response(session: UserSession, current_id: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        device_type=session.device_type or "unknown",
        browser=session.browser or "Unknown",
        os=session.os or "Unknown",
        ip_address=session.ip_address,
        city=session.city,
        country=session.country,
        created_at=session.created_at,
        last_activity_at=session.last_activity_at,
        expires_at=session.expires_at,
        current=session.id == current_id,
    )


def _attempt_to_response(attempt: LoginAttempt) -> LoginAttemptResponse:
    return LoginAttemptResponse(
        id=attempt.id,
        success=attempt.success,
        auth_method=attempt.auth_method,
        failure_reason=attempt.failure_reason,
        ip_address=attempt.ip_address,
        device_type=attempt.device_type,
        browser=attempt.browser,
        os=attempt.os,
        city=attempt.city,
        country=attempt.country,
        created_at=attempt.created_at,
    )


def _passkey_to_response(passkey: PasskeyCredential) -> PasskeyResponse:
    return PasskeyResponse(
        id=passkey.id,
        name=passkey.name,
        device_type=passkey.device_type,
        backed_up=passkey.backed_up,
        created_at=passkey.created_at,
        last_used_at=passkey.last_used_at,
    )


# ----------------------------------------------------------------------
# sign-in
# ----------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Password sign-in; answers with a session or a pending two-factor token.

    Raises:
        401: credentials invalid or account locked (same message either way)
        429: too many attempts for this address and IP
    """
    result = await runtime.account.login(body.email, body.password, _device(request))
    if result.requires_two_factor:
        data = LoginResponse(
            two_factor_required=True,
            pending_token=result.pending_token,
            methods=result.methods,
        )
    else:
        data = _session_login_response(result.session)
    return Envelope(status="ok", data=data)


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: TwoFactorVerifyRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    proof = parse_proof(body.method, body.code)
    session = await runtime.account.complete_two_factor_login(
        body.pending_token, proof, _device(request)
    )
    return Envelope(status="ok", data=_session_login_response(session))


@router.post("/auth/2fa/resend", response_model=Envelope, tags=["auth"])
async def resend_two_factor_code(
    body: TwoFactorResendRequest, runtime: Runtime = Depends(get_runtime)
):
    await runtime.account.resend_login_code(body.pending_token)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/passkey/options", response_model=Envelope, tags=["auth"])
async def passkey_options(
    body: PasskeyOptionsRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.LOGIN, _device(request).ip_address)
    return Envelope(
        status="ok", data=runtime.passkeys.generate_authentication_options(body.email)
    )


@router.post("/auth/passkey/verify", response_model=Envelope, tags=["auth"])
async def passkey_verify(
    body: PasskeyVerifyRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.LOGIN, _device(request).ip_address)
    result = runtime.passkeys.verify_authentication(body.response, body.purpose)
    return Envelope(status="ok", data={"passkey_token": result.token, "purpose": body.purpose})


@router.post("/auth/passkey/login", response_model=Envelope, tags=["auth"])
async def passkey_login(
    body: PasskeyLoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    session = await runtime.account.complete_passkey_login(body.passkey_token, _device(request))
    return Envelope(status="ok", data=_session_login_response(session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    runtime.account.logout(session)
    return Envelope(status="ok", data={"message": "signed out"})


# ----------------------------------------------------------------------
# step-up
# ----------------------------------------------------------------------


@router.post("/auth/step-up", response_model=Envelope, tags=["auth"])
async def step_up(
    body: StepUpRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    grant = await runtime.step_up.verify(session.user_id, body.method, body.credential)
    return Envelope(
        status="ok",
        data=StepUpResponse(
            step_up_token=grant.token,
            step_up_auth_at=grant.step_up_auth_at,
            method=grant.method,
        ),
    )


@router.post("/auth/step-up/apply", response_model=Envelope, tags=["auth"])
async def apply_step_up(
    body: StepUpApplyRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    verified_at = await runtime.step_up.apply(session.id, body.step_up_token)
    return Envelope(status="ok", data={"step_up_auth_at": verified_at.isoformat()})


# ----------------------------------------------------------------------
# passwords and email
# ----------------------------------------------------------------------


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Requires a recent step-up; signs out every other session."""
    revoked = await runtime.account.change_password(
        session, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await runtime.account.request_password_reset(body.email, _device(request).ip_address)
    # Same answer whether or not the account exists
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a reset link has been sent."},
    )


@router.post("/auth/password/reset/complete", response_model=Envelope, tags=["auth"])
async def complete_password_reset(
    body: PasswordResetCompleteRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.account.complete_password_reset(
        body.token, body.new_password, ip=_device(request).ip_address
    )
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/auth/email/change", response_model=Envelope, tags=["auth"])
async def initiate_email_change(
    body: EmailChangeRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    token = await runtime.account.initiate_email_change(session, body.new_email)
    return Envelope(status="ok", data={"expires_at": token.expires_at.isoformat()})


@router.post("/auth/email/change/verify", response_model=Envelope, tags=["auth"])
async def verify_email_change(
    body: CodeRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.account.verify_email_change(session, body.code)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


# ----------------------------------------------------------------------
# sessions
# ----------------------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    search: Optional[str] = Query(None, max_length=100),
    device_type: Optional[str] = Query(None, max_length=16),
    sort: str = Query("recent", pattern="^(recent|oldest|created)$"),
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.GENERAL, session.user_id)
    sessions = runtime.sessions.list(
        session.user_id, SessionFilters(search=search, device_type=device_type, sort=sort)
    )
    items = [_session_to_response(s, session.id) for s in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items, total=len(items)))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.account.revoke_session(session, session_id)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    revoked = runtime.account.revoke_other_sessions(session)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    revoked = runtime.account.revoke_all_sessions(session)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.get("/auth/login-history", response_model=Envelope, tags=["sessions"])
async def login_history(
    success: Optional[bool] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.GENERAL, session.user_id)
    attempts, total = runtime.login_history.history(
        session.user_id, success=success, limit=limit, offset=offset
    )
    return Envelope(
        status="ok",
        data=LoginHistoryResponse(
            items=[_attempt_to_response(a) for a in attempts],
            total=total,
            limit=limit,
            offset=offset,
        ),
    )


# ----------------------------------------------------------------------
# two-factor management
# ----------------------------------------------------------------------


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    status = runtime.two_factor.status(session.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            email_enabled=status.email_enabled,
            totp=status.totp,
            backup_codes_remaining=status.backup_codes_remaining,
            preferred_method=status.preferred_method,
            available_methods=status.available_methods,
        ),
    )


@router.post("/auth/2fa/email/enable", response_model=Envelope, tags=["2fa"])
async def start_email_two_factor(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    await runtime.two_factor.start_email_enable(session)
    return Envelope(status="ok", data={"sent": True})


@router.post("/auth/2fa/email/confirm", response_model=Envelope, tags=["2fa"])
async def confirm_email_two_factor(
    body: CodeRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    runtime.two_factor.confirm_email_enable(session, body.code)
    return Envelope(status="ok", data={"email_enabled": True})


@router.post("/auth/2fa/email/disable", response_model=Envelope, tags=["2fa"])
async def disable_email_two_factor(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    revoked = runtime.two_factor.disable_email(session)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/auth/2fa/totp/setup", response_model=Envelope, tags=["2fa"])
async def begin_totp_setup(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    setup = runtime.two_factor.begin_totp_setup(session)
    return Envelope(
        status="ok", data=TotpSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri)
    )


@router.post("/auth/2fa/totp/confirm", response_model=Envelope, tags=["2fa"])
async def confirm_totp_setup(
    body: CodeRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    codes = runtime.two_factor.confirm_totp_setup(session, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(codes=codes))


@router.post("/auth/2fa/totp/disable", response_model=Envelope, tags=["2fa"])
async def disable_totp(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    revoked = runtime.two_factor.disable_totp(session)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


@router.post("/auth/2fa/backup-codes/regenerate", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    codes = runtime.two_factor.regenerate_backup_codes(session)
    return Envelope(status="ok", data=BackupCodesResponse(codes=codes))


# ----------------------------------------------------------------------
# passkey management
# ----------------------------------------------------------------------


@router.get("/passkeys", response_model=Envelope, tags=["passkeys"])
async def list_passkeys(
    session: UserSession = Depends(get_session), runtime: Runtime = Depends(get_runtime)
):
    passkeys = runtime.passkeys.list_passkeys(session.user_id)
    return Envelope(status="ok", data=[_passkey_to_response(p) for p in passkeys])


@router.post("/passkeys/register/options", response_model=Envelope, tags=["passkeys"])
async def passkey_register_options(
    body: PasskeyRegisterOptionsRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    return Envelope(status="ok", data=runtime.account.register_passkey_options(session, body.name))


@router.post("/passkeys/register", response_model=Envelope, status_code=201, tags=["passkeys"])
async def passkey_register(
    body: PasskeyRegisterRequest,
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    passkey = runtime.account.register_passkey(session, body.response, body.name)
    return Envelope(status="ok", data=_passkey_to_response(passkey))


@router.delete("/passkeys/{passkey_id}", response_model=Envelope, tags=["passkeys"])
async def passkey_delete(
    passkey_id: str = Path(..., max_length=64),
    session: UserSession = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce(runtime, EndpointCategory.ACCOUNT_SECURITY, session.user_id)
    revoked = runtime.account.delete_passkey(session, passkey_id)
    return Envelope(status="ok", data=RevokedCountResponse(revoked=revoked))


# ----------------------------------------------------------------------
# invitations and admin
# ----------------------------------------------------------------------


@router.post("/admin/invites", response_model=Envelope, status_code=201, tags=["admin"])
async def invite_user(
    body: InviteRequest,
    session: UserSession = Depends(get_admin_session),
    runtime: Runtime = Depends(get_runtime),
):
    token = await runtime.account.invite_user(session.user_id, body.email, body.role_id)
    return Envelope(
        status="ok", data=InviteResponse(invite_id=token.id, expires_at=token.expires_at)
    )


@router.post("/auth/invites/accept", response_model=Envelope, tags=["auth"])
async def accept_invite(
    body: InviteAcceptRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    device = _device(request)
    await _enforce(runtime, EndpointCategory.TOKEN_CHECK, device.ip_address)
    session = await runtime.account.accept_invite(body.token, body.password, device)
    return Envelope(status="ok", data=_session_login_response(session))


@router.get("/admin/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    search: Optional[str] = Query(None, max_length=100),
    session: UserSession = Depends(get_admin_session),
    runtime: Runtime = Depends(get_runtime),
):
    sessions, total = runtime.sessions.list_all_active(
        page=page, page_size=page_size, search=search
    )
    items = [_session_to_response(s, session.id) for s in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items, total=total))
