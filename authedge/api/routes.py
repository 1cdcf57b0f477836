from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from authedge.api.schemas import (
    CodeRequest,
    EmailVerifyRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    SessionInfo,
)
from authedge.service.gate import AuthContext
from authedge.service.runtime import get_runtime
from authedge.storage.models import Session

router = APIRouter(prefix="/v1")


def get_auth(request: Request) -> AuthContext:
    """Identity bound by the session gate middleware; 401 when there is none."""
    ctx: Optional[AuthContext] = getattr(request.state, "auth", None)
    if ctx is None:
        raise HTTPException(status_code=401, detail="authentication required")
    return ctx


def _apply_session_cookie(response: Response, session: Session) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.session_cookie_name,
        session.session_id or "",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        expires=session.hard_expiration,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        samesite="lax",
    )


@router.post("/auth/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    _, session = await runtime.auth.authenticate(
        body.email,
        body.password,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        presented_session_id=getattr(request.state, "session_id", None),
    )
    payload = LoginResponse(
        account_id=str(session.account_id),
        session_expires_at=session.expires_at,
        session_hard_expiration=session.hard_expiration,
    )
    if body.device_type == "mobile":
        payload.session_id = session.session_id
    else:
        _apply_session_cookie(response, session)
    return Envelope(status="ok", data=payload)


@router.post("/auth/logout", response_model=Envelope)
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(get_auth),
):
    runtime = get_runtime()
    all_devices = body.all_devices if body else False
    removed = await runtime.sessions.logout(ctx.session_id or "", all_devices=all_devices)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"sessions_revoked": removed})


@router.get("/auth/me", response_model=Envelope)
async def me(ctx: AuthContext = Depends(get_auth)):
    account = await get_runtime().accounts.get(ctx.account_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            account_id=str(ctx.account_id),
            email=account.email if account else None,
            email_verified=account.email_verified if account else False,
            authorities=list(ctx.authorities),
        ),
    )


@router.get("/auth/sessions", response_model=Envelope)
async def list_sessions(ctx: AuthContext = Depends(get_auth)):
    sessions = await get_runtime().sessions.list_sessions(ctx.account_id)
    return Envelope(
        status="ok",
        data=[
            SessionInfo(
                created_at=s.created_at,
                expires_at=s.expires_at,
                hard_expiration=s.hard_expiration,
                ip=s.ip,
                user_agent=s.user_agent,
                current=s.session_hash == ctx.session_hash,
            )
            for s in sessions
        ],
    )


@router.post("/auth/codes", response_model=Envelope, status_code=202)
async def request_code(body: CodeRequest):
    runtime = get_runtime()
    # Unknown addresses are throttled the same way but never receive a code
    account = await runtime.accounts.get_by_email(body.email)
    await runtime.codes.issue(body.purpose, body.email, deliver=account is not None)
    return Envelope(status="ok", data={"message": "if the account exists, a code was sent"})


@router.post("/auth/email/verify", response_model=Envelope)
async def verify_email(body: EmailVerifyRequest):
    await get_runtime().auth.verify_email(body.email, body.code)
    return Envelope(status="ok", data={"status": "verified"})


@router.post("/auth/password/reset", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm, response: Response):
    removed = await get_runtime().auth.reset_password(body.email, body.code, body.new_password)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"status": "reset", "sessions_revoked": removed})


@router.post("/auth/password/change", response_model=Envelope)
async def change_password(body: PasswordChangeRequest, ctx: AuthContext = Depends(get_auth)):
    removed = await get_runtime().auth.change_password(
        ctx.account_id,
        body.current_password,
        body.new_password,
        keep_session_hash=ctx.session_hash,
    )
    return Envelope(status="ok", data={"status": "changed", "sessions_revoked": removed})


@router.delete("/account", response_model=Envelope)
async def delete_account(response: Response, ctx: AuthContext = Depends(get_auth)):
    removed = await get_runtime().auth.delete_account(ctx.account_id)
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"sessions_revoked": removed})
