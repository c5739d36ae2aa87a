from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from warden.api.schemas import (
    AccountResponse,
    AdminCreateUserRequest,
    AdminResetPasswordRequest,
    AdminUpdateUserRequest,
    ForgotPasswordRequest,
    LoginRequest,
    PaginationResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    RoleName,
    VerifyOtpRequest,
    envelope,
)
from warden.config import Settings
from warden.service import roles
from warden.service.errors import RateLimitedError
from warden.service.rate_limits import RateLimitDecision, RateLimitPolicy
from warden.service.runtime import Runtime, get_runtime
from warden.service.sessions import TokenPair
from warden.storage.models import Account

router = APIRouter(prefix="/api")

REFRESH_COOKIE = "refreshToken"
ACCESS_COOKIE = "token"


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime,
    policy: RateLimitPolicy,
    subject: str,
    *,
    response: Optional[Response] = None,
) -> Optional[RateLimitDecision]:
    """Spend one request from the caller's budget and apply the limit headers.

    Raises:
        RateLimitedError: the budget for ``subject`` is used up.
    """
    decision = await runtime.rate_limiter.hit(policy, subject)
    if decision is None:
        return None
    if response is not None:
        decision.apply_headers(response)
    if not decision.allowed:
        raise RateLimitedError(policy.message, detail={"retryAfter": decision.retry_after})
    return decision


def _bearer_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return cookie_token or None


async def get_current_account(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Account:
    runtime = get_runtime()
    return await runtime.sessions.authenticate(_bearer_token(authorization, token))


def require_roles(*allowed: str) -> Callable:
    """Dependency factory: the caller must hold one of ``allowed``."""

    async def _dependency(account: Account = Depends(get_current_account)) -> Account:
        return roles.require_role(account, allowed)

    return _dependency


get_admin_account = require_roles(*roles.ADMIN_ROLES)


def _apply_refresh_cookie(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE, path="/", secure=settings.is_production, httponly=True, samesite="lax"
    )


def _session_payload(account: Account, tokens: TokenPair) -> dict:
    return {"token": tokens.access_token, "user": AccountResponse.render(account)}


# Auth ----------------------------------------------------------------------


@router.post("/auth/register", status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a pending account and send its activation email.

    Raises:
        400: validation failure or username/email already taken
    """
    runtime = get_runtime()
    await runtime.accounts.register(
        username=body.username, email=body.email, password=body.password
    )
    return envelope(
        "Registration successful. Please check your email to activate your account."
    )


@router.get("/auth/activate/{token}", tags=["auth"])
async def activate(token: str, response: Response):
    """Consume an activation token and sign the new account in.

    Raises:
        400: unknown, used, or expired token
    """
    runtime = get_runtime()
    account, tokens = await runtime.accounts.activate(token)
    _apply_refresh_cookie(response, tokens, runtime.settings)
    return envelope("Account activated successfully", **_session_payload(account, tokens))


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Password login, optionally followed by an emailed OTP.

    Raises:
        401: invalid credentials, locked account, or account not activated
        429: too many login attempts from this address
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, runtime.rate_limiter.login, client_ip(request), response=response
    )
    result = await runtime.accounts.login(body.email, body.password)
    if result.otp_required:
        return envelope("OTP sent to your email", requireOtp=True, userId=result.account.id)
    _apply_refresh_cookie(response, result.tokens, runtime.settings)
    return envelope(**_session_payload(result.account, result.tokens))


@router.post("/auth/verify-otp", tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, response: Response):
    """Complete a login with the emailed one-time code.

    Raises:
        401: wrong or expired code
        404: unknown user id
    """
    runtime = get_runtime()
    account, tokens = await runtime.accounts.verify_otp(body.user_id, body.otp)
    _apply_refresh_cookie(response, tokens, runtime.settings)
    return envelope(**_session_payload(account, tokens))


@router.post("/auth/refresh-token", tags=["auth"])
async def refresh_token(
    response: Response,
    body: Optional[RefreshTokenRequest] = None,
    cookie_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token and mint a new access token.

    The refresh token is read from the ``refreshToken`` cookie, or from the
    JSON body for clients without cookie storage.

    Raises:
        401: missing, expired, or superseded refresh token
        403: account deactivated
    """
    runtime = get_runtime()
    presented = cookie_token or (body.refresh_token if body else None)
    account, tokens = await runtime.sessions.rotate(presented)
    _apply_refresh_cookie(response, tokens, runtime.settings)
    return envelope(**_session_payload(account, tokens))


@router.post("/auth/logout", tags=["auth"])
async def logout(response: Response, account: Account = Depends(get_current_account)):
    runtime = get_runtime()
    await runtime.sessions.revoke(account)
    _clear_refresh_cookie(response, runtime.settings)
    return envelope("Logged out successfully")


@router.get("/auth/me", tags=["auth"])
async def me(account: Account = Depends(get_current_account)):
    return envelope(user=AccountResponse.render(account))


@router.post("/auth/forgot-password", tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Email a reset link; the response never reveals whether the email exists.

    Raises:
        500: the reset email could not be sent
    """
    runtime = get_runtime()
    await runtime.accounts.forgot_password(body.email)
    return envelope("If your email is registered, you will receive a password reset link")


@router.api_route("/auth/reset-password/{token}", methods=["PUT", "POST"], tags=["auth"])
async def reset_password(token: str, body: ResetPasswordRequest):
    """Set a new password with a reset token.

    Raises:
        400: unknown, used, or expired token
    """
    runtime = get_runtime()
    await runtime.accounts.reset_password(token, body.password)
    return envelope("Password reset successful")


@router.post("/auth/validate-token", tags=["auth"])
async def validate_token(account: Account = Depends(get_current_account)):
    return envelope(valid=True, user=AccountResponse.render(account))


# Admin ---------------------------------------------------------------------


@router.get("/admin/users", tags=["admin"])
async def admin_list_users(
    page: Optional[int] = Query(None, ge=1),
    limit: Optional[int] = Query(None, ge=1, description="Users per page"),
    search: Optional[str] = Query(None, max_length=128),
    role: Optional[RoleName] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    actor: Account = Depends(get_admin_account),
):
    """List accounts, newest first; superadmins are hidden from plain admins."""
    runtime = get_runtime()
    result = await runtime.accounts.list_accounts(
        actor, search=search, role=role, is_active=is_active, page=page, limit=limit
    )
    pagination = PaginationResponse(
        total=result.total, pages=result.pages, current_page=result.page, limit=result.limit
    )
    return envelope(
        count=len(result.items),
        pagination=pagination.model_dump(by_alias=True),
        users=[AccountResponse.render(a) for a in result.items],
    )


@router.get("/admin/users/{user_id}", tags=["admin"])
async def admin_get_user(user_id: str, actor: Account = Depends(get_admin_account)):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(actor, user_id)
    return envelope(user=AccountResponse.render(account))


@router.post("/admin/users", status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, actor: Account = Depends(get_admin_account)
):
    """Create an account directly, optionally already active.

    Raises:
        400: validation failure or username/email already taken
        403: the caller may not grant the requested role
    """
    runtime = get_runtime()
    account = await runtime.accounts.create_account(
        actor,
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
        is_active=body.is_active,
    )
    return envelope("User created successfully", user=AccountResponse.render(account))


@router.put("/admin/users/{user_id}", tags=["admin"])
async def admin_update_user(
    user_id: str, body: AdminUpdateUserRequest, actor: Account = Depends(get_admin_account)
):
    """Edit username, email, role, or active flag.

    Raises:
        400: username/email already taken
        403: hierarchy or role-assignment violation
        404: unknown user id
    """
    runtime = get_runtime()
    account = await runtime.accounts.update_account(
        actor,
        user_id,
        username=body.username,
        email=body.email,
        role=body.role,
        is_active=body.is_active,
    )
    return envelope("User updated successfully", user=AccountResponse.render(account))


@router.delete("/admin/users/{user_id}", tags=["admin"])
async def admin_delete_user(user_id: str, actor: Account = Depends(get_admin_account)):
    """Delete an account.

    Raises:
        400: the caller targeted its own account
        403: only a superadmin may delete admins
        404: unknown user id
    """
    runtime = get_runtime()
    await runtime.accounts.delete_account(actor, user_id)
    return envelope("User deleted successfully")


@router.post("/admin/users/{user_id}/reset-password", tags=["admin"])
async def admin_reset_password(
    user_id: str,
    body: Optional[AdminResetPasswordRequest] = None,
    actor: Account = Depends(get_admin_account),
):
    runtime = get_runtime()
    result = await runtime.accounts.admin_reset_password(
        actor, user_id, body.password if body else None
    )
    message = (
        "Password reset successful"
        if result.email_sent
        else "Password reset successful but failed to send email."
    )
    payload = {"tempPassword": result.temp_password} if result.temp_password else {}
    return envelope(message, **payload)


# System --------------------------------------------------------------------


@router.get("/status", tags=["system"])
async def status():
    runtime = get_runtime()
    return envelope(
        status="operational",
        version=runtime.settings.version,
        environment=runtime.settings.environment.value,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
