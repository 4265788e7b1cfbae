from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from portalauth.api.deps import (
    REFRESH_COOKIE,
    bearer_token,
    clear_session_cookies,
    client_ip,
    enforce_rate_limit,
    get_principal,
    get_runtime,
    require_roles,
    set_session_cookies,
)
from portalauth.api.error_handling import error_response
from portalauth.api.schemas import (
    AccountStatusRequest,
    EmailOnlyRequest,
    Envelope,
    MessageResponse,
    PasswordResetConfirm,
    PrincipalResponse,
    RefreshResponse,
    SignInRequest,
    SignInResponse,
    SignupRequest,
    SignupResponse,
    VerifyEmailRequest,
)
from portalauth.logging import get_logger
from portalauth.service.runtime import Runtime
from portalauth.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """Register a job seeker or employer and email them a verification code.

    Raises:
        409: If the email is already registered
        429: If the rate limit is exceeded
    """
    await enforce_rate_limit(runtime, "signup", client_ip(request), body.email)
    result = (
        await runtime.auth.signup(body.name, body.email, body.password, body.role)
    ).unwrap()
    return Envelope(
        status="ok",
        data=SignupResponse(
            user_id=result.user_id,
            name=result.name,
            email=result.email,
            role=result.role,
            verified=result.verified,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: VerifyEmailRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Confirm the 6-digit code sent at signup.

    Raises:
        400: If the code is wrong or expired
        429: If the code has been locked after repeated failures
    """
    await enforce_rate_limit(runtime, "verify", client_ip(request), body.email)
    principal = (await runtime.auth.verify_email(body.email, body.otp)).unwrap()
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailOnlyRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await enforce_rate_limit(runtime, "resend", client_ip(request), body.email)
    message = (await runtime.auth.resend_verification(body.email)).unwrap()
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(
    body: SignInRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password and set the session cookies.

    Unverified principals still receive tokens; ``verified`` tells the client
    to route them to email verification.

    Raises:
        401: If the credentials are invalid
        403: If the account is suspended or deactivated
        429: If the account is locked or the rate limit is exceeded
    """
    await enforce_rate_limit(runtime, "signin", client_ip(request), body.email)
    result = (await runtime.auth.sign_in(body.email, body.password)).unwrap()
    if result.tokens is not None:
        set_session_cookies(response, result.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=SignInResponse(
            user=PrincipalResponse.from_principal(result.principal),
            verified=result.verified,
            session_established=result.session_established,
            access_token=result.tokens.access_token if result.tokens else None,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response, runtime: Runtime = Depends(get_runtime)):
    """Rotate the refresh cookie. Any failure clears both cookies."""
    refreshed = await runtime.auth.refresh_access_token(request.cookies.get(REFRESH_COOKIE))
    if refreshed is None:
        failure = error_response(401, "session expired, please sign in again")
        clear_session_cookies(failure, runtime.settings)
        return failure
    set_session_cookies(response, refreshed.tokens, runtime.settings)
    return Envelope(
        status="ok", data=RefreshResponse(access_token=refreshed.tokens.access_token)
    )


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(request: Request, response: Response, runtime: Runtime = Depends(get_runtime)):
    """Drop the server-side session, if one can be identified, and clear cookies."""
    user_id = runtime.auth.subject_of(bearer_token(request)) or runtime.auth.subject_of(
        request.cookies.get(REFRESH_COOKIE)
    )
    if user_id:
        await runtime.auth.sign_out(user_id)
    else:
        logger.info("signout_without_session")
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="signed out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: EmailOnlyRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await enforce_rate_limit(runtime, "reset", client_ip(request), body.email)
    message = (await runtime.auth.request_password_reset(body.email)).unwrap()
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    body: PasswordResetConfirm,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Set a new password from a reset link; existing sessions end."""
    await enforce_rate_limit(runtime, "reset", client_ip(request))
    (await runtime.auth.reset_password(body.token, body.new_password)).unwrap()
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/admin/principals/{principal_id}/status", response_model=Envelope, tags=["admin"])
async def set_principal_status(
    principal_id: str,
    body: AccountStatusRequest,
    admin: Principal = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    principal = (await runtime.auth.set_account_status(principal_id, body.status)).unwrap()
    logger.info(
        "admin_status_change", admin_id=admin.id, user_id=principal_id, status=body.status
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/admin/principals/{principal_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_principal(
    principal_id: str,
    admin: Principal = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    principal = (await runtime.auth.unlock_account(principal_id)).unwrap()
    logger.info("admin_unlock", admin_id=admin.id, user_id=principal_id)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))
