from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Request, Response

from quickauth.api.schemas import (
    AddressInput,
    AddressPatchRequest,
    ChangePasswordRequest,
    DeactivateSelfRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    VerifyOtpRequest,
)
from quickauth.service.accounts import NewAccount
from quickauth.service.auth import AuthContext, AuthResult, ClientInfo
from quickauth.service.runtime import get_runtime

router = APIRouter(prefix="/api/auth", tags=["auth"])

SESSION_COOKIE = "token"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def get_principal(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Cookie(None),
) -> AuthContext:
    """Resolve the caller from the bearer header, falling back to the cookie."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization) or token)


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _ok(result: AuthResult) -> Envelope:
    return Envelope(status="ok", message=result.message, data=result.data or None)


def _apply_session_cookie(response: Response, result: AuthResult, *, remember_me: bool) -> None:
    token = result.data.get("token")
    if not token:
        return
    settings = get_runtime().settings
    days = (
        settings.remember_me_token_ttl_days
        if remember_me
        else settings.session_token_ttl_days
    )
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=days * 24 * 60 * 60,
        path="/",
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account, start a session and send the verification email."""
    runtime = get_runtime()
    result = await runtime.auth.register(
        NewAccount(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
            date_of_birth=body.date_of_birth,
            role=body.role.value,
        ),
        remember_me=body.remember_me,
        client=_client_info(request),
    )
    _apply_session_cookie(response, result, remember_me=body.remember_me)
    return _ok(result)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials, with ``attempts_remaining`` in the details
        403: deactivated account
        423: account locked, with ``unlock_at`` in the details
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        client=_client_info(request),
    )
    _apply_session_cookie(response, result, remember_me=body.remember_me)
    return _ok(result)


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.logout(principal)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return _ok(result)


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(await runtime.auth.get_profile(principal))


@router.put("/profile", response_model=Envelope)
async def update_profile(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    return _ok(await runtime.auth.update_profile(principal, body.to_changes()))


@router.get("/addresses", response_model=Envelope)
async def list_addresses(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(await runtime.auth.list_addresses(principal))


@router.post("/addresses", response_model=Envelope, status_code=201)
async def add_address(body: AddressInput, principal: AuthContext = Depends(get_principal)):
    """Add an address; the first one becomes the default automatically."""
    runtime = get_runtime()
    return _ok(await runtime.auth.add_address(principal, body.model_dump()))


@router.put("/addresses/{address_id}", response_model=Envelope)
async def update_address(
    body: AddressPatchRequest,
    address_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    return _ok(
        await runtime.auth.update_address(principal, address_id, body.to_changes())
    )


@router.delete("/addresses/{address_id}", response_model=Envelope)
async def delete_address(
    address_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    """Removing the default promotes the first remaining address."""
    runtime = get_runtime()
    return _ok(await runtime.auth.delete_address(principal, address_id))


@router.put("/addresses/{address_id}/default", response_model=Envelope)
async def set_default_address(
    address_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    return _ok(await runtime.auth.set_default_address(principal, address_id))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest):
    """Always answers with the same message whether or not the email is known."""
    runtime = get_runtime()
    return _ok(await runtime.auth.forgot_password(body.email))


@router.put("/reset-password/{token}", response_model=Envelope)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    response: Response,
    token: str = Path(..., min_length=1, max_length=256),
):
    runtime = get_runtime()
    result = await runtime.auth.reset_password(
        token, body.password, client=_client_info(request)
    )
    _apply_session_cookie(response, result, remember_me=False)
    return _ok(result)


@router.put("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    return _ok(
        await runtime.auth.change_password(
            principal, body.current_password, body.new_password
        )
    )


@router.get("/verify-email/{token}", response_model=Envelope)
async def verify_email(token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    return _ok(await runtime.auth.verify_email(token))


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(await runtime.auth.resend_verification(principal))


@router.post("/send-otp", response_model=Envelope)
async def send_otp(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(await runtime.auth.send_phone_otp(principal))


@router.post("/verify-otp", response_model=Envelope)
async def verify_otp(body: VerifyOtpRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return _ok(await runtime.auth.verify_phone_otp(principal, body.otp))


@router.post("/delete-account", response_model=Envelope)
async def delete_account(
    body: DeactivateSelfRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    """Soft delete: the account is deactivated, never removed."""
    runtime = get_runtime()
    result = await runtime.auth.deactivate_self(principal, body.password)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return _ok(result)


@router.post("/accounts/{account_id}/deactivate", response_model=Envelope)
async def deactivate_account(
    account_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    return _ok(await runtime.auth.deactivate_account(principal, account_id))
