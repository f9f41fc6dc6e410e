from __future__ import annotations

from typing import Awaitable, Callable, Optional, Tuple, Union

from fastapi import APIRouter, Depends, Header, Request

from agriqual.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterOtpRequest,
    UserResponse,
    VerifyOtpRequest,
)
from agriqual.config import AccountRole
from agriqual.service import rate_limit as limits
from agriqual.service.errors import LockedError, ServiceError
from agriqual.service.policy import normalize_email
from agriqual.service.runtime import get_runtime
from agriqual.storage.models import Account, TokenClaims

router = APIRouter(prefix="/api")

RATE_LIMITED_MESSAGE = "Too many requests. Please try again later."


def client_address(request: Request) -> str:
    """First ``X-Forwarded-For`` hop when behind a proxy, else the peer address."""

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


async def get_current_principal(
    authorization: Optional[str] = Header(None),
) -> Tuple[TokenClaims, Account]:
    runtime = get_runtime()
    return await runtime.accounts.authenticate(authorization)


async def get_current_account(
    principal: Tuple[TokenClaims, Account] = Depends(get_current_principal),
) -> Account:
    return principal[1]


def require_role(*roles: Union[AccountRole, str]) -> Callable[..., Awaitable[Account]]:
    allowed = {role.value if isinstance(role, AccountRole) else role for role in roles}

    async def _dependency(account: Account = Depends(get_current_account)) -> Account:
        if account.role not in allowed:
            raise ServiceError(
                "Insufficient permissions", status_code=403, error_code="forbidden"
            )
        return account

    return _dependency


async def enforce_rate_limit(policy_name: str, key: str) -> None:
    runtime = get_runtime()
    decision = await runtime.rate_limiter.hit(policy_name, key)
    if not decision.allowed:
        raise LockedError(RATE_LIMITED_MESSAGE, decision.retry_after_seconds)


async def _request_email(request: Request) -> str:
    try:
        body = await request.json()
    except ValueError:
        return ""
    return normalize_email(body.get("email")) if isinstance(body, dict) else ""


async def _account_key(account: Account = Depends(get_current_account)) -> str:
    return account.id


async def _address_key(request: Request) -> str:
    return client_address(request)


_KEY_FUNCS = {
    limits.LOGIN: _request_email,
    limits.REGISTER_OTP: _request_email,
    limits.VERIFY_OTP: _request_email,
    limits.PASSWORD_CHANGE: _account_key,
    limits.HELP_TICKET: _account_key,
    limits.DIAGNOSE: _address_key,
}


def rate_limit(
    policy_name: str, key_func: Optional[Callable[..., Awaitable[str]]] = None
) -> Callable[..., Awaitable[None]]:
    """Dependency enforcing ``policy_name``; the key comes from ``key_func``.

    ``key_func`` is itself resolved as a dependency, so it may depend on the
    request or on the authenticated account.
    """

    key_dependency = key_func or _KEY_FUNCS[policy_name]

    async def _dependency(key: str = Depends(key_dependency)) -> None:
        # an empty key (e.g. missing email) is left to body validation
        if key:
            await enforce_rate_limit(policy_name, key)

    return _dependency


@router.post(
    "/auth/register-otp",
    response_model=MessageResponse,
    response_model_exclude_none=True,
    tags=["auth"],
    dependencies=[Depends(rate_limit(limits.REGISTER_OTP))],
)
async def register_otp(body: RegisterOtpRequest):
    runtime = get_runtime()
    result = await runtime.accounts.register(
        body.name, body.email, body.password, phone=body.phone, role=body.role
    )
    return MessageResponse(message=result.message, debug_otp=result.debug_otp)


@router.post(
    "/auth/verify-otp",
    response_model=AuthResponse,
    tags=["auth"],
    dependencies=[Depends(rate_limit(limits.VERIFY_OTP))],
)
async def verify_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    token, account = await runtime.accounts.verify_registration(body.email, body.otp)
    return AuthResponse(token=token, user=UserResponse.from_account(account))


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    tags=["auth"],
    dependencies=[Depends(rate_limit(limits.LOGIN))],
)
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    token, account = await runtime.accounts.login(
        body.email,
        body.password,
        ip_address=client_address(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return AuthResponse(token=token, user=UserResponse.from_account(account))


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(account: Account = Depends(get_current_account)):
    return MeResponse(user=UserResponse.from_account(account))


@router.post(
    "/account/change-password",
    response_model=MessageResponse,
    response_model_exclude_none=True,
    tags=["account"],
)
async def change_password(
    body: ChangePasswordRequest,
    principal: Tuple[TokenClaims, Account] = Depends(get_current_principal),
):
    claims, account = principal
    await enforce_rate_limit(limits.PASSWORD_CHANGE, account.id)
    runtime = get_runtime()
    message = await runtime.accounts.change_password(
        claims, body.old_password, body.new_password
    )
    return MessageResponse(message=message)


__all__ = [
    "client_address",
    "enforce_rate_limit",
    "get_current_account",
    "get_current_principal",
    "rate_limit",
    "require_role",
    "router",
]
