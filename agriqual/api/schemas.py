from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agriqual.storage.models import Account

MAX_NAME_LENGTH = 200
MAX_EMAIL_LENGTH = 320
MAX_PASSWORD_LENGTH = 256

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error response body with a stable code value."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    details: Optional[Any] = None
    retry_after_seconds: Optional[int] = Field(
        None, serialization_alias="retryAfterSeconds"
    )

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class RegisterOtpRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=MAX_NAME_LENGTH)
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)
    phone: Optional[str] = Field(None, max_length=40)
    password: Optional[str] = Field(None, max_length=MAX_PASSWORD_LENGTH)
    role: Optional[str] = Field(None, max_length=20)


class VerifyOtpRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)
    otp: Optional[str] = Field(None, max_length=12)

    @field_validator("otp", mode="before")
    @classmethod
    def _coerce_numeric_otp(cls, value: Any) -> Any:
        # some clients post the code as a JSON number
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class LoginRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=MAX_EMAIL_LENGTH)
    password: Optional[str] = Field(None, max_length=MAX_PASSWORD_LENGTH)


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_password: Optional[str] = Field(
        None, alias="oldPassword", max_length=MAX_PASSWORD_LENGTH
    )
    new_password: Optional[str] = Field(
        None, alias="newPassword", max_length=MAX_PASSWORD_LENGTH
    )


class UserResponse(BaseModel):
    """Public view of an account; never carries credential material."""

    id: str
    name: str
    email: str
    role: str

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(id=account.id, name=account.name, email=account.email, role=account.role)


class AuthResponse(BaseModel):
    token: str
    user: UserResponse


class MeResponse(BaseModel):
    user: UserResponse


class MessageResponse(BaseModel):
    message: str
    debug_otp: Optional[str] = None


__all__ = [
    "AuthResponse",
    "ChangePasswordRequest",
    "ErrorBody",
    "LoginRequest",
    "MeResponse",
    "MessageResponse",
    "RegisterOtpRequest",
    "UserResponse",
    "VerifyOtpRequest",
]
