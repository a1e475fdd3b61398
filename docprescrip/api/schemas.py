from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Request bodies are deliberately permissive: format checks happen in the
# service layer so malformed submissions count against the lockout threshold.

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "locked",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LoginRequest(_CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class RegisterRequest(_CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    hospital_name: Optional[str] = Field(None, alias="hospitalName")
    hospital_address: Optional[str] = Field(None, alias="hospitalAddress")
    degree: Optional[str] = None
    registration_number: Optional[str] = Field(None, alias="registrationNumber")
    access_key: Optional[str] = Field(None, alias="accessKey")


class PinRequest(_CamelModel):
    # any JSON value; the gate treats non-strings as malformed
    pin: Any = None


class ForgotPasswordRequest(_CamelModel):
    email: Optional[str] = None


class SendOtpRequest(_CamelModel):
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    phone: Optional[str] = None
    resend: bool = False


class VerifyOtpRequest(_CamelModel):
    email: Optional[str] = None
    otp: Optional[str] = None


class AccessKeyRequest(_CamelModel):
    access_key: Optional[str] = Field(None, alias="accessKey")


class GenerateKeyRequest(_CamelModel):
    password: Optional[str] = None


class LinkAccountRequest(_CamelModel):
    action: Literal["link-google", "set-password"]
    password: Optional[str] = None


class AuthResponse(BaseModel):
    doctor: dict
    access_token_expires_in: int


class PinResponse(BaseModel):
    success: bool = True
    message: str = "PIN verified"
