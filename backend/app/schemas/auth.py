"""
Exposure Backend — Authentication Schemas
===========================================

What:  Request and response bodies for admin login and TOTP enrollment.
Why:   Shape checks (username charset, password length, 6-digit codes) fail
       fast with 422 before any hash is computed.
"""

from typing import Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=100, pattern=r"^[a-zA-Z0-9_-]+$")
    password: str = Field(min_length=8, max_length=100)
    totp_code: Optional[str] = Field(default=None, pattern=r"^\d{6}$")


class LoginResponse(BaseModel):
    username: str
    message: str = "Logged in"


class TotpSetupResponse(BaseModel):
    """
    What:  Everything an authenticator app needs to enroll.
    qr_code_png is a base64-encoded PNG of provisioning_uri.
    """

    secret: str
    provisioning_uri: str
    qr_code_png: str


class TotpCodeRequest(BaseModel):
    code: str = Field(pattern=r"^\d{6}$")


class TotpStatusResponse(BaseModel):
    totp_enabled: bool
    message: str
