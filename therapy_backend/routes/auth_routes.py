import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator

from therapy_backend.auth import jwt_handler
from therapy_backend.auth.dependencies import get_current_admin
from therapy_backend.core import config

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


class TokenRequest(BaseModel):
    email: str
    api_key: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("Email is required.")
        return normalized


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


@router.post("/token", response_model=TokenResponse)
def issue_token(data: TokenRequest):
    if not config.ADMIN_API_KEY:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin login is not configured")

    if not hmac.compare_digest(data.api_key.encode(), config.ADMIN_API_KEY.encode()):
        logger.warning("Rejected admin login for %s: bad API key", data.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    if data.email not in config.ADMIN_EMAILS:
        logger.warning("Rejected admin login for %s: not an admin", data.email)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    return TokenResponse(access_token=jwt_handler.create_access_token(subject=data.email))


@router.get("/me")
def read_current_admin(admin_email: str = Depends(get_current_admin)):
    return {"email": admin_email, "role": jwt_handler.ADMIN_ROLE}
