# backend/consultbook/api/dependencies/auth.py
"""
Authentication dependencies.

Tokens are issued by the identity service; this module only decodes them.
The ``sub`` claim is the consultant id and ``role`` gates consultant routes.
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional, cast

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from jwt import PyJWTError

from ...core.config import settings

logger = logging.getLogger(__name__)

CONSULTANT_ROLE = "consultant"

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    subject: str
    role: str

    @property
    def is_consultant(self) -> bool:
        return self.role == CONSULTANT_ROLE


def decode_access_token(token: str) -> Dict[str, Any]:
    payload = jwt.decode(
        token,
        settings.secret_key.get_secret_value(),
        algorithms=[settings.algorithm],
        options={"verify_aud": False},
    )
    return cast(Dict[str, Any], payload)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"message": detail, "code": "UNAUTHORIZED"},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Principal]:
    if credentials is None or not credentials.credentials:
        return None
    try:
        payload = decode_access_token(credentials.credentials)
    except PyJWTError as exc:
        logger.info("Rejected access token: %s", exc)
        raise _unauthorized("Could not validate credentials") from exc
    subject = payload.get("sub")
    if not subject:
        raise _unauthorized("Token has no subject")
    return Principal(subject=str(subject), role=str(payload.get("role") or ""))


def get_principal(principal: Optional[Principal] = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise _unauthorized("Not authenticated")
    return principal


def require_consultant(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_consultant:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Consultant access required", "code": "FORBIDDEN"},
        )
    return principal
