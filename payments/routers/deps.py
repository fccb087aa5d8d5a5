"""
Shared router dependencies.

- Bearer-token authentication (get_current_user, require_admin)
- Access to the collaborators create_app() put on app.state
- The {success, data, message} response envelope and the exception
  handlers that render errors in it
"""

import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from database.db import get_db
from database.models import User, UserRole
from services.auth_service import decode_access_token
from services.exceptions import PaymentError
from services.mpesa import MPesaService

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is a 401 here, not FastAPI's default
security = HTTPBearer(auto_error=False)


# ============================================
# Envelope
# ============================================

def success_response(data: Any = None, message: str = "") -> dict:
    return {"success": True, "data": data, "message": message}


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "data": None}
    )


# ============================================
# App state
# ============================================

def get_settings(request: Request):
    return request.app.state.settings


def get_gateway(request: Request) -> MPesaService:
    return request.app.state.gateway


# ============================================
# Authentication
# ============================================

def _unauthorized(detail: str) -> StarletteHTTPException:
    return StarletteHTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Extract and validate user from JWT token."""
    if credentials is None:
        raise _unauthorized("Authentication required")

    payload = decode_access_token(credentials.credentials, get_settings(request).jwt_secret_key)
    if not payload:
        raise _unauthorized("Invalid or expired token")

    user_id = payload.get("user_id")
    if not user_id:
        raise _unauthorized("Invalid token payload")

    user = db.get(User, str(user_id))
    if not user or not user.is_active:
        raise _unauthorized("User not found or inactive")

    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Ensure current user is a platform admin."""
    if current_user.role != UserRole.ADMIN:
        raise StarletteHTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


# ============================================
# Exception handlers
# ============================================

async def _payment_error_handler(request: Request, exc: PaymentError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return error_response(exc.status_code, exc.message)


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"{request.method} {request.url.path} rejected: {exc.errors()}")
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid request parameters")


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(PaymentError, _payment_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
