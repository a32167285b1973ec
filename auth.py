"""
Authentication routes and dependencies
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import create_jwt, decode_jwt, hash_password, verify_password
from context import AppContext, get_context
from crud.user import UserRepository
from database import get_db
from database_models import User
from models.entitlement import AccessDecision
from services.access_service import AccessService
from services.errors import NotFound
from utils.responses import access_payload
from utils.security_utils import validate_password_strength

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

AUTH_COOKIE = "auth_token"


# Request models
class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


def validate_email(email: str) -> bool:
    """Validate email format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def user_payload(user: User) -> dict:
    return {
        "id": str(user.id),
        "name": user.name,
        "email": user.email,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _token_response(context: AppContext, user: User, decision: Optional[AccessDecision]) -> JSONResponse:
    """Token goes in the body for the mobile app and in an httpOnly cookie for browsers."""
    token = create_jwt(str(user.id), context.settings.jwt_secret_key, context.settings.jwt_expire_days)
    response = JSONResponse(
        content={
            "ok": True,
            "token": token,
            "user": user_payload(user),
            "access": access_payload(decision),
        }
    )
    response.set_cookie(
        key=AUTH_COOKIE,
        value=token,
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=context.settings.jwt_expire_days * 86400,
    )
    return response


@auth_router.post("/signup")
async def signup(
    request: SignupRequest,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Create a new user account with a fresh trial"""
    email = request.email.strip().lower()
    if not validate_email(email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user_repo = UserRepository(db)
    if await user_repo.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="Email already registered")

    try:
        user = await user_repo.create_user(
            {
                "name": request.name,
                "email": email,
                "hashed_password": hash_password(request.password),
            },
            now=context.clock(),
            trial_days=context.settings.trial_days,
        )
        await db.commit()
    except IntegrityError:
        # Lost a race against a concurrent signup with the same email
        await db.rollback()
        raise HTTPException(status_code=400, detail="Email already registered")

    logger.info(f"User {user.id} signed up, trial ends {user.entitlement.trial_ends_at.isoformat()}")
    decision = await AccessService(db, context.clock).check_access(user.id)
    return _token_response(context, user, decision)


@auth_router.post("/login")
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Login and get JWT token"""
    user = await UserRepository(db).get_user_by_email(request.email.strip())
    if not user or not verify_password(request.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    try:
        decision = await AccessService(db, context.clock).check_access(user.id)
    except NotFound:
        decision = None
    return _token_response(context, user, decision)


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = JSONResponse(
        content={
            "ok": True,
            "message": "Logged out successfully"
        }
    )
    response.set_cookie(
        key=AUTH_COOKIE,
        value="",
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=0
    )
    return response


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> User:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Authorization header (Bearer token) used by the mobile app
    2. auth_token httpOnly cookie set by login/signup
    3. Raise 401 if neither is found
    """
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
    elif auth_token:
        token = auth_token

    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    try:
        payload = decode_jwt(token, context.settings.jwt_secret_key)
    except ValueError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Authentication is not configured")
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = await UserRepository(db).get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")
    return user


async def get_access_decision(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
) -> AccessDecision:
    """checkAccess for the current user, evaluated fresh on every request."""
    try:
        return await AccessService(db, context.clock).check_access(user.id)
    except NotFound:
        raise HTTPException(status_code=404, detail="No entitlement record for this account")


async def require_access(
    user: User = Depends(get_current_user),
    decision: AccessDecision = Depends(get_access_decision),
) -> User:
    """Gate for paid features: 403 with the decision when not entitled."""
    if not decision.entitled:
        logger.info(f"User {user.id} denied: {decision.reason}")
        raise HTTPException(
            status_code=403,
            detail={
                "error": "subscription_required",
                "message": decision.reason,
                "access": access_payload(decision),
            },
        )
    return user


@auth_router.get("/me")
async def get_current_user_info(
    user: User = Depends(get_current_user),
    decision: AccessDecision = Depends(get_access_decision),
):
    """Get current user information and access state"""
    return {
        "ok": True,
        "user": user_payload(user),
        "access": access_payload(decision),
    }
