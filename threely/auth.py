# auth.py
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from threely.db import get_db
from threely.models import Asset, User, UNLIMITED_TOKENS
from threely.schemas import (
    LikeAssetRequest, LoginRequest, RegisterRequest, SaveGeneratedModelRequest, parse_uuid,
)
from threely.settings import settings

log = logging.getLogger(__name__)

# ===================================================================
# Configuration
# ===================================================================

router = APIRouter(prefix="/auth", tags=["Auth"])

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS
)


# ===================================================================
# Utility Functions
# ===================================================================

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies a plain password against a hashed one."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hashes a plain password."""
    return pwd_context.hash(password)


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Creates a JWT access token carrying the user's id, name and admin flag."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.JWT_EXPIRY_DAYS))
    to_encode = {
        "userId": str(user.id),
        "username": user.username,
        "isAdmin": bool(user.is_admin),
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except JWTError as e:
        log.warning(f"Invalid JWT decode attempt: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def extract_token(request: Request) -> Optional[str]:
    """Token from the auth cookie, a Bearer header or the x-auth-token header."""
    token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if token:
        return token
    authorization = request.headers.get("Authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.headers.get("x-auth-token") or None


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_EXPIRY_DAYS * 24 * 60 * 60,
        path="/",
    )


# ===================================================================
# Current User Dependencies
# ===================================================================

async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    """Dependency to get the current authenticated user from a token."""
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    payload = decode_access_token(token)
    try:
        user_id = uuid.UUID(str(payload.get("userId")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")
    return user


async def get_optional_user(request: Request, db: AsyncSession = Depends(get_db)) -> Optional[User]:
    """Like `get_current_user`, but anonymous or badly-authenticated callers get None."""
    if not extract_token(request):
        return None
    try:
        return await get_current_user(request, db)
    except HTTPException:
        return None


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


# ===================================================================
# API Endpoints
# ===================================================================

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(body: RegisterRequest, response: Response, db: AsyncSession = Depends(get_db)):
    """
    Handles new user registration.
    - The very first account becomes an admin.
    - Configured admin emails get the admin role and unlimited tokens.
    """
    if not body.username or not body.email or not body.password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="All fields are required")
    if len(body.password) < 6:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Password must be at least 6 characters"
        )

    if await User.find_by_username(db, body.username):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already exists")
    if await User.find_by_email(db, body.email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already exists")

    user_count = await db.scalar(select(func.count()).select_from(User))
    is_admin_email = body.email.strip().lower() in {e.lower() for e in settings.ADMIN_EMAILS}

    try:
        new_user = User(
            username=body.username,
            email=body.email,
            hashed_password=get_password_hash(body.password),
            is_admin=user_count == 0 or is_admin_email,
            role="admin" if is_admin_email else "user",
            tokens=UNLIMITED_TOKENS if is_admin_email else 1,
            liked_assets=[],
            generated_models=[],
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    db.add(new_user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Username or email already exists"
        )

    token = create_access_token(new_user)
    set_auth_cookie(response, token)
    log.info(f"New user registered: {new_user.username} (admin={new_user.is_admin})")

    return {
        "success": True,
        "message": "User registered successfully",
        "user": new_user.to_public_dict(),
        "token": token,
    }


@router.post("/login")
async def login(body: LoginRequest, response: Response, db: AsyncSession = Depends(get_db)):
    """
    Handles user login with either a username or an email address.
    Sets the auth cookie and also returns the token for Bearer use.
    """
    identifier = body.username or body.email
    if not identifier or not body.password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Username and password are required"
        )

    user = await User.find_by_login(db, identifier)
    if not user or not verify_password(body.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password"
        )

    token = create_access_token(user)
    set_auth_cookie(response, token)
    log.info(f"User logged in: {user.username}")

    return {
        "success": True,
        "message": "Login successful",
        "user": user.to_public_dict(),
        "token": token,
    }


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(key=settings.AUTH_COOKIE_NAME, path="/")
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me")
async def read_users_me(current_user: User = Depends(get_current_user)):
    """Fetches the profile of the currently authenticated user."""
    return {"success": True, "user": current_user.to_public_dict()}


@router.post("/like-asset")
async def like_asset(
    body: LikeAssetRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Toggles a like on an asset for the current user."""
    if not body.asset_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Asset ID is required")

    asset = await db.get(Asset, parse_uuid(body.asset_id, "Invalid asset id"))
    if asset is None or not asset.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")

    liked = current_user.toggle_liked_asset(asset)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.error(f"Failed to toggle like for user {current_user.id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update liked assets")

    return {
        "success": True,
        "liked": liked,
        "message": "Asset liked" if liked else "Asset unliked",
        "likedAssets": [str(a.id) for a in current_user.liked_assets],
    }


@router.get("/liked-assets")
async def liked_assets(current_user: User = Depends(get_current_user)):
    assets = [a.to_dict() for a in current_user.liked_assets if a.is_active]
    return {"success": True, "assets": assets, "count": len(assets)}


@router.post("/save-generated-model")
async def save_generated_model(
    body: SaveGeneratedModelRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Appends a finished generation to the user's history."""
    if not body.task_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Task ID is required")

    current_user.add_generated_model(body.task_id, body.name)
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.error(f"Failed to save generated model for user {current_user.id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to save generated model")

    return {
        "success": True,
        "message": "Model saved to history",
        "generatedModels": [m.to_dict() for m in current_user.generated_models],
    }
