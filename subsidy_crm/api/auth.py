"""
Authentication - JWT login, current user and module gates
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.config import get_settings
from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, UserRole, AppModule, normalize_module_access
from subsidy_crm.services.access import ensure_admin, ensure_module_access
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks
from subsidy_crm.utils.validators import normalize_email, validate_password

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


# ===================== Password & token helpers =====================

def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    payload = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload["exp"] = expire
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[int]:
    """User id from a token, or None when invalid or expired"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        subject = payload.get("sub")
        return int(subject) if subject is not None else None
    except (JWTError, ValueError, TypeError) as e:
        logger.debug(f"Token rejected: {e}")
        return None


async def get_active_user(db: AsyncSession, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


# ===================== Dependencies =====================

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await get_active_user(db, decode_access_token(token))
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def get_current_admin(current_user: User = Depends(get_current_user)) -> User:
    ensure_admin(current_user)
    return current_user


def require_module(module: AppModule):
    """Router-level dependency enforcing the per-module allowlist"""

    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        ensure_module_access(current_user, module)
        return current_user

    return dependency


# ===================== Schemas =====================

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: "UserOut"


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: UserRole
    module_access: List[str]
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


Token.model_rebuild()


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str
    confirm_password: Optional[str] = None


def user_out(user: User) -> UserOut:
    data = UserOut.model_validate(user)
    data.module_access = normalize_module_access(user.module_access)
    return data


# ===================== Endpoints =====================

@router.post("/login", response_model=Token)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).where(User.email == normalize_email(form_data.username)))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(form_data.password, user.hashed_password):
        logger.warning(f"Failed login attempt for {form_data.username}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is disabled")

    token = create_access_token(data={"sub": str(user.id)})
    return Token(access_token=token, user=user_out(user))


@router.get("/me", response_model=UserOut)
async def me(current_user: User = Depends(get_current_user)):
    return user_out(current_user)


@router.post("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    if not verify_password(data.current_password, current_user.hashed_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    validate_password(data.new_password, data.confirm_password)

    current_user.hashed_password = get_password_hash(data.new_password)
    await db.commit()

    hooks.audit("PASSWORD_CHANGED", "User", current_user.id, current_user.id)
    await hooks.run(db)
    return {"message": "Password updated successfully"}
