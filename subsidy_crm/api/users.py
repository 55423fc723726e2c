"""
Users API - staff accounts, roles and module access (admin only)
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.database import get_db
from subsidy_crm.models.user import User, UserRole, normalize_module_access
from subsidy_crm.api.auth import get_current_user, get_current_admin, get_password_hash, UserOut, user_out
from subsidy_crm.services.side_effects import PostCommitHooks, get_post_commit_hooks
from subsidy_crm.utils.validators import normalize_email, validate_password

logger = logging.getLogger(__name__)

router = APIRouter()


class AssignableUser(BaseModel):
    id: int
    name: str
    email: str
    role: UserRole

    class Config:
        from_attributes = True


class UserCreate(BaseModel):
    name: str
    email: str
    password: str
    role: Optional[str] = None
    module_access: Optional[List[str]] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None
    module_access: Optional[List[str]] = None
    password: Optional[str] = None


def _role(value: Optional[str], fallback: UserRole) -> UserRole:
    try:
        return UserRole(str(value).strip().upper()) if value else fallback
    except ValueError:
        return fallback


def _snapshot(user: User) -> dict:
    return {
        "name": user.name,
        "role": user.role,
        "is_active": user.is_active,
        "module_access": normalize_module_access(user.module_access),
    }


@router.get("/assignable", response_model=List[AssignableUser])
async def list_assignable_users(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Active users, for task and lead assignment pickers"""
    result = await db.execute(select(User).where(User.is_active.is_(True)).order_by(User.name))
    return result.scalars().all()


@router.get("", response_model=List[UserOut])
async def list_users(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    result = await db.execute(select(User).order_by(User.created_at.desc(), User.id.desc()))
    return [user_out(u) for u in result.scalars().all()]


@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    email = normalize_email(data.email)
    if not data.name.strip() or not email or not data.password:
        raise HTTPException(status_code=400, detail="Name, email and password are required")
    validate_password(data.password)

    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail="User with this email already exists")

    user = User(
        name=data.name.strip(),
        email=email,
        hashed_password=get_password_hash(data.password),
        role=_role(data.role, UserRole.USER),
        module_access=normalize_module_access(data.module_access),
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info(f"User {user.email} created by {admin.email}")

    response = user_out(user)
    hooks.audit("USER_CREATED", "USER", user.id, admin.id, after=_snapshot(user))
    await hooks.run(db)
    return response


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: int,
    data: UserUpdate,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
    hooks: PostCommitHooks = Depends(get_post_commit_hooks),
):
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    before = _snapshot(user)

    next_role = _role(data.role, user.role)
    next_active = user.is_active if data.is_active is None else data.is_active

    if user.id == admin.id and not next_active:
        raise HTTPException(status_code=400, detail="You cannot disable your own account")

    if user.role == UserRole.ADMIN and (not next_active or next_role != UserRole.ADMIN):
        result = await db.execute(
            select(func.count(User.id)).where(
                User.id != user.id,
                User.role == UserRole.ADMIN,
                User.is_active.is_(True),
            )
        )
        if (result.scalar() or 0) == 0:
            raise HTTPException(status_code=400, detail="At least one active admin user must remain in the system")

    if data.password:
        validate_password(data.password)
        user.hashed_password = get_password_hash(data.password)
    if data.name is not None and data.name.strip():
        user.name = data.name.strip()
    if data.module_access is not None:
        user.module_access = normalize_module_access(data.module_access)
    user.role = next_role
    user.is_active = next_active

    await db.commit()
    await db.refresh(user)

    response = user_out(user)
    hooks.audit("USER_UPDATED", "USER", user.id, admin.id, before=before, after=_snapshot(user))
    await hooks.run(db)
    return response
