"""
User model - staff accounts with role and per-module access
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Enum as SQLEnum
from datetime import datetime
from enum import Enum
from subsidy_crm.database import Base


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class AppModule(str, Enum):
    DASHBOARD = "DASHBOARD"
    LEADS = "LEADS"
    CLIENTS = "CLIENTS"
    PROJECTS = "PROJECTS"
    INVOICES = "INVOICES"


DEFAULT_MODULE_ACCESS = [m.value for m in AppModule]


def normalize_module_access(modules, fallback=None) -> list:
    """Dedupe, upper-case and filter to known modules; DASHBOARD is always granted"""
    source = modules if isinstance(modules, (list, tuple, set)) else (fallback or DEFAULT_MODULE_ACCESS)
    allowed = {m.value for m in AppModule}
    result = []
    for item in source:
        value = str(getattr(item, "value", item)).strip().upper()
        if value in allowed and value not in result:
            result.append(value)
    if AppModule.DASHBOARD.value not in result:
        result.insert(0, AppModule.DASHBOARD.value)
    return result


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole, native_enum=False), nullable=False, default=UserRole.USER)
    module_access = Column(JSON, nullable=False, default=lambda: list(DEFAULT_MODULE_ACCESS))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
