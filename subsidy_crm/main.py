"""
Main FastAPI application
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from subsidy_crm.config import get_settings
from subsidy_crm.database import engine, init_models, AsyncSessionLocal
from subsidy_crm.exceptions import DomainError
from subsidy_crm.models import User
from subsidy_crm.models.user import UserRole, DEFAULT_MODULE_ACCESS
from subsidy_crm.api.auth import get_password_hash
from subsidy_crm.api import auth, users, leads, clients, projects, invoices
from subsidy_crm.api import notifications, settings as settings_api, dashboard, realtime, meta
from subsidy_crm.utils.logger import configure_logging

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)


async def seed_default_admin() -> None:
    """Create the configured admin account when no admin exists yet"""
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User.id).where(User.role == UserRole.ADMIN).limit(1))
        if result.scalar_one_or_none() is not None:
            return
        session.add(User(
            name=settings.DEFAULT_ADMIN_NAME,
            email=settings.DEFAULT_ADMIN_EMAIL.strip().lower(),
            hashed_password=get_password_hash(settings.DEFAULT_ADMIN_PASSWORD),
            role=UserRole.ADMIN,
            module_access=list(DEFAULT_MODULE_ACCESS),
            is_active=True,
        ))
        await session.commit()
        logger.info(f"Created default admin user {settings.DEFAULT_ADMIN_EMAIL}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    logger.info("Database tables created")
    await seed_default_admin()

    yield

    await engine.dispose()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning(f"Concurrent update rejected on {request.url.path}")
    return JSONResponse(
        status_code=409,
        content={"detail": "This record was changed by another request. Reload and try again."},
    )


# Include routers
app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
app.include_router(users.router, prefix="/api/users", tags=["Users"])
app.include_router(leads.router, prefix="/api/leads", tags=["Leads"])
app.include_router(clients.router, prefix="/api/clients", tags=["Clients"])
app.include_router(projects.router, prefix="/api/projects", tags=["Projects"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["Invoices"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
app.include_router(settings_api.router, prefix="/api/settings", tags=["Settings"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["Dashboard"])
app.include_router(meta.router, prefix="/api/meta", tags=["Meta"])
app.include_router(realtime.router, tags=["Realtime"])


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "subsidy_crm.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
