"""
Create an admin user, or promote an existing account to admin.

Usage:
    python scripts/create_admin.py --name "Admin Name" --email admin@company.com --password "StrongPass123!"
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from subsidy_crm.database import AsyncSessionLocal, engine, init_models
from subsidy_crm.models.user import User, UserRole, DEFAULT_MODULE_ACCESS
from subsidy_crm.api.auth import get_password_hash


async def create_admin(name: str, email: str, password: str) -> None:
    email = email.strip().lower()
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User).where(User.email == email))
        existing = result.scalar_one_or_none()

        if existing:
            existing.role = UserRole.ADMIN
            existing.is_active = True
            existing.name = name
            existing.hashed_password = get_password_hash(password)
            await session.commit()
            print(f"Existing user promoted/updated as ADMIN: {existing.email}")
            return

        admin = User(
            name=name,
            email=email,
            hashed_password=get_password_hash(password),
            role=UserRole.ADMIN,
            module_access=list(DEFAULT_MODULE_ACCESS),
            is_active=True,
        )
        session.add(admin)
        await session.commit()
        print(f"Admin created: {admin.email}")


async def main():
    parser = argparse.ArgumentParser(description="Create or promote an admin user")
    parser.add_argument("--name")
    parser.add_argument("--email")
    parser.add_argument("--password")
    args = parser.parse_args()

    if not args.name or not args.email or not args.password:
        print('Missing args. Use: python scripts/create_admin.py --name "Admin Name" '
              '--email admin@company.com --password "StrongPass123!"')
        sys.exit(1)

    try:
        await init_models()
        await create_admin(args.name.strip(), args.email, args.password)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
