"""
Seed script to create the first system administrator.

Run this script once after deployment. It creates the tables and role rows
when they are missing, then adds a system-admin user with a generated
temporary password that must be changed on first login.

Usage:
    uv run python -m scripts.seed_system_admin admin admin@example.com
"""
import asyncio
import sys

from sqlalchemy import or_, select

from provider_admin.core.database.engine import AsyncSessionLocal, init_db
from provider_admin.features.access.roles import RoleName
from provider_admin.features.users.auth import hash_password
from provider_admin.features.users.models import Password, User, get_role
from provider_admin.features.users.passwords import generate_compliant_password
from provider_admin.utils import get_logger


log = get_logger(__name__)


async def seed_system_admin(username: str, email: str) -> str | None:
    """
    Create a system admin unless the username or email is taken.

    Returns:
        The temporary password, or None when nothing was created
    """
    await init_db()

    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(User).where(or_(User.username == username.lower(), User.email == email.lower()))
        )
        if result.scalars().first():
            log.info(f"User '{username}' or '{email}' already exists, skipping")
            return None

        temporary_password = generate_compliant_password()
        user = User(
            username=username.lower(),
            email=email.lower(),
            name="System Administrator",
            customer_id=None,
            active=True,
            must_change_password=True,
            roles=[await get_role(db, RoleName.SYSTEM_ADMIN)],
        )
        db.add(user)
        await db.flush()
        db.add(Password(user_id=user.id, hash=hash_password(temporary_password)))
        await db.commit()
        log.info(f"Created system admin {user.id}")
        return temporary_password


async def main():
    if len(sys.argv) != 3:
        print("Usage: python -m scripts.seed_system_admin <username> <email>")
        sys.exit(1)

    temporary_password = await seed_system_admin(sys.argv[1], sys.argv[2])
    if temporary_password:
        print(f"Temporary password: {temporary_password}")


if __name__ == "__main__":
    asyncio.run(main())
