"""
Create an administrator account.

Usage:
    python -m matkassen.scripts.create_admin --email admin@example.org --password 'S3cret-pass'
"""
import argparse
import asyncio
import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from matkassen.core.security import get_password_hash
from matkassen.db.repositories.users import UserRepository
from matkassen.db.session import get_repository_context
from matkassen.models.user import User
from matkassen.schemas.user import UserCreate, UserRole

logger = logging.getLogger("matkassen.scripts")


async def create_admin_user(
    email: str,
    password: str,
    full_name: Optional[str] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> Tuple[User, bool]:
    """
    Create an admin user unless one with ``email`` exists.

    Returns:
        Tuple[User, bool]: The user and whether it was created
    """
    # Reuse the API's password rules
    data = UserCreate(email=email, password=password, full_name=full_name, role=UserRole.ADMIN)

    async with get_repository_context(UserRepository, session_factory) as user_repo:
        existing = await user_repo.get_by_email(data.email)
        if existing:
            return existing, False

        admin = await user_repo.create(
            email=data.email,
            hashed_password=get_password_hash(data.password),
            full_name=data.full_name,
            is_active=True,
            role=UserRole.ADMIN.value,
        )
    return admin, True


async def _main(args: argparse.Namespace) -> None:
    from matkassen.db.session import initialize_database

    await initialize_database()
    admin, created = await create_admin_user(args.email, args.password, args.full_name)
    if created:
        logger.info(f"Admin user created with ID: {admin.id}")
    else:
        logger.info(f"Admin user already exists (id: {admin.id})")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    parser = argparse.ArgumentParser(description="Create an administrator account")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--full-name", default=None)
    asyncio.run(_main(parser.parse_args()))
